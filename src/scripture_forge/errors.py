from __future__ import annotations


class ForgeError(Exception):
    """Base error for scripture-forge."""


class ConfigError(ForgeError):
    def __init__(self, message: str, *, errors=None):
        super().__init__(message)
        self.errors = errors or []


class SetupError(ForgeError):
    pass


class IntakeError(ForgeError):
    pass


class ToolError(ForgeError):
    def __init__(self, message: str, *, command=None, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class ChainExhausted(ForgeError):
    def __init__(self, message: str, *, attempts=None):
        super().__init__(message)
        self.attempts = attempts or []
