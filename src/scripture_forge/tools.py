"""Stateless invocation of external tools."""
from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import ToolError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 600


@dataclass
class ToolResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float
    raw_stdout: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_tool(
    command: Sequence[str],
    *,
    timeout_s: Optional[int] = DEFAULT_TIMEOUT_S,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
) -> ToolResult:
    """Run one external command and capture its output.

    Raises ToolError on a non-zero exit (when ``check``), a timeout, or a
    missing executable.
    """
    cmd = [str(part) for part in command]
    start = time.monotonic()
    try:
        process = subprocess.run(
            cmd,
            capture_output=True,
            timeout=timeout_s or None,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
        )
    except subprocess.TimeoutExpired as exc:
        raise ToolError(f"{cmd[0]} timed out after {timeout_s}s", command=cmd) from exc
    except OSError as exc:
        raise ToolError(f"{cmd[0]} could not be started: {exc}", command=cmd) from exc
    result = ToolResult(
        command=cmd,
        returncode=process.returncode,
        stdout=(process.stdout or b"").decode("utf-8", errors="replace"),
        stderr=(process.stderr or b"").decode("utf-8", errors="replace").strip(),
        duration_s=round(time.monotonic() - start, 3),
        raw_stdout=process.stdout or b"",
    )
    log.debug("ran %s -> %s in %.2fs", " ".join(cmd), result.returncode, result.duration_s)
    if check and not result.ok:
        raise ToolError(
            f"{cmd[0]} exited with {result.returncode}: {result.stderr[:400]}",
            command=cmd,
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


def sword_env(module_root: Path, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment pointing SWORD utilities at an extracted module tree."""
    env = dict(base if base is not None else os.environ)
    env["SWORD_PATH"] = str(module_root)
    return env
