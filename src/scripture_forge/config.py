from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator

from .errors import ConfigError

DEFAULT_FORMATS: Dict[str, bool] = {
    "text": True,
    "osis": True,
    "pdf": True,
    "epub": True,
    "docx": True,
    "splits": True,
    "chapter_documents": False,
    "verse_table": True,
    "lexicon": True,
    "coverage": True,
    "bundle": False,
}
DEFAULT_THROTTLE = 4
DEFAULT_MIN_STRUCTURED_BYTES = 1024
DEFAULT_TOOL_TIMEOUT_S = 600
DEFAULT_SITE_TITLE = "Scripture Module Library"

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "formats": {
            "type": "object",
            "additionalProperties": False,
            "properties": {name: {"type": "boolean"} for name in DEFAULT_FORMATS},
        },
        "parallel": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "throttle": {"type": "integer", "minimum": 1},
            },
        },
        "license": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"exclude_restricted": {"type": "boolean"}},
        },
        "filters": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "include_langs": _STRING_LIST,
                "exclude_langs": _STRING_LIST,
                "include_modules": _STRING_LIST,
                "exclude_modules": _STRING_LIST,
            },
        },
        "site": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"title": {"type": "string"}},
        },
        "validation": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"min_bytes": {"type": "integer", "minimum": 0}},
        },
        "tools": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"timeout_s": {"type": "integer", "minimum": 1}},
        },
    },
}


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    formats: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_FORMATS))
    parallel: bool = False
    throttle: int = DEFAULT_THROTTLE
    exclude_restricted: bool = False
    include_langs: List[str] = field(default_factory=list)
    exclude_langs: List[str] = field(default_factory=list)
    include_modules: List[str] = field(default_factory=list)
    exclude_modules: List[str] = field(default_factory=list)
    site_title: str = DEFAULT_SITE_TITLE
    min_structured_bytes: int = DEFAULT_MIN_STRUCTURED_BYTES
    tool_timeout_s: int = DEFAULT_TOOL_TIMEOUT_S
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def enabled(self, fmt: str) -> bool:
        return bool(self.formats.get(fmt, False))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Config":
        validate_config(payload)
        formats = dict(DEFAULT_FORMATS)
        formats.update(payload.get("formats", {}))
        parallel = payload.get("parallel", {})
        filters = payload.get("filters", {})
        return cls(
            formats=formats,
            parallel=bool(parallel.get("enabled", False)),
            throttle=int(parallel.get("throttle", DEFAULT_THROTTLE)),
            exclude_restricted=bool(payload.get("license", {}).get("exclude_restricted", False)),
            include_langs=list(filters.get("include_langs", [])),
            exclude_langs=list(filters.get("exclude_langs", [])),
            include_modules=list(filters.get("include_modules", [])),
            exclude_modules=list(filters.get("exclude_modules", [])),
            site_title=str(payload.get("site", {}).get("title", DEFAULT_SITE_TITLE)),
            min_structured_bytes=int(payload.get("validation", {}).get("min_bytes", DEFAULT_MIN_STRUCTURED_BYTES)),
            tool_timeout_s=int(payload.get("tools", {}).get("timeout_s", DEFAULT_TOOL_TIMEOUT_S)),
        )

    @classmethod
    def from_file(cls, path: Optional[Path]) -> "Config":
        if path is None:
            return cls()
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls.from_mapping(payload)

    @classmethod
    def from_env(cls, path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "Config":
        config = cls.from_file(path)
        env = os.environ if environ is None else environ
        if "FORGE_PARALLEL" in env:
            config.parallel = _env_flag(env["FORGE_PARALLEL"])
        if "FORGE_THROTTLE" in env:
            config.throttle = _positive_int(env["FORGE_THROTTLE"], "FORGE_THROTTLE")
        if "FORGE_TOOL_TIMEOUT" in env:
            config.tool_timeout_s = _positive_int(env["FORGE_TOOL_TIMEOUT"], "FORGE_TOOL_TIMEOUT")
        return config


def _positive_int(raw: str, name: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigError(f"{name} must be >= 1")
    return value


def validate_config(payload: Mapping[str, Any]) -> None:
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(payload), key=lambda e: [str(part) for part in e.path]):
        location = " -> ".join(str(part) for part in error.path) or "<root>"
        errors.append(f"{location}: {error.message}")
    if errors:
        joined = "\n".join(f"- {error}" for error in errors)
        raise ConfigError(f"Config validation failed:\n{joined}", errors=errors)
