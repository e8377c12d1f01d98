from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

log = logging.getLogger(__name__)

KNOWN_TOOLS: tuple[str, ...] = (
    # archive extractors
    "7z",
    "bsdtar",
    "unzip",
    # text and structured export
    "mod2imp",
    "diatheke",
    "mod2osis",
    # rendering
    "pandoc",
    "xelatex",
    "wkhtmltopdf",
    "ebook-convert",
    "soffice",
    # pdf merging
    "pdfunite",
    "qpdf",
    "gs",
)


@dataclass(frozen=True)
class Capabilities:
    """Immutable map of external tool name to resolved executable path."""

    tools: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tools", MappingProxyType(dict(self.tools)))

    def has(self, name: str) -> bool:
        return name in self.tools

    def require(self, name: str) -> str:
        resolved = self.tools.get(name)
        if resolved is None:
            raise LookupError(f"External tool '{name}' is not available")
        return resolved

    def to_dict(self) -> dict[str, str]:
        return dict(sorted(self.tools.items()))


def discover(names: Iterable[str] = KNOWN_TOOLS) -> Capabilities:
    """Probe PATH once for every known tool."""
    names = tuple(names)
    found: dict[str, str] = {}
    for name in names:
        resolved = shutil.which(name)
        if resolved:
            found[name] = resolved
    missing = sorted(set(names) - set(found))
    log.info("Capabilities: found=%s missing=%s", sorted(found), missing)
    return Capabilities(found)
