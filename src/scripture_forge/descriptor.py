"""Module descriptor (``mods.d/*.conf``) resolution and synthesis."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .language import canonicalize
from .models import ModuleDescriptor

log = logging.getLogger(__name__)

DESCRIPTOR_DIRNAME = "mods.d"
SECTION_RE = re.compile(r"^\s*\[(?P<name>[^\]]+)\]\s*$")
ENTRY_RE = re.compile(r"^\s*(?P<key>[A-Za-z0-9_.]+)\s*=\s*(?P<value>.*?)\s*$")
SYNTHESIZED_KEY = "ForgeSynthesized"
FREE_LICENSE_MARKERS = (
    "public domain",
    "gpl",
    "general public license",
    "creative commons",
    "cc by",
    "cc-by",
    "cc0",
    "free",
)


def find_descriptor(root: Path, module_id: str) -> Optional[Path]:
    """Prefer ``mods.d/<module_id>.conf``, then any ``mods.d/*.conf``, then any ``*.conf``."""
    root = Path(root)
    wanted = f"{module_id.lower()}.conf"
    candidates = sorted(root.rglob("*.conf"))
    in_mods_d = [path for path in candidates if path.parent.name.lower() == DESCRIPTOR_DIRNAME]
    for path in in_mods_d:
        if path.name.lower() == wanted:
            return path
    if in_mods_d:
        return in_mods_d[0]
    for path in candidates:
        if path.name.lower() == wanted:
            return path
    return candidates[0] if candidates else None


def parse_descriptor_text(text: str) -> tuple[Optional[str], Dict[str, str]]:
    """Parse a SWORD-style conf: one section header then ``Key=Value`` lines.

    Keys are case-insensitive; the first occurrence wins and lines ending with
    a backslash continue onto the next line.
    """
    section: Optional[str] = None
    entries: Dict[str, str] = {}
    pending_key: Optional[str] = None
    for raw_line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if pending_key is not None:
            continued = raw_line.rstrip()
            more = continued.endswith("\\")
            entries[pending_key] += " " + continued.rstrip("\\").strip()
            pending_key = pending_key if more else None
            continue
        if not raw_line.strip() or raw_line.lstrip().startswith("#"):
            continue
        header = SECTION_RE.match(raw_line)
        if header:
            if section is None:
                section = header.group("name").strip()
            continue
        entry = ENTRY_RE.match(raw_line)
        if not entry:
            continue
        key = entry.group("key").lower()
        value = entry.group("value")
        more = value.endswith("\\")
        value = value.rstrip("\\").strip()
        if key in entries:
            continue
        entries[key] = value
        if more:
            pending_key = key
    return section, entries


def is_license_restricted(entries: Dict[str, str]) -> bool:
    if entries.get("cipherkey") is not None:
        return True
    license_text = entries.get("distributionlicense", "").strip().lower()
    if not license_text:
        return False
    return not any(marker in license_text for marker in FREE_LICENSE_MARKERS)


@dataclass
class DescriptorBuilder:
    """Builds a minimal descriptor with explicit defaults for modules shipped without one."""

    module_id: str
    data_path: Optional[str] = None
    mod_drv: str = "zText"
    encoding: str = "UTF-8"
    description: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        data_path = self.data_path or f"./modules/texts/ztext/{self.module_id.lower()}/"
        lines = [
            f"[{self.module_id.upper()}]",
            f"DataPath={data_path}",
            f"ModDrv={self.mod_drv}",
            f"Encoding={self.encoding}",
            f"Description={self.description or self.module_id}",
            f"{SYNTHESIZED_KEY}=true",
        ]
        lines.extend(f"{key}={value}" for key, value in self.extra.items())
        return "\n".join(lines) + "\n"

    def write(self, root: Path) -> Path:
        target = Path(root) / DESCRIPTOR_DIRNAME / f"{self.module_id.lower()}.conf"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.render(), encoding="utf-8")
        return target


def _guess_data_path(root: Path, module_id: str) -> Optional[str]:
    modules_dir = Path(root) / "modules"
    if not modules_dir.is_dir():
        return None
    for candidate in sorted(modules_dir.rglob("*")):
        if candidate.is_dir() and candidate.name.lower() == module_id.lower():
            return "./" + candidate.relative_to(root).as_posix() + "/"
    return None


def resolve_descriptor(root: Path, module_id: str) -> ModuleDescriptor:
    root = Path(root)
    path = find_descriptor(root, module_id)
    synthesized = False
    if path is None:
        builder = DescriptorBuilder(module_id=module_id, data_path=_guess_data_path(root, module_id))
        path = builder.write(root)
        synthesized = True
        log.info("Synthesized descriptor for %s at %s", module_id, path)
    text = path.read_bytes().decode("utf-8", errors="replace")
    _, entries = parse_descriptor_text(text)
    synthesized = synthesized or SYNTHESIZED_KEY.lower() in entries
    raw_language = entries.get("lang")
    return ModuleDescriptor(
        module_id=module_id,
        raw_language=raw_language,
        language=canonicalize(raw_language),
        license_restricted=is_license_restricted(entries),
        path=path,
        description=entries.get("description", ""),
        version=entries.get("version", ""),
        distribution_license=entries.get("distributionlicense", ""),
        synthesized=synthesized,
    )
