"""Archive discovery, extraction with fallback, and quarantine."""
from __future__ import annotations

import logging
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .capabilities import Capabilities
from .chain import Provider, run_chain
from .diagnostics import BAD_ARCHIVE, RunDiagnostics
from .errors import ChainExhausted, IntakeError
from .models import EXTRACTED, QUARANTINED, ModuleArchive
from .tools import run_tool

log = logging.getLogger(__name__)

QUARANTINE_DIRNAME = "quarantine"
ARCHIVE_SUFFIXES: tuple[str, ...] = (
    ".tar.gz",
    ".tar.bz2",
    ".tar.xz",
    ".tgz",
    ".tar",
    ".zip",
    ".7z",
)

Extractor = Callable[[Path, Path], None]


def module_id_for(path: Path) -> str:
    name = path.name
    lowered = name.lower()
    for suffix in ARCHIVE_SUFFIXES:
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def is_archive(path: Path) -> bool:
    return path.is_file() and path.name.lower().endswith(ARCHIVE_SUFFIXES)


def scan_archives(source_dir: Path) -> List[ModuleArchive]:
    """List archives directly under ``source_dir``; subdirectories are never scanned."""
    archives = [
        ModuleArchive(path=path, module_id=module_id_for(path), size=path.stat().st_size)
        for path in sorted(Path(source_dir).iterdir())
        if is_archive(path)
    ]
    return archives


def _tree_has_files(destination: Path) -> bool:
    return any(path.is_file() for path in destination.rglob("*"))


def extract_builtin(archive: Path, destination: Path) -> None:
    try:
        shutil.unpack_archive(str(archive), str(destination))
    except (shutil.ReadError, zipfile.BadZipFile, tarfile.TarError, ValueError, OSError, EOFError) as exc:
        raise IntakeError(f"unpack failed for {archive.name}: {exc}") from exc


def _external_extractor(tool: str, capabilities: Capabilities, timeout_s: int) -> Extractor:
    def _extract(archive: Path, destination: Path) -> None:
        executable = capabilities.require(tool)
        if tool == "7z":
            command = [executable, "x", "-y", f"-o{destination}", str(archive)]
        elif tool == "bsdtar":
            command = [executable, "-xf", str(archive), "-C", str(destination)]
        else:
            command = [executable, "-o", "-q", str(archive), "-d", str(destination)]
        run_tool(command, timeout_s=timeout_s)

    return _extract


def secondary_extractors(capabilities: Capabilities, timeout_s: int = 600) -> List[tuple[str, Extractor]]:
    return [
        (tool, _external_extractor(tool, capabilities, timeout_s))
        for tool in ("7z", "bsdtar", "unzip")
        if capabilities.has(tool)
    ]


def quarantine_archive(archive: Path) -> Path:
    """Move ``archive`` into a sibling quarantine directory, keeping its file name."""
    quarantine_dir = archive.parent / QUARANTINE_DIRNAME
    quarantine_dir.mkdir(parents=True, exist_ok=True)
    target = quarantine_dir / archive.name
    if target.exists():
        target.unlink()
    shutil.move(str(archive), str(target))
    return target


def intake_archive(
    archive: ModuleArchive,
    destination: Path,
    diagnostics: RunDiagnostics,
    *,
    primary: Extractor = extract_builtin,
    secondary: Sequence[tuple[str, Extractor]] = (),
) -> Optional[Path]:
    """Extract ``archive`` into ``destination`` or quarantine it.

    Returns the extracted directory, or ``None`` once the archive has been
    quarantined and ``bad_archive`` recorded.
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)

    def _attempt(extract: Extractor) -> Callable[[], bool]:
        def _run() -> bool:
            extract(archive.path, destination)
            return _tree_has_files(destination)

        return _run

    providers = [Provider(name="builtin", run=_attempt(primary))]
    providers.extend(Provider(name=name, run=_attempt(extract)) for name, extract in secondary)
    try:
        outcome = run_chain(f"extract {archive.module_id}", providers, bool)
    except ChainExhausted as exc:
        reason = "; ".join(f"{attempt.provider}: {attempt.error}" for attempt in exc.attempts)
        target = quarantine_archive(archive.path)
        archive.state = QUARANTINED
        diagnostics.record(archive.module_id, BAD_ARCHIVE, reason)
        log.warning("Quarantined %s -> %s (%s)", archive.path.name, target, reason)
        return None
    archive.state = EXTRACTED
    log.info("Extracted %s with %s", archive.path.name, outcome.provider)
    return destination
