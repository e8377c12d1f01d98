"""Cross-worker shared state: run diagnostics and per-language merge queues.

Both structures are append-only. Every mutation happens under the instance
lock, so workers never race on a read-modify-write.
"""
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

BAD_ARCHIVE = "bad_archive"
BAD_STRUCTURED_DOC = "bad_structured_doc"
EXPORT_FAILED = "export_failed"
MERGE_FAILED = "merge_failed"
RENDER_FAILED = "render_failed"
MODULE_FAILED = "module_failed"
LANG_EXCLUDED = "lang_excluded"
MODULE_EXCLUDED = "module_excluded"
LICENSE_EXCLUDED = "license_excluded"

SKIP_CATEGORIES = frozenset({LANG_EXCLUDED, MODULE_EXCLUDED, LICENSE_EXCLUDED})


@dataclass(frozen=True)
class DiagnosticEntry:
    category: str
    detail: str


class RunDiagnostics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._reasons: Dict[str, List[DiagnosticEntry]] = {}

    def record(self, module_id: str, category: str, detail: str = "") -> None:
        entry = DiagnosticEntry(category=category, detail=detail)
        with self._lock:
            self._counts[category] += 1
            self._reasons.setdefault(module_id, []).append(entry)

    def count(self, category: str) -> int:
        with self._lock:
            return self._counts[category]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))

    def categories(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._counts)

    def reasons(self) -> Dict[str, Tuple[DiagnosticEntry, ...]]:
        with self._lock:
            return {module_id: tuple(entries) for module_id, entries in sorted(self._reasons.items())}

    def modules_with(self, category: str) -> List[str]:
        with self._lock:
            return sorted(
                module_id
                for module_id, entries in self._reasons.items()
                if any(entry.category == category for entry in entries)
            )

    def skipped_modules(self) -> Dict[str, str]:
        skipped: Dict[str, str] = {}
        for module_id, entries in self.reasons().items():
            for entry in entries:
                if entry.category in SKIP_CATEGORIES or entry.category == BAD_ARCHIVE:
                    skipped[module_id] = entry.category if not entry.detail else f"{entry.category}: {entry.detail}"
                    break
        return skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts(),
            "reasons": {
                module_id: [{"category": entry.category, "detail": entry.detail} for entry in entries]
                for module_id, entries in self.reasons().items()
            },
        }


class LanguageMergeQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: Dict[str, List[Path]] = {}
        self._consumed = False

    def append(self, language: str, path: Path) -> None:
        with self._lock:
            if self._consumed:
                raise RuntimeError("merge queue already consumed")
            self._queues.setdefault(language, []).append(Path(path))

    def consume(self) -> Dict[str, List[Path]]:
        """Hand out every queue once, keeping only entries whose files exist now."""
        with self._lock:
            if self._consumed:
                raise RuntimeError("merge queue already consumed")
            self._consumed = True
            queues = {lang: list(paths) for lang, paths in sorted(self._queues.items())}
        return {lang: sorted(path for path in paths if path.is_file()) for lang, paths in queues.items()}
