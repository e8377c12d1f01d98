from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from .models import COVERAGE_STRUCTURED, COVERAGE_TEXT_FALLBACK, CoverageSet, StructuredDoc
from .references import iter_reference_records
from .validator import parse_structured_doc

VERSE_XPATH = "//*[local-name()='verse'][@osisID]"


def coverage_from_structured(path: Path) -> CoverageSet:
    tree = parse_structured_doc(path)
    keys: set[str] = set()
    for node in tree.xpath(VERSE_XPATH):
        keys.update(node.get("osisID", "").split())
    return CoverageSet(keys=frozenset(keys), source=COVERAGE_STRUCTURED)


def coverage_from_text(lines: Iterable[str]) -> CoverageSet:
    keys = frozenset(record.key for record in iter_reference_records(lines))
    return CoverageSet(keys=keys, source=COVERAGE_TEXT_FALLBACK)


def compute_coverage(structured: Optional[StructuredDoc], raw_text: str) -> CoverageSet:
    """Coverage from valid structured markup, else an approximate count from plain text."""
    if structured is not None and structured.valid:
        return coverage_from_structured(structured.path)
    return coverage_from_text(raw_text.splitlines())
