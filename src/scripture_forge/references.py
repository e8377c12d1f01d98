from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .models import VerseRecord

REFERENCE_RE = re.compile(
    r"^(?P<book>(?:[1-3] ?)?[^\W\d_]+)\s+(?P<chapter>\d+):(?P<added>\+)?(?P<verse>\d+)\s+(?P<text>.*)$"
)
STORAGE_UNSAFE_RE = re.compile(r"[^\w .-]")


def parse_reference_line(line: str) -> Optional[VerseRecord]:
    """Parse ``<book> <chapter>:<verse> <text>``; ``None`` when the line does not conform."""
    stripped = line.strip()
    match = REFERENCE_RE.match(stripped)
    if match is None:
        return None
    return VerseRecord(
        book=match.group("book"),
        chapter=int(match.group("chapter")),
        verse=int(match.group("verse")),
        text=match.group("text").strip(),
        added=bool(match.group("added")),
        raw=stripped,
    )


def iter_reference_records(lines: Iterable[str]) -> Iterator[VerseRecord]:
    for line in lines:
        record = parse_reference_line(line)
        if record is not None:
            yield record


def escape_storage_key(key: str) -> str:
    escaped = STORAGE_UNSAFE_RE.sub("_", key.strip())
    escaped = escaped.strip(" ")
    if escaped in {"", ".", ".."}:
        return "_" * max(1, len(escaped))
    return escaped


@dataclass
class Bucket:
    key: str
    storage_key: str
    records: List[VerseRecord] = field(default_factory=list)

    def lines(self) -> List[str]:
        return [record.raw or record.line() for record in self.records]


class _StorageKeys:
    """Assigns escaped storage keys, suffixing any that collide after escaping."""

    def __init__(self) -> None:
        self._assigned: Dict[str, str] = {}
        self._taken: set[str] = set()

    def assign(self, key: str, escaped: str) -> str:
        existing = self._assigned.get(key)
        if existing is not None:
            return existing
        candidate = escaped
        counter = 2
        while candidate.lower() in self._taken:
            candidate = f"{escaped}_{counter}"
            counter += 1
        self._taken.add(candidate.lower())
        self._assigned[key] = candidate
        return candidate


@dataclass
class Buckets:
    books: Dict[str, Bucket] = field(default_factory=dict)
    chapters: Dict[Tuple[str, int], Bucket] = field(default_factory=dict)


def bucketize(records: Iterable[VerseRecord]) -> Buckets:
    """Group records into per-book and per-(book, chapter) buckets in input order."""
    buckets = Buckets()
    book_keys = _StorageKeys()
    chapter_keys = _StorageKeys()
    for record in records:
        book_bucket = buckets.books.get(record.book)
        if book_bucket is None:
            storage = book_keys.assign(record.book, escape_storage_key(record.book))
            book_bucket = Bucket(key=record.book, storage_key=storage)
            buckets.books[record.book] = book_bucket
        book_bucket.records.append(record)

        chapter_id = (record.book, record.chapter)
        chapter_bucket = buckets.chapters.get(chapter_id)
        if chapter_bucket is None:
            escaped = f"{book_bucket.storage_key}.{record.chapter:03d}"
            storage = chapter_keys.assign(f"{record.book}\x00{record.chapter}", escaped)
            chapter_bucket = Bucket(key=f"{record.book} {record.chapter}", storage_key=storage)
            buckets.chapters[chapter_id] = chapter_bucket
        chapter_bucket.records.append(record)
    return buckets


def bucketize_lines(lines: Iterable[str]) -> Buckets:
    return bucketize(iter_reference_records(lines))
