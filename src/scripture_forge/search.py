"""Full-text search store built from one representative verse table."""
from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Sequence

from .artifacts import read_verse_table
from .models import ModuleResult

log = logging.getLogger(__name__)

SEARCH_DB_NAME = "search.sqlite"
FTS_SCHEMA = (
    "CREATE VIRTUAL TABLE verses USING fts5("
    "module_id UNINDEXED, book, chapter UNINDEXED, verse UNINDEXED, text)"
)
PLAIN_SCHEMA = "CREATE TABLE verses (module_id TEXT, book TEXT, chapter INTEGER, verse INTEGER, text TEXT)"


def representative_module(results: Sequence[ModuleResult]) -> Optional[ModuleResult]:
    """The module with the most verses and a verse table; ties go to the smallest id."""
    candidates = [
        result for result in results if result.verse_count > 0 and "verses_csv" in result.artifacts
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda result: (-result.verse_count, result.module_id))


def build_search_store(results: Sequence[ModuleResult], output_root: Path) -> Optional[Path]:
    chosen = representative_module(results)
    db_path = output_root / SEARCH_DB_NAME
    db_path.unlink(missing_ok=True)
    if chosen is None:
        log.info("No verse table available; search store skipped")
        return None

    frame = read_verse_table(Path(chosen.artifacts["verses_csv"]))
    rows = [
        (row.module_id, row.book, int(row.chapter), int(row.verse), row.text)
        for row in frame.itertuples(index=False)
    ]
    with sqlite3.connect(db_path) as conn:
        try:
            conn.execute(FTS_SCHEMA)
            full_text = True
        except sqlite3.OperationalError as exc:
            log.warning("FTS5 unavailable (%s); using a plain table", exc)
            conn.execute(PLAIN_SCHEMA)
            full_text = False
        conn.executemany("INSERT INTO verses VALUES (?, ?, ?, ?, ?)", rows)
        conn.execute("CREATE TABLE store_meta (key TEXT PRIMARY KEY, value TEXT)")
        conn.executemany(
            "INSERT INTO store_meta VALUES (?, ?)",
            [("module_id", chosen.module_id), ("full_text", "1" if full_text else "0")],
        )
    conn.close()
    log.info("Search store built from %s (%d verses)", chosen.module_id, len(rows))
    return db_path


def search_verses(db_path: Path, query: str, limit: int = 20) -> List[tuple]:
    """Return ``(book, chapter, verse, text)`` hits for ``query``."""
    with sqlite3.connect(db_path) as conn:
        full_text = conn.execute("SELECT value FROM store_meta WHERE key = 'full_text'").fetchone()
        if full_text and full_text[0] == "1":
            cursor = conn.execute(
                "SELECT book, chapter, verse, text FROM verses WHERE verses MATCH ? ORDER BY rank LIMIT ?",
                (query, limit),
            )
        else:
            cursor = conn.execute(
                "SELECT book, chapter, verse, text FROM verses WHERE text LIKE ? LIMIT ?",
                (f"%{query}%", limit),
            )
        hits = [tuple(row) for row in cursor.fetchall()]
    conn.close()
    return hits
