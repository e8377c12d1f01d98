"""Run-level catalog, markdown index and e-book feed."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd
from lxml import etree

from .models import ModuleResult

log = logging.getLogger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
CATALOG_COLUMNS = [
    "module_id",
    "state",
    "language",
    "raw_language",
    "description",
    "license_restricted",
    "export_source",
    "structured_valid",
    "coverage_source",
    "coverage_approximate",
    "coverage_count",
    "verse_count",
    "book_count",
    "skip_reason",
]
INDEX_LINKS = (
    ("text", "text"),
    ("osis", "osis"),
    ("pdf", "pdf"),
    ("epub", "epub"),
    ("docx", "docx"),
    ("verses_csv", "verses"),
    ("bundle", "bundle"),
)


def sorted_results(results: Sequence[ModuleResult]) -> List[ModuleResult]:
    return sorted(results, key=lambda result: result.module_id)


def catalog_frame(results: Sequence[ModuleResult]) -> pd.DataFrame:
    rows = [result.to_catalog_row() for result in sorted_results(results)]
    return pd.DataFrame(rows, columns=CATALOG_COLUMNS)


def write_catalog(results: Sequence[ModuleResult], output_root: Path) -> tuple[Path, Path]:
    """Rewrite ``catalog.csv`` and ``catalog.json``; one row per module, ordered by id."""
    frame = catalog_frame(results)
    csv_path = output_root / "catalog.csv"
    json_path = output_root / "catalog.json"
    frame.to_csv(csv_path, index=False)
    frame.to_json(json_path, orient="records", indent=2, force_ascii=False)
    log.info("Catalog written with %d rows", len(frame))
    return csv_path, json_path


def _relative(path_text: str, output_root: Path) -> str:
    path = Path(path_text)
    try:
        return path.relative_to(output_root).as_posix()
    except ValueError:
        return path.as_posix()


def index_markdown(
    results: Sequence[ModuleResult],
    output_root: Path,
    site_title: str,
    merged: Optional[Dict[str, Path]] = None,
) -> str:
    lines = [f"# {site_title}", "", "| Module | Language | State | Verses | Artifacts |", "| --- | --- | --- | --- | --- |"]
    for result in sorted_results(results):
        links = [
            f"[{label}]({_relative(result.artifacts[key], output_root)})"
            for key, label in INDEX_LINKS
            if key in result.artifacts
        ]
        state = result.state if not result.skip_reason else f"{result.state} ({result.skip_reason})"
        lines.append(
            f"| {result.module_id} | {result.language} | {state} | {result.verse_count} | {' '.join(links)} |"
        )
    if merged:
        lines.extend(["", "## Merged documents", ""])
        for language, path in sorted(merged.items()):
            lines.append(f"- {language}: [{path.name}]({_relative(str(path), output_root)})")
    return "\n".join(lines) + "\n"


def write_index(
    results: Sequence[ModuleResult],
    output_root: Path,
    site_title: str,
    merged: Optional[Dict[str, Path]] = None,
) -> Path:
    path = output_root / "index.md"
    path.write_text(index_markdown(results, output_root, site_title, merged), encoding="utf-8")
    return path


def _atom(tag: str) -> str:
    return f"{{{ATOM_NS}}}{tag}"


def build_feed(
    results: Sequence[ModuleResult],
    output_root: Path,
    site_title: str,
    updated: Optional[datetime] = None,
) -> etree._ElementTree:
    """Atom feed with one entry per module that produced an e-book."""
    stamp = (updated or datetime.now(timezone.utc)).isoformat()
    feed = etree.Element(_atom("feed"), nsmap={None: ATOM_NS})
    etree.SubElement(feed, _atom("title")).text = site_title
    etree.SubElement(feed, _atom("id")).text = "urn:scripture-forge:feed"
    etree.SubElement(feed, _atom("updated")).text = stamp
    for result in sorted_results(results):
        epub = result.artifacts.get("epub")
        if not epub:
            continue
        entry = etree.SubElement(feed, _atom("entry"))
        title = result.descriptor.description if result.descriptor and result.descriptor.description else result.module_id
        etree.SubElement(entry, _atom("title")).text = title
        etree.SubElement(entry, _atom("id")).text = f"urn:scripture-forge:module:{result.module_id}"
        etree.SubElement(entry, _atom("updated")).text = stamp
        etree.SubElement(
            entry,
            _atom("link"),
            rel="enclosure",
            type="application/epub+zip",
            href=_relative(epub, output_root),
        )
        etree.SubElement(entry, _atom("category"), term=result.language)
    return etree.ElementTree(feed)


def write_feed(results: Sequence[ModuleResult], output_root: Path, site_title: str) -> Path:
    path = output_root / "feed.xml"
    build_feed(results, output_root, site_title).write(
        str(path), xml_declaration=True, encoding="utf-8", pretty_print=True
    )
    return path
