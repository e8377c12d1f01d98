"""Per-module artifact writers."""
from __future__ import annotations

import hashlib
import json
import re
import shutil
import zipfile
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

import pandas as pd

from .models import CoverageSet, ModuleDescriptor, VerseRecord
from .references import Bucket, Buckets
from .validator import parse_structured_doc

WORD_RE = re.compile(r"[^\W\d_]+(?:['’][^\W\d_]+)?")
LEXICON_TEXT_XPATH = (
    "//*[local-name()='osisText']//text()"
    "[not(ancestor::*[local-name()='header']) and not(ancestor::*[local-name()='note'])]"
)
LEXICON_COLUMNS = ["word", "count"]
VERSE_COLUMNS = ["module_id", "book", "chapter", "verse", "added", "text"]
BUNDLE_SUFFIX = ".bundle.zip"


def module_paths(module_dir: Path, module_id: str) -> Dict[str, Path]:
    return {
        "text": module_dir / f"{module_id}.txt",
        "osis": module_dir / f"{module_id}.osis.xml",
        "pdf": module_dir / f"{module_id}.pdf",
        "epub": module_dir / f"{module_id}.epub",
        "docx": module_dir / f"{module_id}.docx",
        "markdown": module_dir / f"{module_id}.md",
        "verses_csv": module_dir / f"{module_id}.verses.csv",
        "verses_jsonl": module_dir / f"{module_id}.verses.jsonl",
        "lexicon": module_dir / f"{module_id}.lexicon.csv",
        "coverage": module_dir / f"{module_id}.coverage.txt",
        "meta": module_dir / f"{module_id}.meta.json",
        "bundle": module_dir / f"{module_id}{BUNDLE_SUFFIX}",
        "books": module_dir / "books",
        "chapters": module_dir / "chapters",
    }


def write_text(path: Path, raw_text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(raw_text, encoding="utf-8")
    return path


def _reset_dir(directory: Path) -> None:
    if directory.exists():
        shutil.rmtree(directory)
    directory.mkdir(parents=True)


def write_splits(buckets: Buckets, books_dir: Path, chapters_dir: Path) -> tuple[List[Path], List[Path]]:
    """Write one text file per book and per chapter, replacing any previous split."""
    _reset_dir(books_dir)
    _reset_dir(chapters_dir)
    book_files = [_write_bucket(bucket, books_dir) for bucket in buckets.books.values()]
    chapter_files = [_write_bucket(bucket, chapters_dir) for bucket in buckets.chapters.values()]
    return book_files, chapter_files


def _write_bucket(bucket: Bucket, directory: Path) -> Path:
    path = directory / f"{bucket.storage_key}.txt"
    path.write_text("\n".join(bucket.lines()) + "\n", encoding="utf-8")
    return path


def bucket_markdown(title: str, bucket: Bucket) -> str:
    lines = [f"# {title}", ""]
    current_chapter = None
    for record in bucket.records:
        if record.chapter != current_chapter:
            current_chapter = record.chapter
            lines.extend([f"## {record.book} {record.chapter}", ""])
        marker = "+" if record.added else ""
        lines.append(f"**{marker}{record.verse}** {record.text}  ")
    return "\n".join(lines) + "\n"


def module_markdown(descriptor: ModuleDescriptor, buckets: Buckets, raw_text: str) -> str:
    title = descriptor.description or descriptor.module_id
    if not buckets.books:
        body = "\n\n".join(line for line in raw_text.splitlines() if line.strip())
        return f"# {title}\n\n{body}\n"
    parts = [f"% {title}", ""]
    for bucket in buckets.books.values():
        parts.append(bucket_markdown(bucket.key, bucket))
    return "\n".join(parts)


def write_verse_tables(records: Sequence[VerseRecord], module_id: str, csv_path: Path, jsonl_path: Path) -> tuple[Path, Path]:
    frame = pd.DataFrame(
        [
            {
                "module_id": module_id,
                "book": record.book,
                "chapter": record.chapter,
                "verse": record.verse,
                "added": record.added,
                "text": record.text,
            }
            for record in records
        ],
        columns=VERSE_COLUMNS,
    )
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(csv_path, index=False)
    frame.to_json(jsonl_path, orient="records", lines=True, force_ascii=False)
    return csv_path, jsonl_path


def read_verse_table(csv_path: Path) -> pd.DataFrame:
    return pd.read_csv(csv_path, dtype={"book": str, "text": str}, keep_default_na=False)


def lexical_frequencies(structured_path: Path) -> Counter:
    tree = parse_structured_doc(structured_path)
    fragments: Iterable[str] = tree.xpath(LEXICON_TEXT_XPATH)
    if not fragments:
        fragments = tree.getroot().itertext()
    counts: Counter = Counter()
    for fragment in fragments:
        counts.update(token.lower() for token in WORD_RE.findall(fragment))
    return counts


def write_lexicon(structured_path: Path, output_path: Path) -> Path:
    counts = lexical_frequencies(structured_path)
    rows = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    pd.DataFrame(rows, columns=LEXICON_COLUMNS).to_csv(output_path, index=False)
    return output_path


def write_coverage(coverage: CoverageSet, path: Path) -> Path:
    keys = coverage.sorted_keys()
    path.write_text("\n".join(keys) + ("\n" if keys else ""), encoding="utf-8")
    return path


def write_metadata(payload: Dict[str, Any], path: Path) -> Path:
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return path


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_bundle(module_dir: Path, bundle_path: Path) -> tuple[Path, Path]:
    """Zip every module artifact into ``bundle_path`` and write a ``.sha256`` sidecar."""
    sidecar = bundle_path.with_name(bundle_path.name + ".sha256")
    bundle_path.unlink(missing_ok=True)
    sidecar.unlink(missing_ok=True)
    members = sorted(path for path in module_dir.rglob("*") if path.is_file())
    with zipfile.ZipFile(bundle_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for member in members:
            archive.write(member, member.relative_to(module_dir).as_posix())
    sidecar.write_text(f"{sha256_file(bundle_path)}  {bundle_path.name}\n", encoding="utf-8")
    return bundle_path, sidecar
