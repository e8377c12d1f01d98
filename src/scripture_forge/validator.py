"""Structural validation of generated OSIS markup with a single repair pass."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Tuple

from lxml import etree

from .config import DEFAULT_MIN_STRUCTURED_BYTES
from .models import StructuredDoc

log = logging.getLogger(__name__)

DOCTYPE_RE = re.compile(r"^(\s*<\?xml[^>]*\?>)?\s*<!DOCTYPE[^>\[]*(\[.*?\])?\s*>", re.DOTALL | re.IGNORECASE)
ILLEGAL_XML_CHARS_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
REPAIR_ENCODINGS = ("utf-8", "cp1252")


def _lenient_parser() -> etree.XMLParser:
    return etree.XMLParser(
        remove_comments=True,
        remove_blank_text=True,
        load_dtd=False,
        dtd_validation=False,
        resolve_entities=False,
        no_network=True,
        recover=False,
        huge_tree=True,
    )


def check_structured_doc(path: Path, min_bytes: int = DEFAULT_MIN_STRUCTURED_BYTES) -> Tuple[bool, Optional[str]]:
    """Return ``(valid, reason)`` for the document at ``path``."""
    path = Path(path)
    if not path.is_file():
        return False, "missing"
    size = path.stat().st_size
    if size < min_bytes:
        return False, f"too small ({size} < {min_bytes} bytes)"
    try:
        etree.parse(str(path), _lenient_parser())
    except (etree.XMLSyntaxError, OSError) as exc:
        return False, f"not well-formed: {exc}"
    return True, None


def parse_structured_doc(path: Path) -> etree._ElementTree:
    return etree.parse(str(path), _lenient_parser())


def decode_best_effort(raw: bytes) -> str:
    for encoding in REPAIR_ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def repair_text(text: str) -> str:
    text = text.lstrip("\ufeff")
    text = text.replace("\x00", "")
    text = ILLEGAL_XML_CHARS_RE.sub("", text)
    text = DOCTYPE_RE.sub(lambda match: match.group(1) or "", text, count=1)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # The declared encoding may no longer match once rewritten as UTF-8.
    text = re.sub(r"^(\s*<\?xml[^>]*?)\s+encoding=(['\"])[^'\"]*\2", r"\1", text, count=1)
    return text.lstrip()


def repair_structured_doc(path: Path) -> None:
    path = Path(path)
    repaired = repair_text(decode_best_effort(path.read_bytes()))
    path.write_text(repaired, encoding="utf-8")


def validate_with_repair(doc: StructuredDoc, min_bytes: int = DEFAULT_MIN_STRUCTURED_BYTES) -> StructuredDoc:
    """Validate ``doc``; when invalid, repair once and re-validate once.

    A document that has already been repaired is never repaired again, so its
    validity after this call is final for the run.
    """
    valid, reason = check_structured_doc(doc.path, min_bytes)
    if valid or doc.repaired or reason == "missing":
        doc.valid = valid
        doc.error = reason
        return doc
    log.info("Repairing %s (%s)", doc.path.name, reason)
    repair_structured_doc(doc.path)
    doc.repaired = True
    doc.valid, doc.error = check_structured_doc(doc.path, min_bytes)
    if not doc.valid:
        log.warning("%s still invalid after repair: %s", doc.path.name, doc.error)
    return doc
