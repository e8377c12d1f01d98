from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import pandas as pd

from sword_fixtures import GENESIS, osis_document

from scripture_forge.artifacts import LEXICON_COLUMNS, write_lexicon
from scripture_forge.models import StructuredDoc
from scripture_forge.validator import (
    check_structured_doc,
    decode_best_effort,
    repair_text,
    validate_with_repair,
)



class ValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_valid_document_passes_without_repair(self) -> None:
        path = self.root / "ok.osis.xml"
        path.write_text(osis_document(GENESIS), encoding="utf-8")
        doc = validate_with_repair(StructuredDoc(path=path), min_bytes=1024)
        self.assertTrue(doc.valid)
        self.assertFalse(doc.repaired)
        self.assertIsNone(doc.error)

    def test_missing_document_is_not_repaired(self) -> None:
        doc = validate_with_repair(StructuredDoc(path=self.root / "absent.xml"))
        self.assertFalse(doc.valid)
        self.assertFalse(doc.repaired)
        self.assertEqual(doc.error, "missing")

    def test_small_document_is_invalid(self) -> None:
        path = self.root / "tiny.xml"
        path.write_text("<osis/>", encoding="utf-8")
        valid, reason = check_structured_doc(path, min_bytes=1024)
        self.assertFalse(valid)
        self.assertTrue(reason.startswith("too small"))

    def test_repair_strips_control_chars_bom_and_doctype(self) -> None:
        path = self.root / "broken.osis.xml"
        body = osis_document(GENESIS).replace("In the beginning", "In the\x00 begin\x07ning")
        body = body.replace(
            '<?xml version="1.0" encoding="UTF-8"?>\n',
            '<?xml version="1.0" encoding="UTF-8"?>\r\n<!DOCTYPE osis [<!ENTITY x "y">]>\r\n',
        )
        path.write_bytes(b"\xef\xbb\xbf" + body.encode("utf-8"))
        self.assertFalse(check_structured_doc(path, 1024)[0])

        doc = validate_with_repair(StructuredDoc(path=path), min_bytes=1024)

        self.assertTrue(doc.valid, msg=doc.error)
        self.assertTrue(doc.repaired)
        repaired = path.read_text(encoding="utf-8")
        self.assertNotIn("DOCTYPE", repaired)
        self.assertNotIn("\r", repaired)
        self.assertIn("In the beginning", repaired)

    def test_repair_happens_at_most_once(self) -> None:
        path = self.root / "hopeless.xml"
        path.write_text("<osis><unclosed>" + "x" * 2048, encoding="utf-8")
        doc = validate_with_repair(StructuredDoc(path=path), min_bytes=1024)
        self.assertFalse(doc.valid)
        self.assertTrue(doc.repaired)
        self.assertIn("not well-formed", doc.error)

        path.write_bytes(b"\xef\xbb\xbf\x00" + b"<osis>" + b"y" * 2048)
        again = validate_with_repair(doc, min_bytes=1024)
        self.assertFalse(again.valid)
        self.assertTrue(path.read_bytes().startswith(b"\xef\xbb\xbf\x00"))

    def test_cp1252_bytes_decode(self) -> None:
        self.assertEqual(decode_best_effort("café".encode("cp1252")), "café")

    def test_repair_text_drops_encoding_declaration(self) -> None:
        repaired = repair_text('<?xml version="1.0" encoding="windows-1252"?><a/>')
        self.assertEqual(repaired, '<?xml version="1.0"?><a/>')


class LexiconTests(unittest.TestCase):
    def test_lexicon_is_sorted_by_count_then_word(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = Path(tmp) / "KJV.osis.xml"
            source.write_text(osis_document(GENESIS), encoding="utf-8")
            frame = pd.read_csv(write_lexicon(source, Path(tmp) / "KJV.lexicon.csv"), keep_default_na=False)

        self.assertEqual(list(frame.columns), LEXICON_COLUMNS)
        self.assertEqual(frame.iloc[0]["word"], "the")
        counts = list(frame["count"])
        self.assertEqual(counts, sorted(counts, reverse=True))
        self.assertNotIn("footnote", set(frame["word"]))
        tied = frame[frame["count"] == 1]["word"].tolist()
        self.assertEqual(tied, sorted(tied))


if __name__ == "__main__":
    unittest.main()
