from __future__ import annotations

import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sword_fixtures import GENESIS, osis_document, text_export

from scripture_forge.capabilities import Capabilities
from scripture_forge.errors import ChainExhausted, ToolError
from scripture_forge.exporters import (
    Renderer,
    StructuredExporter,
    TextExporter,
    diatheke_to_lines,
    imp_to_lines,
)
from scripture_forge.tools import ToolResult
from scripture_forge.validator import parse_structured_doc, validate_with_repair

IMP_OUTPUT = """$$$Genesis 1:1
<w lemma="strong:H07225">In the beginning</w> God created
$$$Genesis 1:2
And the earth was without form.
$$$Genesis 1:3
"""


def _result(stdout: str = "") -> ToolResult:
    return ToolResult(
        command=["tool"], returncode=0, stdout=stdout, stderr="", duration_s=0.0, raw_stdout=stdout.encode("utf-8")
    )


class ParsingTests(unittest.TestCase):
    def test_imp_entries_become_reference_lines(self) -> None:
        self.assertEqual(
            imp_to_lines(IMP_OUTPUT),
            ["Genesis 1:1 In the beginning God created", "Genesis 1:2 And the earth was without form."],
        )

    def test_diatheke_output(self) -> None:
        output = "Genesis 1:1: In the beginning\nGenesis 1:2: And the earth\n(KJV)\n"
        self.assertEqual(diatheke_to_lines(output), ["Genesis 1:1 In the beginning", "Genesis 1:2 And the earth"])


class TextExporterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_mod2imp_is_preferred(self) -> None:
        caps = Capabilities({"mod2imp": "/usr/bin/mod2imp", "diatheke": "/usr/bin/diatheke"})
        with patch("scripture_forge.exporters.run_tool", return_value=_result(IMP_OUTPUT)) as run_tool:
            exported, outcome = TextExporter(caps).export(self.root, "KJV")

        self.assertEqual(exported.source, "mod2imp")
        self.assertEqual(len(exported.records), 2)
        self.assertEqual(run_tool.call_count, 1)
        command = run_tool.call_args.args[0]
        self.assertEqual(command, ["/usr/bin/mod2imp", "KJV"])
        self.assertEqual(run_tool.call_args.kwargs["env"]["SWORD_PATH"], str(self.root))

    def test_falls_back_to_diatheke_then_bundled_text(self) -> None:
        caps = Capabilities({"mod2imp": "/usr/bin/mod2imp", "diatheke": "/usr/bin/diatheke"})
        bundled = self.root / "modules" / "KJV.txt"
        bundled.parent.mkdir(parents=True)
        bundled.write_text(text_export(GENESIS), encoding="utf-8")

        with patch("scripture_forge.exporters.run_tool", side_effect=ToolError("exit 1")):
            exported, outcome = TextExporter(caps).export(self.root, "KJV")

        self.assertEqual(exported.source, "bundled_text")
        self.assertEqual([attempt.provider for attempt in outcome.attempts], ["mod2imp", "diatheke", "bundled_text"])
        self.assertEqual(len(exported.records), len(GENESIS))

    def test_placeholder_when_nothing_is_available(self) -> None:
        exported, outcome = TextExporter(Capabilities()).export(self.root, "KJV")
        self.assertEqual(exported.source, "placeholder")
        self.assertEqual(exported.records, [])
        self.assertTrue(exported.raw_text.endswith("\n"))


class StructuredExporterTests(unittest.TestCase):
    def test_bundled_osis_is_copied(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "KJV.osis.xml").write_text(osis_document(GENESIS), encoding="utf-8")
            output = root / "out" / "KJV.osis.xml"
            doc = StructuredExporter(Capabilities()).export(root, "KJV", output)
            self.assertEqual(doc.source, "bundled_osis")
            self.assertTrue(output.is_file())

    def test_missing_markup(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            doc = StructuredExporter(Capabilities()).export(root, "KJV", root / "out" / "KJV.osis.xml")
            self.assertFalse(doc.valid)
            self.assertEqual(doc.error, "missing")


class RendererTests(unittest.TestCase):
    def test_pdf_chain_moves_to_next_engine(self) -> None:
        caps = Capabilities({"pandoc": "/usr/bin/pandoc", "xelatex": "/usr/bin/xelatex", "wkhtmltopdf": "/usr/bin/wkhtmltopdf"})
        calls = []

        def _fake(command, **kwargs):
            calls.append(command)
            if "--pdf-engine=xelatex" in command:
                raise ToolError("xelatex missing fonts")
            Path(command[command.index("-o") + 1]).write_bytes(b"%PDF-1.7")
            return _result()

        with tempfile.TemporaryDirectory() as tmp:
            output = Path(tmp) / "KJV.pdf"
            with patch("scripture_forge.exporters.run_tool", side_effect=_fake):
                rendered = Renderer(caps).render_markdown("# KJV\n", output, "pdf", title="KJV")
            self.assertEqual(rendered, output)
            self.assertTrue(output.is_file())
        self.assertEqual(len(calls), 2)
        self.assertIn("--pdf-engine=wkhtmltopdf", calls[1])

    def test_no_renderer_available(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ChainExhausted):
                Renderer(Capabilities()).render_markdown("# x\n", Path(tmp) / "x.epub", "epub")


def _emitting_tool(directory: Path, name: str, payload: bytes) -> Path:
    """Write an executable that prints ``payload`` verbatim on stdout."""
    data = directory / f"{name}.out"
    data.write_bytes(payload)
    script = directory / name
    script.write_text(f'#!/bin/sh\ncat "{data}"\n', encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def _cp1252_osis(declared: str) -> bytes:
    document = osis_document(GENESIS, title="Café Bible").replace(
        '<?xml version="1.0" encoding="UTF-8"?>\n', declared
    )
    return document.encode("cp1252")


@unittest.skipIf(os.name == "nt", "needs a POSIX shell")
class ToolEncodingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _export_osis(self, payload: bytes):
        tool = _emitting_tool(self.root, "mod2osis", payload)
        output = self.root / "out" / "KJV.osis.xml"
        doc = StructuredExporter(Capabilities({"mod2osis": str(tool)})).export(self.root, "KJV", output)
        self.assertEqual(doc.source, "mod2osis")
        return validate_with_repair(doc, 1024)

    def _document_text(self, path: Path) -> str:
        return "".join(parse_structured_doc(path).getroot().itertext())

    def test_declared_cp1252_output_is_kept_byte_for_byte(self) -> None:
        payload = _cp1252_osis('<?xml version="1.0" encoding="windows-1252"?>\n')
        doc = self._export_osis(payload)

        self.assertTrue(doc.valid)
        self.assertFalse(doc.repaired)
        self.assertEqual(doc.path.read_bytes(), payload)
        text = self._document_text(doc.path)
        self.assertIn("Café", text)
        self.assertNotIn("\ufffd", text)

    def test_undeclared_cp1252_output_is_decoded_by_repair(self) -> None:
        doc = self._export_osis(_cp1252_osis('<?xml version="1.0"?>\n'))

        self.assertTrue(doc.valid)
        self.assertTrue(doc.repaired)
        text = self._document_text(doc.path)
        self.assertIn("Café", text)
        self.assertNotIn("\ufffd", text)

    def test_text_export_decodes_cp1252_tool_output(self) -> None:
        imp = "$$$Genesis 1:1\nIn the beginning a café\n".encode("cp1252")
        tool = _emitting_tool(self.root, "mod2imp", imp)
        exported, _ = TextExporter(Capabilities({"mod2imp": str(tool)})).export(self.root, "KJV")

        self.assertEqual(exported.source, "mod2imp")
        self.assertIn("café", exported.raw_text)
        self.assertNotIn("\ufffd", exported.raw_text)


if __name__ == "__main__":
    unittest.main()
