from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path
from typing import List

import sword_fixtures  # noqa: F401

from scripture_forge.capabilities import Capabilities
from scripture_forge.chain import Provider, run_chain
from scripture_forge.diagnostics import MERGE_FAILED, LanguageMergeQueue, RunDiagnostics
from scripture_forge.errors import ChainExhausted, ToolError
from scripture_forge.merge import INDEX_PROVIDER, Merger, default_mergers, merge_documents


def _broken(inputs: List[Path], output: Path) -> None:
    raise ToolError("merger crashed", command=["broken"], returncode=1)


def _empty_output(inputs: List[Path], output: Path) -> None:
    output.write_bytes(b"")


def _concatenate(inputs: List[Path], output: Path) -> None:
    output.write_bytes(b"".join(path.read_bytes() for path in inputs))


class _IndexRenderer:
    def __init__(self) -> None:
        self.markdown = None

    def render_markdown(self, markdown: str, output: Path, fmt: str, *, title: str = "") -> Path:
        self.markdown = markdown
        output.write_text(markdown, encoding="utf-8")
        return output


class _FailingRenderer:
    def render_markdown(self, markdown: str, output: Path, fmt: str, *, title: str = "") -> Path:
        raise ChainExhausted("render failed")


class ChainTests(unittest.TestCase):
    def test_first_successful_provider_wins(self) -> None:
        calls = []

        def _make(name, value):
            def _run():
                calls.append(name)
                return value

            return _run

        outcome = run_chain(
            "demo",
            [
                Provider("absent", _make("absent", "x"), available=False),
                Provider("blank", _make("blank", "")),
                Provider("good", _make("good", "value")),
                Provider("never", _make("never", "other")),
            ],
            bool,
        )
        self.assertEqual(outcome.provider, "good")
        self.assertEqual(calls, ["blank", "good"])
        self.assertEqual([attempt.error for attempt in outcome.attempts], ["unavailable", "no usable output", None])

    def test_exhausted_chain_carries_attempts(self) -> None:
        def _boom():
            raise RuntimeError("boom")

        with self.assertRaises(ChainExhausted) as ctx:
            run_chain("demo", [Provider("boom", _boom)], bool)
        self.assertEqual(ctx.exception.attempts[0].error, "boom")


class MergeChainTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.inputs = []
        for name in ("b.pdf", "a.pdf"):
            path = self.root / name
            path.write_bytes(f"%PDF {name}".encode("ascii"))
            self.inputs.append(path)
        self.output = self.root / "merged" / "en.pdf"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_only_third_merger_succeeding(self) -> None:
        diagnostics = RunDiagnostics()
        mergers = [Merger("pdfunite", _broken), Merger("qpdf", _empty_output), Merger("gs", _concatenate)]

        result = merge_documents("en", self.inputs, self.output, mergers, _IndexRenderer(), diagnostics)

        self.assertTrue(result.ok)
        self.assertEqual(result.provider, "gs")
        self.assertEqual(self.output.read_bytes(), b"%PDF b.pdf%PDF a.pdf")
        self.assertEqual(diagnostics.count(MERGE_FAILED), 0)

    def test_index_fallback_lists_every_input(self) -> None:
        diagnostics = RunDiagnostics()
        renderer = _IndexRenderer()
        mergers = [Merger("pdfunite", _broken), Merger("qpdf", _broken), Merger("gs", _broken, available=False)]

        result = merge_documents("en", self.inputs, self.output, mergers, renderer, diagnostics)

        self.assertEqual(result.provider, INDEX_PROVIDER)
        self.assertTrue(self.output.is_file())
        listing = self.output.read_text(encoding="utf-8")
        for path in self.inputs:
            self.assertIn(path.name, listing)
        self.assertEqual(diagnostics.count(MERGE_FAILED), 0)

    def test_everything_failing_records_merge_failed(self) -> None:
        diagnostics = RunDiagnostics()
        result = merge_documents("en", self.inputs, self.output, [Merger("pdfunite", _broken)], _FailingRenderer(), diagnostics)

        self.assertFalse(result.ok)
        self.assertFalse(self.output.exists())
        self.assertEqual(diagnostics.count(MERGE_FAILED), 1)
        self.assertEqual(diagnostics.modules_with(MERGE_FAILED), ["merge:en"])

    def test_default_mergers_follow_capabilities(self) -> None:
        mergers = default_mergers(Capabilities({"qpdf": "/usr/bin/qpdf"}))
        self.assertEqual([merger.name for merger in mergers], ["pdfunite", "qpdf", "gs"])
        self.assertEqual([merger.available for merger in mergers], [False, True, False])


class SharedStateTests(unittest.TestCase):
    def test_concurrent_records_are_all_counted(self) -> None:
        diagnostics = RunDiagnostics()

        def _worker(index: int) -> None:
            for step in range(200):
                diagnostics.record(f"M{index}", "export_failed", str(step))

        threads = [threading.Thread(target=_worker, args=(index,)) for index in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(diagnostics.count("export_failed"), 1600)
        self.assertEqual(len(diagnostics.reasons()), 8)
        self.assertTrue(all(len(entries) == 200 for entries in diagnostics.reasons().values()))

    def test_merge_queue_filters_missing_files_and_sorts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            present_b = root / "b.pdf"
            present_a = root / "a.pdf"
            present_b.write_bytes(b"b")
            present_a.write_bytes(b"a")
            queue = LanguageMergeQueue()
            queue.append("en", present_b)
            queue.append("en", root / "gone.pdf")
            queue.append("en", present_a)
            queue.append("de", root / "missing.pdf")

            consumed = queue.consume()

        self.assertEqual(consumed["en"], [present_a, present_b])
        self.assertEqual(consumed["de"], [])
        with self.assertRaises(RuntimeError):
            queue.consume()
        with self.assertRaises(RuntimeError):
            queue.append("en", present_a)


if __name__ == "__main__":
    unittest.main()
