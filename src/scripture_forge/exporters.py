"""Calls into external text extraction and document rendering services.

Each export is an ordered provider chain (see ``chain.run_chain``); the
capability map decides which providers are available, never a re-probe.
"""
from __future__ import annotations

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from .capabilities import Capabilities
from .chain import ChainOutcome, Provider, file_nonempty, run_chain
from .errors import ChainExhausted
from .models import ExportedText, StructuredDoc
from .references import iter_reference_records
from .tools import DEFAULT_TIMEOUT_S, run_tool, sword_env
from .validator import decode_best_effort

log = logging.getLogger(__name__)

IMP_KEY_PREFIX = "$$$"
MARKUP_RE = re.compile(r"<[^>]+>")
DIATHEKE_LINE_RE = re.compile(r"^(?P<ref>.+? \d+:\d+):\s*(?P<text>.*)$")
DIATHEKE_RANGE = "Genesis 1:1-Revelation 22:21"
PLACEHOLDER_TEMPLATE = "# {module_id}: text export unavailable\n"

EXPORT_TOOL_SOURCES = frozenset({"mod2imp", "diatheke"})
RENDER_FORMATS = ("pdf", "epub", "docx")


def _clean_entry(text: str) -> str:
    return re.sub(r"\s+", " ", MARKUP_RE.sub(" ", text)).strip()


def imp_to_lines(imp_text: str) -> List[str]:
    """Flatten IMP output (``$$$key`` then entry body) into ``<key> <text>`` lines."""
    lines: List[str] = []
    key: Optional[str] = None
    body: List[str] = []

    def _flush() -> None:
        if key is None:
            return
        text = _clean_entry(" ".join(body))
        if text:
            lines.append(f"{key} {text}")

    for raw in imp_text.splitlines():
        if raw.startswith(IMP_KEY_PREFIX):
            _flush()
            key = raw[len(IMP_KEY_PREFIX):].strip()
            body = []
        elif key is not None:
            body.append(raw)
    _flush()
    return lines


def diatheke_to_lines(output: str) -> List[str]:
    lines: List[str] = []
    for raw in output.splitlines():
        match = DIATHEKE_LINE_RE.match(raw.strip())
        if match:
            text = _clean_entry(match.group("text"))
            if text:
                lines.append(f"{match.group('ref')} {text}")
    return lines


def find_bundled_file(root: Path, module_id: str, suffixes: tuple[str, ...], *, contains: Optional[bytes] = None) -> Optional[Path]:
    """Pick a file shipped inside the archive, preferring names that carry the module id."""
    candidates = [
        path
        for path in sorted(Path(root).rglob("*"))
        if path.is_file() and path.name.lower().endswith(suffixes) and path.stat().st_size > 0
    ]
    if contains is not None:
        candidates = [path for path in candidates if contains in path.read_bytes()[:4096]]
    preferred = [path for path in candidates if module_id.lower() in path.name.lower()]
    pool = preferred or candidates
    return pool[0] if pool else None


class TextExporter:
    def __init__(self, capabilities: Capabilities, timeout_s: int = DEFAULT_TIMEOUT_S):
        self.capabilities = capabilities
        self.timeout_s = timeout_s

    def providers(self, module_root: Path, module_id: str) -> List[Provider[str]]:
        return [
            Provider("mod2imp", lambda: self._mod2imp(module_root, module_id), self.capabilities.has("mod2imp")),
            Provider("diatheke", lambda: self._diatheke(module_root, module_id), self.capabilities.has("diatheke")),
            Provider("bundled_text", lambda: self._bundled(module_root, module_id)),
            Provider("placeholder", lambda: PLACEHOLDER_TEMPLATE.format(module_id=module_id)),
        ]

    def export(self, module_root: Path, module_id: str) -> tuple[ExportedText, ChainOutcome[str]]:
        outcome = run_chain(
            f"text export {module_id}",
            self.providers(module_root, module_id),
            lambda text: bool(text and text.strip()),
        )
        raw_text = outcome.value if outcome.value.endswith("\n") else outcome.value + "\n"
        exported = ExportedText(
            module_id=module_id,
            raw_text=raw_text,
            source=outcome.provider,
            records=list(iter_reference_records(raw_text.splitlines())),
        )
        return exported, outcome

    def _mod2imp(self, module_root: Path, module_id: str) -> str:
        result = run_tool(
            [self.capabilities.require("mod2imp"), module_id],
            timeout_s=self.timeout_s,
            env=sword_env(module_root),
        )
        return "\n".join(imp_to_lines(decode_best_effort(result.raw_stdout)))

    def _diatheke(self, module_root: Path, module_id: str) -> str:
        result = run_tool(
            [self.capabilities.require("diatheke"), "-b", module_id, "-f", "plain", "-k", DIATHEKE_RANGE],
            timeout_s=self.timeout_s,
            env=sword_env(module_root),
        )
        return "\n".join(diatheke_to_lines(decode_best_effort(result.raw_stdout)))

    def _bundled(self, module_root: Path, module_id: str) -> str:
        path = find_bundled_file(module_root, module_id, (".txt",))
        if path is None:
            return ""
        return decode_best_effort(path.read_bytes()).replace("\r\n", "\n").replace("\r", "\n")


class StructuredExporter:
    def __init__(self, capabilities: Capabilities, timeout_s: int = DEFAULT_TIMEOUT_S):
        self.capabilities = capabilities
        self.timeout_s = timeout_s

    def export(self, module_root: Path, module_id: str, output_path: Path) -> StructuredDoc:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        providers = [
            Provider(
                "mod2osis",
                lambda: self._mod2osis(module_root, module_id, output_path),
                self.capabilities.has("mod2osis"),
            ),
            Provider("bundled_osis", lambda: self._bundled(module_root, module_id, output_path)),
        ]
        try:
            outcome = run_chain(f"structured export {module_id}", providers, file_nonempty)
        except ChainExhausted as exc:
            log.info("No structured markup for %s: %s", module_id, exc)
            output_path.unlink(missing_ok=True)
            return StructuredDoc(path=output_path, valid=False, error="missing")
        return StructuredDoc(path=output_path, source=outcome.provider)

    def _mod2osis(self, module_root: Path, module_id: str, output_path: Path) -> Path:
        result = run_tool(
            [self.capabilities.require("mod2osis"), module_id],
            timeout_s=self.timeout_s,
            env=sword_env(module_root),
        )
        # Written as emitted; the validator owns decoding.
        output_path.write_bytes(result.raw_stdout)
        return output_path

    def _bundled(self, module_root: Path, module_id: str, output_path: Path) -> Path:
        path = find_bundled_file(module_root, module_id, (".osis.xml", ".osis", ".xml"), contains=b"<osis")
        if path is None:
            raise FileNotFoundError("no bundled OSIS document")
        shutil.copyfile(path, output_path)
        return output_path


class Renderer:
    """Rendering collaborator: markdown source in, page/e-book/word documents out."""

    def __init__(self, capabilities: Capabilities, timeout_s: int = DEFAULT_TIMEOUT_S):
        self.capabilities = capabilities
        self.timeout_s = timeout_s

    def providers(self, source: Path, output: Path, fmt: str, title: str) -> List[Provider[Path]]:
        caps = self.capabilities
        pandoc_ok = caps.has("pandoc")
        if fmt == "pdf":
            return [
                Provider("pandoc-xelatex", lambda: self._pandoc(source, output, title, "xelatex"), pandoc_ok and caps.has("xelatex")),
                Provider(
                    "pandoc-wkhtmltopdf",
                    lambda: self._pandoc(source, output, title, "wkhtmltopdf"),
                    pandoc_ok and caps.has("wkhtmltopdf"),
                ),
                Provider("soffice", lambda: self._soffice(source, output, "pdf"), caps.has("soffice")),
            ]
        if fmt == "epub":
            return [
                Provider("pandoc", lambda: self._pandoc(source, output, title), pandoc_ok),
                Provider("ebook-convert", lambda: self._ebook_convert(source, output, title), caps.has("ebook-convert")),
            ]
        if fmt == "docx":
            return [
                Provider("pandoc", lambda: self._pandoc(source, output, title), pandoc_ok),
                Provider("soffice", lambda: self._soffice(source, output, "docx"), caps.has("soffice")),
            ]
        raise ValueError(f"Unsupported render format: {fmt}")

    def render(self, source: Path, output: Path, fmt: str, *, title: str = "") -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        outcome = run_chain(f"render {output.name}", self.providers(source, output, fmt, title), file_nonempty)
        log.debug("Rendered %s with %s", output, outcome.provider)
        return outcome.value

    def render_markdown(self, markdown: str, output: Path, fmt: str, *, title: str = "") -> Path:
        with tempfile.TemporaryDirectory(prefix="forge-render-") as tmp:
            source = Path(tmp) / f"{output.stem}.md"
            source.write_text(markdown, encoding="utf-8")
            return self.render(source, output, fmt, title=title)

    def _pandoc(self, source: Path, output: Path, title: str, pdf_engine: Optional[str] = None) -> Path:
        command = [self.capabilities.require("pandoc"), str(source), "-o", str(output), "--standalone"]
        if title:
            command.extend(["--metadata", f"title={title}"])
        if pdf_engine:
            command.append(f"--pdf-engine={pdf_engine}")
        run_tool(command, timeout_s=self.timeout_s)
        return output

    def _ebook_convert(self, source: Path, output: Path, title: str) -> Path:
        command = [self.capabilities.require("ebook-convert"), str(source), str(output)]
        if title:
            command.extend(["--title", title])
        run_tool(command, timeout_s=self.timeout_s)
        return output

    def _soffice(self, source: Path, output: Path, target: str) -> Path:
        # Each call gets its own profile so concurrent workers never share one.
        with tempfile.TemporaryDirectory(prefix="forge-soffice-") as tmp:
            tmp_path = Path(tmp)
            run_tool(
                [
                    self.capabilities.require("soffice"),
                    f"-env:UserInstallation={(tmp_path / 'profile').as_uri()}",
                    "--headless",
                    "--convert-to",
                    target,
                    "--outdir",
                    str(tmp_path),
                    str(source),
                ],
                timeout_s=self.timeout_s,
            )
            produced = tmp_path / f"{source.stem}.{target}"
            if not produced.is_file():
                raise FileNotFoundError(f"soffice produced no {target} for {source.name}")
            shutil.move(str(produced), str(output))
        return output
