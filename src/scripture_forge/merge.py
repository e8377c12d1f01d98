"""Per-language PDF merging with an ordered fallback chain."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from .capabilities import Capabilities
from .chain import Attempt, Provider, file_nonempty, run_chain
from .diagnostics import MERGE_FAILED, RunDiagnostics
from .errors import ChainExhausted
from .tools import DEFAULT_TIMEOUT_S, run_tool

log = logging.getLogger(__name__)

INDEX_PROVIDER = "index_document"


@dataclass(frozen=True)
class Merger:
    name: str
    merge: Callable[[List[Path], Path], object]
    available: bool = True


class IndexRenderer(Protocol):
    def render_markdown(self, markdown: str, output: Path, fmt: str, *, title: str = "") -> Path:
        ...


@dataclass
class MergeResult:
    language: str
    output: Optional[Path]
    provider: Optional[str]
    attempts: List[Attempt]

    @property
    def ok(self) -> bool:
        return self.output is not None


def default_mergers(capabilities: Capabilities, timeout_s: int = DEFAULT_TIMEOUT_S) -> List[Merger]:
    """pdfunite, then qpdf, then Ghostscript; fixed order."""

    def _pdfunite(inputs: List[Path], output: Path) -> None:
        run_tool([capabilities.require("pdfunite"), *map(str, inputs), str(output)], timeout_s=timeout_s)

    def _qpdf(inputs: List[Path], output: Path) -> None:
        run_tool(
            [capabilities.require("qpdf"), "--empty", "--pages", *map(str, inputs), "--", str(output)],
            timeout_s=timeout_s,
        )

    def _gs(inputs: List[Path], output: Path) -> None:
        run_tool(
            [
                capabilities.require("gs"),
                "-dBATCH",
                "-dNOPAUSE",
                "-dQUIET",
                "-sDEVICE=pdfwrite",
                f"-sOutputFile={output}",
                *map(str, inputs),
            ],
            timeout_s=timeout_s,
        )

    return [
        Merger("pdfunite", _pdfunite, capabilities.has("pdfunite")),
        Merger("qpdf", _qpdf, capabilities.has("qpdf")),
        Merger("gs", _gs, capabilities.has("gs")),
    ]


def index_markdown(language: str, inputs: Sequence[Path]) -> str:
    lines = [f"# Merged documents: {language}", ""]
    lines.extend(f"- {path.name}" for path in inputs)
    return "\n".join(lines) + "\n"


def merge_documents(
    language: str,
    inputs: Sequence[Path],
    output: Path,
    mergers: Sequence[Merger],
    index_renderer: Optional[IndexRenderer],
    diagnostics: RunDiagnostics,
) -> MergeResult:
    """Merge ``inputs`` into ``output``; the first merger producing a non-empty file wins.

    When every merger fails, an index document listing the inputs is rendered
    instead. If that fails too, ``merge_failed`` is recorded and the run goes on.
    """
    inputs = list(inputs)
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)

    def _provider(merger: Merger) -> Provider[Path]:
        def _run() -> Path:
            output.unlink(missing_ok=True)
            merger.merge(inputs, output)
            return output

        return Provider(merger.name, _run, merger.available)

    providers = [_provider(merger) for merger in mergers]
    if index_renderer is not None:
        providers.append(
            Provider(
                INDEX_PROVIDER,
                lambda: index_renderer.render_markdown(
                    index_markdown(language, inputs), output, "pdf", title=f"Merged documents: {language}"
                ),
            )
        )
    try:
        outcome = run_chain(f"merge {language}", providers, file_nonempty)
    except ChainExhausted as exc:
        output.unlink(missing_ok=True)
        diagnostics.record(f"merge:{language}", MERGE_FAILED, str(exc))
        log.warning("Merge failed for %s: %s", language, exc)
        return MergeResult(language=language, output=None, provider=None, attempts=exc.attempts)
    if outcome.provider == INDEX_PROVIDER:
        log.warning("All mergers failed for %s; wrote index document %s", language, output)
    return MergeResult(language=language, output=outcome.value, provider=outcome.provider, attempts=outcome.attempts)
