"""Batch orchestration: fan modules out to workers, then aggregate once they all finish."""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from . import catalog, search
from .capabilities import Capabilities
from .config import Config
from .diagnostics import BAD_STRUCTURED_DOC, MODULE_FAILED, RunDiagnostics
from .intake import scan_archives
from .merge import MergeResult, default_mergers, merge_documents
from .models import FAILED, PACKAGED, ModuleArchive, ModuleResult
from .pipeline import PipelineContext, process_module

log = logging.getLogger(__name__)

MERGED_DIRNAME = "merged"
DIAGNOSTICS_NAME = "diagnostics.json"


@dataclass
class RunReport:
    results: List[ModuleResult]
    diagnostics: RunDiagnostics
    merges: List[MergeResult] = field(default_factory=list)
    outputs: Dict[str, Path] = field(default_factory=dict)

    @property
    def merged(self) -> Dict[str, Path]:
        return {merge.language: merge.output for merge in self.merges if merge.output is not None}

    def summary(self) -> Dict[str, Any]:
        return {
            "modules_total": len(self.results),
            "modules_processed": sum(1 for result in self.results if result.state == PACKAGED),
            "modules_failed": sorted(result.module_id for result in self.results if result.state == FAILED),
            "missing_structured": self.diagnostics.modules_with(BAD_STRUCTURED_DOC),
            "skipped": self.diagnostics.skipped_modules(),
            "categories": self.diagnostics.counts(),
        }


def _run_one(ctx: PipelineContext, archive: ModuleArchive) -> ModuleResult:
    result = process_module(ctx, archive)
    log.info("Module %s finished in state %s", archive.module_id, result.state)
    return result


def run_modules(
    ctx: PipelineContext,
    archives: Sequence[ModuleArchive],
    *,
    parallel: bool,
    workers: int,
    console: Optional[Console] = None,
) -> List[ModuleResult]:
    """Process every archive; returns only after all of them have finished."""
    console = console or Console()
    results: List[ModuleResult] = []
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Processing modules", total=len(archives))
        if not parallel or workers <= 1:
            for archive in archives:
                results.append(_run_one(ctx, archive))
                progress.advance(task)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_map = {executor.submit(_run_one, ctx, archive): archive for archive in archives}
                for future in as_completed(future_map):
                    archive = future_map[future]
                    try:
                        results.append(future.result())
                    except Exception as exc:  # pragma: no cover - process_module already contains failures
                        log.exception("Worker for %s crashed", archive.module_id)
                        ctx.diagnostics.record(archive.module_id, MODULE_FAILED, str(exc))
                        results.append(ModuleResult(module_id=archive.module_id, state=FAILED, error=str(exc)))
                    progress.advance(task)
    return sorted(results, key=lambda result: result.module_id)


def merge_languages(ctx: PipelineContext) -> List[MergeResult]:
    mergers = default_mergers(ctx.capabilities, ctx.config.tool_timeout_s)
    merges: List[MergeResult] = []
    for language, inputs in ctx.merge_queue.consume().items():
        if not inputs:
            continue
        output = ctx.output_root / MERGED_DIRNAME / f"{language}.pdf"
        merges.append(merge_documents(language, inputs, output, mergers, ctx.renderer, ctx.diagnostics))
    return merges


def write_diagnostics(report: RunReport, output_root: Path, run_id: str, capabilities: Capabilities) -> Path:
    path = output_root / DIAGNOSTICS_NAME
    payload = {
        "run_id": run_id,
        "capabilities": capabilities.to_dict(),
        "summary": report.summary(),
        **report.diagnostics.to_dict(),
    }
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return path


def run_batch(
    source_dir: Path,
    output_root: Path,
    config: Config,
    capabilities: Capabilities,
    *,
    self_test: bool = False,
    console: Optional[Console] = None,
    ctx: Optional[PipelineContext] = None,
) -> RunReport:
    """Run the whole batch and write the run-level outputs under ``output_root``."""
    output_root = Path(output_root)
    output_root.mkdir(parents=True, exist_ok=True)
    ctx = ctx or PipelineContext.build(config, capabilities, output_root)
    archives = scan_archives(Path(source_dir))
    if self_test:
        archives = archives[:1]
    log.info(
        "Discovered %d archive(s); parallel=%s throttle=%d",
        len(archives),
        config.parallel,
        config.throttle,
    )

    results = run_modules(ctx, archives, parallel=config.parallel, workers=config.throttle, console=console)
    report = RunReport(results=results, diagnostics=ctx.diagnostics)
    report.merges = merge_languages(ctx)

    csv_path, json_path = catalog.write_catalog(results, output_root)
    report.outputs["catalog_csv"] = csv_path
    report.outputs["catalog_json"] = json_path
    report.outputs["index"] = catalog.write_index(results, output_root, config.site_title, report.merged)
    report.outputs["feed"] = catalog.write_feed(results, output_root, config.site_title)
    search_path = search.build_search_store(results, output_root)
    if search_path is not None:
        report.outputs["search"] = search_path
    report.outputs["diagnostics"] = write_diagnostics(report, output_root, config.run_id, ctx.capabilities)
    return report
