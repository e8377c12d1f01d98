"""Single-module pipeline: intake, descriptor, export, validate, split, measure, package."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import artifacts
from .capabilities import Capabilities
from .config import Config
from .coverage import compute_coverage
from .descriptor import resolve_descriptor
from .diagnostics import (
    BAD_STRUCTURED_DOC,
    EXPORT_FAILED,
    LANG_EXCLUDED,
    LICENSE_EXCLUDED,
    MODULE_EXCLUDED,
    MODULE_FAILED,
    RENDER_FAILED,
    LanguageMergeQueue,
    RunDiagnostics,
)
from .errors import ChainExhausted
from .exporters import EXPORT_TOOL_SOURCES, RENDER_FORMATS, Renderer, StructuredExporter, TextExporter
from .intake import Extractor, extract_builtin, intake_archive, secondary_extractors
from .language import canonicalize
from .models import (
    COVERAGE_TEXT_FALLBACK,
    DESCRIPTOR_RESOLVED,
    DISCOVERED,
    EXPORTED,
    FAILED,
    FILTERED_OUT,
    PACKAGED,
    QUARANTINED,
    ModuleArchive,
    ModuleDescriptor,
    ModuleResult,
)
from .references import Buckets, bucketize
from .validator import validate_with_repair

log = logging.getLogger(__name__)

MODULES_DIRNAME = "modules"
WORK_DIRNAME = ".work"


@dataclass
class PipelineContext:
    """Everything a worker needs; shared pieces are either immutable or lock-guarded."""

    config: Config
    capabilities: Capabilities
    output_root: Path
    diagnostics: RunDiagnostics
    merge_queue: LanguageMergeQueue
    text_exporter: TextExporter
    structured_exporter: StructuredExporter
    renderer: Renderer
    primary_extractor: Extractor = extract_builtin
    secondary: Sequence[tuple[str, Extractor]] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        config: Config,
        capabilities: Capabilities,
        output_root: Path,
        diagnostics: Optional[RunDiagnostics] = None,
        merge_queue: Optional[LanguageMergeQueue] = None,
    ) -> "PipelineContext":
        timeout_s = config.tool_timeout_s
        return cls(
            config=config,
            capabilities=capabilities,
            output_root=Path(output_root),
            diagnostics=diagnostics or RunDiagnostics(),
            merge_queue=merge_queue or LanguageMergeQueue(),
            text_exporter=TextExporter(capabilities, timeout_s),
            structured_exporter=StructuredExporter(capabilities, timeout_s),
            renderer=Renderer(capabilities, timeout_s),
            secondary=tuple(secondary_extractors(capabilities, timeout_s)),
        )

    def module_dir(self, module_id: str) -> Path:
        return self.output_root / MODULES_DIRNAME / module_id

    def work_dir(self, module_id: str) -> Path:
        return self.output_root / WORK_DIRNAME / module_id


def filter_reason(descriptor: ModuleDescriptor, config: Config) -> Optional[tuple[str, str]]:
    """Return ``(category, detail)`` when configuration excludes the module."""
    module_key = descriptor.module_id.lower()
    include_modules = {name.lower() for name in config.include_modules}
    exclude_modules = {name.lower() for name in config.exclude_modules}
    if include_modules and module_key not in include_modules:
        return MODULE_EXCLUDED, "not in include_modules"
    if module_key in exclude_modules:
        return MODULE_EXCLUDED, "in exclude_modules"
    include_langs = {canonicalize(lang) for lang in config.include_langs}
    exclude_langs = {canonicalize(lang) for lang in config.exclude_langs}
    if include_langs and descriptor.language not in include_langs:
        return LANG_EXCLUDED, f"{descriptor.language} not in include_langs"
    if descriptor.language in exclude_langs:
        return LANG_EXCLUDED, f"{descriptor.language} in exclude_langs"
    if config.exclude_restricted and descriptor.license_restricted:
        return LICENSE_EXCLUDED, descriptor.distribution_license or "cipher key present"
    return None


class ModulePipeline:
    def __init__(self, ctx: PipelineContext, archive: ModuleArchive):
        self.ctx = ctx
        self.archive = archive
        self.module_id = archive.module_id
        self.result = ModuleResult(module_id=archive.module_id, state=DISCOVERED)

    def run(self) -> ModuleResult:
        ctx = self.ctx
        module_root = intake_archive(
            self.archive,
            ctx.work_dir(self.module_id),
            ctx.diagnostics,
            primary=ctx.primary_extractor,
            secondary=ctx.secondary,
        )
        if module_root is None:
            self.result.state = QUARANTINED
            self.result.skip_reason = "bad_archive"
            return self.result

        descriptor = resolve_descriptor(module_root, self.module_id)
        self.result.descriptor = descriptor
        self.result.state = DESCRIPTOR_RESOLVED

        excluded = filter_reason(descriptor, ctx.config)
        if excluded is not None:
            category, detail = excluded
            ctx.diagnostics.record(self.module_id, category, detail)
            self.result.state = FILTERED_OUT
            self.result.skip_reason = category
            log.info("Skipping %s: %s (%s)", self.module_id, category, detail)
            return self.result

        self._export_and_package(module_root, descriptor)
        return self.result

    def _export_and_package(self, module_root: Path, descriptor: ModuleDescriptor) -> None:
        ctx = self.ctx
        config = ctx.config
        module_dir = ctx.module_dir(self.module_id)
        module_dir.mkdir(parents=True, exist_ok=True)
        paths = artifacts.module_paths(module_dir, self.module_id)
        produced: Dict[str, str] = {}

        exported, outcome = ctx.text_exporter.export(module_root, self.module_id)
        self.result.export_source = exported.source
        if exported.source not in EXPORT_TOOL_SOURCES:
            failures = "; ".join(f"{a.provider}: {a.error}" for a in outcome.attempts if not a.ok)
            ctx.diagnostics.record(self.module_id, EXPORT_FAILED, f"fell back to {exported.source} ({failures})")
        if config.enabled("text"):
            produced["text"] = str(artifacts.write_text(paths["text"], exported.raw_text))
        self.result.state = EXPORTED

        structured = validate_with_repair(
            ctx.structured_exporter.export(module_root, self.module_id, paths["osis"]),
            config.min_structured_bytes,
        )
        self.result.structured_valid = structured.valid
        if structured.valid:
            produced["osis"] = str(structured.path)
        else:
            ctx.diagnostics.record(self.module_id, BAD_STRUCTURED_DOC, structured.error or "invalid")

        buckets = bucketize(exported.records)
        self.result.verse_count = len(exported.records)
        self.result.book_count = len(buckets.books)
        if config.enabled("splits"):
            book_files, chapter_files = artifacts.write_splits(buckets, paths["books"], paths["chapters"])
            produced["books"] = str(paths["books"])
            produced["chapters"] = str(paths["chapters"])
            log.debug("%s: %d book and %d chapter splits", self.module_id, len(book_files), len(chapter_files))

        coverage = compute_coverage(structured, exported.raw_text)
        self.result.coverage_source = coverage.source
        self.result.coverage_count = len(coverage)
        if config.enabled("coverage"):
            produced["coverage"] = str(artifacts.write_coverage(coverage, paths["coverage"]))

        if config.enabled("verse_table"):
            csv_path, jsonl_path = artifacts.write_verse_tables(
                exported.records, self.module_id, paths["verses_csv"], paths["verses_jsonl"]
            )
            produced["verses_csv"] = str(csv_path)
            produced["verses_jsonl"] = str(jsonl_path)

        if config.enabled("lexicon") and structured.valid:
            produced["lexicon"] = str(artifacts.write_lexicon(structured.path, paths["lexicon"]))
        if not config.enabled("osis"):
            paths["osis"].unlink(missing_ok=True)
            produced.pop("osis", None)

        produced.update(self._render(descriptor, buckets, exported.raw_text, paths))

        self.result.artifacts = produced
        artifacts.write_metadata(self._metadata(), paths["meta"])
        produced["meta"] = str(paths["meta"])
        if config.enabled("bundle"):
            bundle, sidecar = artifacts.write_bundle(module_dir, paths["bundle"])
            produced["bundle"] = str(bundle)
            produced["bundle_sha256"] = str(sidecar)
        self.result.state = PACKAGED

    def _render(
        self,
        descriptor: ModuleDescriptor,
        buckets: Buckets,
        raw_text: str,
        paths: Dict[str, Path],
    ) -> Dict[str, str]:
        ctx = self.ctx
        config = ctx.config
        formats = [fmt for fmt in RENDER_FORMATS if config.enabled(fmt)]
        if not formats:
            return {}
        title = descriptor.description or descriptor.module_id
        source = paths["markdown"]
        source.write_text(artifacts.module_markdown(descriptor, buckets, raw_text), encoding="utf-8")
        produced: Dict[str, str] = {"markdown": str(source)}
        for fmt in formats:
            try:
                output = ctx.renderer.render(source, paths[fmt], fmt, title=title)
            except ChainExhausted as exc:
                paths[fmt].unlink(missing_ok=True)
                ctx.diagnostics.record(self.module_id, RENDER_FAILED, f"{fmt}: {exc}")
                continue
            produced[fmt] = str(output)
            if fmt == "pdf":
                ctx.merge_queue.append(descriptor.language, output)
            rendered_splits = self._render_splits(buckets, paths, fmt)
            if rendered_splits:
                produced[f"{fmt}_splits"] = str(len(rendered_splits))
        return produced

    def _render_splits(self, buckets: Buckets, paths: Dict[str, Path], fmt: str) -> List[Path]:
        config = self.ctx.config
        if not config.enabled("splits"):
            return []
        targets = [(bucket, paths["books"]) for bucket in buckets.books.values()]
        if config.enabled("chapter_documents"):
            targets.extend((bucket, paths["chapters"]) for bucket in buckets.chapters.values())
        rendered: List[Path] = []
        for bucket, directory in targets:
            output = directory / f"{bucket.storage_key}.{fmt}"
            try:
                rendered.append(
                    self.ctx.renderer.render_markdown(
                        artifacts.bucket_markdown(bucket.key, bucket), output, fmt, title=bucket.key
                    )
                )
            except ChainExhausted as exc:
                output.unlink(missing_ok=True)
                self.ctx.diagnostics.record(self.module_id, RENDER_FAILED, f"{fmt} split {bucket.key}: {exc}")
                break
        return rendered

    def _metadata(self) -> Dict[str, Any]:
        result = self.result
        return {
            "module_id": result.module_id,
            "descriptor": result.descriptor.to_dict() if result.descriptor else None,
            "export_source": result.export_source,
            "structured_valid": result.structured_valid,
            "coverage": {
                "source": result.coverage_source,
                "count": result.coverage_count,
                "approximate": result.coverage_source == COVERAGE_TEXT_FALLBACK,
            },
            "verse_count": result.verse_count,
            "book_count": result.book_count,
            "artifacts": dict(sorted(result.artifacts.items())),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }


def process_module(ctx: PipelineContext, archive: ModuleArchive) -> ModuleResult:
    """Run one module; any unexpected error is recorded and never escapes."""
    pipeline = ModulePipeline(ctx, archive)
    try:
        return pipeline.run()
    except Exception as exc:
        log.exception("Module %s failed", archive.module_id)
        ctx.diagnostics.record(archive.module_id, MODULE_FAILED, f"{type(exc).__name__}: {exc}")
        pipeline.result.state = FAILED
        pipeline.result.error = str(exc)
        return pipeline.result
