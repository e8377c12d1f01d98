#!/usr/bin/env python3
"""Command line entry point for scripture-forge."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .capabilities import discover
from .config import Config
from .errors import ConfigError, SetupError
from .orchestrator import RunReport, run_batch

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
RUN_LOG_NAME = "run.log"
EXIT_SETUP_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="scripture-forge",
        description="Convert a directory of scripture module archives into text, markup and document artifacts.",
    )
    parser.add_argument("source", type=Path, help="Directory containing module archives.")
    parser.add_argument("output", type=Path, help="Directory to write artifacts to.")
    parser.add_argument("--config", type=Path, default=None, help="Path to a JSON configuration file.")
    parser.add_argument("--parallel", action="store_true", help="Process modules with a worker pool.")
    parser.add_argument("--workers", type=int, default=None, help="Worker count for --parallel.")
    parser.add_argument(
        "--self-test",
        action="store_true",
        help="Process only the first archive found, as a quick smoke run.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log INFO messages to the console.")
    return parser.parse_args(argv)


def prepare_output(output_root: Path) -> Path:
    try:
        output_root.mkdir(parents=True, exist_ok=True)
        log_path = output_root / RUN_LOG_NAME
        with log_path.open("a", encoding="utf-8"):
            pass
    except OSError as exc:
        raise SetupError(f"Output directory {output_root} is not writable: {exc}") from exc
    return log_path


def configure_logging(log_path: Path, verbose: bool = False) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.addHandler(console_handler)


def load_config(args: argparse.Namespace) -> Config:
    config = Config.from_env(args.config)
    if args.parallel:
        config.parallel = True
    if args.workers is not None:
        if args.workers < 1:
            raise ConfigError("--workers must be >= 1")
        config.throttle = args.workers
    return config


def render_summary(report: RunReport, console: Console) -> None:
    summary = report.summary()
    table = Table(title="Scripture Forge Run Summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Modules discovered", str(summary["modules_total"]))
    table.add_row("Modules processed", str(summary["modules_processed"]))
    table.add_row("Modules failed", str(len(summary["modules_failed"])))
    table.add_row("Missing valid structured markup", str(len(summary["missing_structured"])))
    table.add_row("Merged languages", ", ".join(sorted(report.merged)) or "-")
    console.print(table)

    issues = [(module_id, "module failed") for module_id in summary["modules_failed"]]
    issues.extend((module_id, "no valid structured markup") for module_id in summary["missing_structured"])
    if issues:
        issue_table = Table(title="Module Issues")
        issue_table.add_column("Module")
        issue_table.add_column("Issue")
        for module_id, issue in issues:
            issue_table.add_row(module_id, issue)
        console.print(issue_table)

    if summary["skipped"]:
        skipped = Table(title="Skipped Modules")
        skipped.add_column("Module")
        skipped.add_column("Reason", overflow="fold")
        for module_id, reason in summary["skipped"].items():
            skipped.add_row(module_id, reason)
        console.print(skipped)

    if summary["categories"]:
        categories = Table(title="Diagnostics")
        categories.add_column("Category")
        categories.add_column("Count", justify="right")
        for category, count in summary["categories"].items():
            categories.add_row(category, str(count))
        console.print(categories)


def run(argv: Optional[List[str]] = None, console: Optional[Console] = None) -> int:
    args = parse_args(argv)
    console = console or Console()
    source = args.source
    output_root = args.output
    if not source.is_dir():
        raise SetupError(f"Source directory not found: {source}")
    log_path = prepare_output(output_root)
    configure_logging(log_path, args.verbose)
    config = load_config(args)
    log.info("Run %s: source=%s output=%s", config.run_id, source, output_root)

    capabilities = discover()
    report = run_batch(source, output_root, config, capabilities, self_test=args.self_test, console=console)
    render_summary(report, console)
    console.print(f"[bold green]Artifacts written to[/bold green] {output_root}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    console = Console()
    try:
        code = run(argv, console)
    except (SetupError, ConfigError) as exc:
        console.print(f"[red]{exc}[/red]")
        log.error("Fatal setup error: %s", exc)
        raise SystemExit(EXIT_SETUP_ERROR) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
