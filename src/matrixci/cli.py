# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from . import settings
from .errors import ConfigError
from .loader import load_pipeline
from .matrix import parse_filters
from .model import RunStatus
from .orchestrator import Orchestrator
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_pipeline_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find pipeline definitions in a directory: matrixci.yml / matrixci.yaml,
    *_pipeline.yml and *_workflow.py.
    """
    found: set[Path] = set()
    for pattern in ("matrixci.yml", "matrixci.yaml", "*_pipeline.yml", "*_pipeline.yaml", "*_workflow.py"):
        found.update(p for p in directory.glob(pattern) if p.is_file())
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the --pipeline argument or by discovery.

    Raises:
        SystemExit: If no file, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify an existing file:\n  matrixci run --pipeline matrixci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    candidates = find_pipeline_files()
    if not candidates:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline definition.",
            details=["Looked for:", "  matrixci.yml", "  *_pipeline.yml", "  *_workflow.py"],
            suggestion="Create matrixci.yml or pass --pipeline PATH",
        )
        sys.exit(EXIT_CONFIG)
    if len(candidates) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(p) for p in candidates],
            suggestion="matrixci run --pipeline <file>",
        )
        sys.exit(EXIT_CONFIG)
    return candidates[0]


def _load(pipeline_arg: str | None, only: tuple[str, ...], ctx: click.Context):
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        definition = load_pipeline(path)
        console.print_debug(
            f"Loaded {path}: {len(definition.dimensions)} dimension(s), {len(definition.steps)} step(s)"
        )
        return path, definition, parse_filters(only)
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_error("Failed to load pipeline", f"Could not load {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG)


pipeline_option = click.option(
    "--pipeline", "-p", default=None, help="Pipeline file (.yml or .py); discovered if omitted"
)
only_option = click.option(
    "--only",
    multiple=True,
    metavar="DIM=VARIANT[,VARIANT]",
    help="Run a subset of the matrix (repeatable)",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, skipped steps)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: expand a build matrix, run its steps, aggregate the results."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@pipeline_option
@only_option
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Do not start new jobs after a job fails")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JUnit XML report here")
@click.option("--summary", "summary_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON run summary here")
@click.option("--workers", default=None, type=click.IntRange(min=1), help=f"Parallel jobs [default: {settings.WORKERS}]")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help=f"Default step timeout in seconds [default: {settings.STEP_TIMEOUT:g}]")
@click.option("--workspace", default=None, type=click.Path(file_okay=False, exists=True), help="Directory steps run in")
@click.pass_context
def run(ctx, pipeline, only, fail_fast, report_path, summary_path, workers, timeout, workspace):
    """Run every job of the pipeline's matrix."""
    console = get_console()
    path, definition, filters = _load(pipeline, only, ctx)

    orchestrator = Orchestrator(
        definition,
        only=filters,
        fail_fast=fail_fast,
        max_workers=workers,
        workspace=workspace,
        timeout=timeout,
    )

    try:
        jobs = orchestrator.plan()
        console.print_run_started(pipeline=definition.name, source=path.name, job_count=len(jobs))
        report = orchestrator.run()
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(report)

    if report_path:
        out = report.write_junit(report_path)
        console.print_info(f"JUnit report: {out} ({len(report.tests)} test cases)")
    if summary_path:
        out = report.write_summary(summary_path)
        console.print_info(f"Summary: {out}")

    if orchestrator.canceled:
        sys.exit(EXIT_INTERRUPTED)
    if report.status != RunStatus.SUCCEEDED:
        sys.exit(EXIT_FAILED)


@cli.command()
@pipeline_option
@only_option
@click.pass_context
def expand(ctx, pipeline, only):
    """Print the jobs the matrix expands to, without running anything."""
    console = get_console()
    _path, definition, filters = _load(pipeline, only, ctx)
    try:
        jobs = Orchestrator(definition, only=filters).plan()
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_plan(jobs)
    console.print_info(f"{len(jobs)} job(s), {len(definition.steps)} step(s) each")


@cli.command()
@pipeline_option
@click.pass_context
def validate(ctx, pipeline):
    """Check the pipeline definition (matrix, steps, conditions)."""
    console = get_console()
    path, definition, _filters = _load(pipeline, (), ctx)
    try:
        jobs = Orchestrator(definition).plan()
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_info(f"{path.name}: OK ({len(jobs)} job(s), {len(definition.steps)} step(s))")


if __name__ == "__main__":
    cli()
