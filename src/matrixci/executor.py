# executor.py
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, Optional

from .conditions import builtin_variables, evaluate, host_family
from .model import JobConfig, JobOutcome, JobStatus, Pipeline, Step, StepOutcome, StepStatus
from .runner import run_step
from .ui.console import get_console


def _skip(step: Step, reason: str) -> StepOutcome:
    return StepOutcome(name=step.name, status=StepStatus.SKIPPED, always=step.always, error=reason)


def _host_matches(step: Step) -> bool:
    if not step.host:
        return True
    return step.host.strip().lower() == host_family()


def run_job(
    pipeline: Pipeline,
    config: JobConfig,
    *,
    workspace: str | Path = ".",
    timeout: float | None = None,
    cancel: Optional[threading.Event] = None,
) -> JobOutcome:
    """
    Run the pipeline's steps for one job, in order.

    Pending -> Running -> Succeeded | Failed (| Canceled). After the first
    failing "on_success" step, only "always" steps still run.
    """
    console = get_console()
    outcome = JobOutcome(config=config, status=JobStatus.RUNNING)
    builtins = builtin_variables()
    exported: Dict[str, str] = {}
    failed = False
    canceled = False
    start = time.monotonic()

    console.print_job_start(config.identity)

    for step in pipeline.steps:
        if canceled or (cancel is not None and cancel.is_set()):
            canceled = True
            outcome.steps.append(_skip(step, "run canceled"))
            continue

        if not evaluate(step.condition, config.variables, builtins):
            result = _skip(step, f"condition is false: {step.condition}")
        elif not _host_matches(step):
            result = _skip(step, f"host is {host_family()}, step needs {step.host}")
        elif failed and not step.always:
            result = _skip(step, "a previous step failed")
        else:
            console.print_step(config.identity, step.name)
            result = run_step(
                step,
                config,
                workspace=workspace,
                timeout=timeout,
                exported=exported,
                cancel=cancel,
            )
            exported.update(result.exports)
            for name, value in result.exports.items():
                console.print_debug(f"[{config.identity}] {step.name} exported {name}={value}")

        outcome.steps.append(result)
        console.print_step_result(config.identity, result)

        if result.status == StepStatus.CANCELED:
            canceled = True
        elif result.failed and not step.always:
            failed = True

    outcome.duration = time.monotonic() - start
    outcome.status = outcome.verdict()
    console.print_job_result(config.identity, outcome.status, outcome.duration)
    return outcome
