# orchestrator.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Deque, Dict, List, Mapping, Optional, Sequence

from . import settings
from .executor import run_job
from .matrix import expand_pipeline
from .model import JobConfig, JobOutcome, JobStatus, Pipeline, StepOutcome, StepStatus
from .report import Report, ResultAggregator
from .ui.console import get_console


class Orchestrator:
    """
    Expand the matrix, run every job (in parallel, steps sequential within a
    job) and aggregate the outcomes into a Report.

    With fail_fast, the first failed job stops not-yet-started jobs from
    starting; running jobs finish so their results are still reported.
    `cancel()` additionally kills running step processes.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        only: Optional[Mapping[str, Sequence[str]]] = None,
        fail_fast: bool = False,
        max_workers: int | None = None,
        workspace: str | Path | None = None,
        timeout: float | None = None,
    ):
        self.pipeline = pipeline
        self.only = only
        self.fail_fast = fail_fast
        self.max_workers = max(1, max_workers or settings.WORKERS)
        self.workspace = Path(workspace or settings.WORKSPACE)
        self.timeout = timeout if timeout is not None else settings.STEP_TIMEOUT
        self._cancel = threading.Event()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def plan(self) -> List[JobConfig]:
        """Expanded, filtered and validated job list. Raises ConfigError."""
        return expand_pipeline(self.pipeline, self.only)

    def _not_started(self, config: JobConfig, reason: str) -> JobOutcome:
        status = JobStatus.CANCELED if self.canceled else JobStatus.SKIPPED
        steps = [
            StepOutcome(name=s.name, status=StepStatus.SKIPPED, always=s.always, error=reason)
            for s in self.pipeline.steps
        ]
        return JobOutcome(config=config, steps=steps, status=status)

    def _crashed(self, config: JobConfig, exc: BaseException) -> JobOutcome:
        step = StepOutcome(
            name="<executor>",
            status=StepStatus.FAILED,
            error=f"{type(exc).__name__}: {exc}",
        )
        return JobOutcome(config=config, steps=[step], status=JobStatus.FAILED)

    def run(self) -> Report:
        console = get_console()
        configs = self.plan()
        aggregator = ResultAggregator(order=[c.identity for c in configs])
        console.print_plan(configs)

        pending: Deque[JobConfig] = deque(configs)
        in_flight: Dict[Future, JobConfig] = {}
        tripped = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while pending or in_flight:
                # bounded submission keeps queued jobs cancellable by fail-fast
                while pending and len(in_flight) < self.max_workers and not (tripped or self.canceled):
                    config = pending.popleft()
                    fut = pool.submit(
                        run_job,
                        self.pipeline,
                        config,
                        workspace=self.workspace,
                        timeout=self.timeout,
                        cancel=self._cancel,
                    )
                    in_flight[fut] = config

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    console.print_info("\nInterrupted, canceling running jobs...")
                    self.cancel()
                    continue

                for fut in done:
                    config = in_flight.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        console.print_exception(e)
                        outcome = self._crashed(config, e)

                    aggregator.submit(outcome)
                    if outcome.status in (JobStatus.FAILED, JobStatus.CANCELED) and self.fail_fast:
                        tripped = True

        reason = "run canceled" if self.canceled else "fail-fast: an earlier job failed"
        for config in pending:
            console.print_job_skipped(config.identity, reason)
            aggregator.submit(self._not_started(config, reason))

        report = aggregator.report()
        for err in report.errors:
            console.print_report_error(err)
        return report


def run_pipeline(pipeline: Pipeline, **kwargs) -> Report:
    """Convenience wrapper: `Orchestrator(pipeline, **kwargs).run()`."""
    return Orchestrator(pipeline, **kwargs).run()
