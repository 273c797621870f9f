# runner.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .model import Command, JobConfig, Step, StepOutcome, StepStatus

# `::set-env name=PATH::/opt/bin:...` exports a variable to later steps of the job
SET_ENV_RE = re.compile(r"^::set-env name=([A-Za-z_][A-Za-z0-9_]*)::(.*)$")

POLL_INTERVAL = 0.1


def build_env(
    config: JobConfig,
    step: Step,
    exported: Optional[Mapping[str, str]] = None,
    workspace: str | Path = ".",
) -> Dict[str, str]:
    """
    Child process environment: ambient env < job variables < step env <
    exported variables < reserved MATRIXCI_* names. Returns a new dict, the
    orchestrator's own os.environ is never touched.
    """
    env = os.environ.copy()
    env.update(config.variables)
    env.update(dict(step.env))
    env.update(exported or {})
    env["MATRIXCI_JOB"] = config.identity
    env["MATRIXCI_STEP"] = step.name
    env["MATRIXCI_WORKSPACE"] = str(Path(workspace).resolve())
    return env


def parse_exports(output: str) -> Dict[str, str]:
    exports: Dict[str, str] = {}
    for line in output.splitlines():
        m = SET_ENV_RE.match(line.strip())
        if m:
            exports[m.group(1)] = m.group(2)
    return exports


def _commands(step: Step) -> List[Command]:
    if step.script:
        body = "\n".join(c.run for c in step.commands)
        return [Command(run=body, best_effort=all(c.best_effort for c in step.commands))]
    return list(step.commands)


def _spawn(cmd: str, cwd: Path, env: Dict[str, str]) -> subprocess.Popen:
    kwargs = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        # own process group so the whole tree can be killed
        kwargs["start_new_session"] = True
    return subprocess.Popen(
        cmd,
        shell=True,
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        **kwargs,
    )


def kill_tree(proc: subprocess.Popen) -> None:
    """Forcefully terminate a spawned process and all of its children."""
    if proc.poll() is not None:
        return
    if os.name == "nt":
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
            capture_output=True,
            check=False,
        )
    else:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    proc.kill()


def _wait(
    proc: subprocess.Popen,
    deadline: Optional[float],
    cancel: Optional[threading.Event],
) -> Tuple[str, Optional[str]]:
    """
    Wait for `proc`, returning (output, interruption) where interruption is
    None, StepStatus.TIMED_OUT or StepStatus.CANCELED.
    """
    chunks: List[str] = []
    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_INTERVAL)
            chunks.append(out or "")
            return "".join(chunks), None
        except subprocess.TimeoutExpired:
            pass

        reason = None
        if cancel is not None and cancel.is_set():
            reason = StepStatus.CANCELED
        elif deadline is not None and time.monotonic() >= deadline:
            reason = StepStatus.TIMED_OUT

        if reason is not None:
            kill_tree(proc)
            try:
                out, _ = proc.communicate(timeout=5)
                chunks.append(out or "")
            except subprocess.TimeoutExpired:
                pass
            return "".join(chunks), reason


def run_step(
    step: Step,
    config: JobConfig,
    *,
    workspace: str | Path = ".",
    timeout: float | None = None,
    exported: Optional[Mapping[str, str]] = None,
    cancel: Optional[threading.Event] = None,
) -> StepOutcome:
    """
    Run a step's commands in order against the job's environment.

    The step fails on the first non-zero exit of a command that is not
    best-effort. `timeout` bounds the whole step; on expiry the process tree
    is killed and the outcome is `timed_out`.
    """
    start = time.monotonic()
    timeout = step.timeout if step.timeout is not None else timeout
    deadline = start + timeout if timeout else None

    def outcome(status: str, exit_code: Optional[int], output: str, error: Optional[str] = None) -> StepOutcome:
        return StepOutcome(
            name=step.name,
            status=status,
            exit_code=exit_code,
            output=output,
            duration=time.monotonic() - start,
            always=step.always,
            error=error,
            exports=parse_exports(output),
        )

    if cancel is not None and cancel.is_set():
        return outcome(StepStatus.CANCELED, None, "", "canceled before start")

    cwd = (Path(workspace) / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        return outcome(StepStatus.FAILED, None, "", f"cwd not found: {cwd}")

    env = build_env(config, step, exported, workspace)
    output: List[str] = []
    exit_code: Optional[int] = 0

    for cmd in _commands(step):
        try:
            proc = _spawn(cmd.run, cwd, env)
        except OSError as e:
            return outcome(StepStatus.FAILED, None, "".join(output), f"could not start command: {e}")

        text, interrupted = _wait(proc, deadline, cancel)
        output.append(text)
        exit_code = proc.returncode

        if interrupted == StepStatus.TIMED_OUT:
            return outcome(
                StepStatus.TIMED_OUT,
                exit_code,
                "".join(output),
                f"TimeoutError: step exceeded {timeout:g}s",
            )
        if interrupted == StepStatus.CANCELED:
            return outcome(StepStatus.CANCELED, exit_code, "".join(output), "canceled")

        if exit_code != 0 and not cmd.best_effort:
            return outcome(StepStatus.FAILED, exit_code, "".join(output), f"command failed: {cmd.run}")

        # later commands of the same step see variables exported so far
        env.update(parse_exports(text))

    return outcome(StepStatus.SUCCEEDED, exit_code, "".join(output))
