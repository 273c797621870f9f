# report.py
from __future__ import annotations

import json
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ReportError, StepFailure
from .model import JobOutcome, JobStatus, RunStatus, StepStatus

# libtest (`cargo test -- -Z unstable-options --format json`) event kinds
_PAYLOAD_TYPES = ("suite", "test")
_TEST_EVENTS = {"ok": "passed", "failed": "failed", "ignored": "skipped"}
_NON_TERMINAL_EVENTS = ("started", "timeout")

# ANSI colour sequences, then anything XML 1.0 cannot carry
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_XML_INVALID_RE = re.compile(r"[^\x09\x0a\x0d\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


@dataclass(frozen=True)
class TestCase:
    """One test result, tagged with the job that produced it."""
    job: str
    name: str
    status: str               # passed | failed | skipped
    duration: float = 0.0
    message: Optional[str] = None
    output: Optional[str] = None

    __test__ = False  # not a pytest class

    def key(self) -> Tuple[str, str, str]:
        return (self.job, self.name, self.status)


# ---------------------------------------------------------------------
# Native payload conversion
# ---------------------------------------------------------------------

def _looks_like_payload(line: str) -> bool:
    compact = "".join(line.split())
    return compact.startswith('{"type"')


def has_test_payload(output: str) -> bool:
    """True if any output line looks like a libtest JSON event."""
    return any(_looks_like_payload(l) for l in output.splitlines())


def parse_test_output(output: str, job: str) -> List[TestCase]:
    """
    Convert libtest JSON event lines found in `output` into TestCases.
    Other lines (build noise, plain text) are ignored.

    Raises ReportError for a malformed event line.
    """
    cases: List[TestCase] = []
    for lineno, raw in enumerate(output.splitlines(), start=1):
        line = raw.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            if _looks_like_payload(line):
                raise ReportError(job, f"invalid JSON event: {e.msg}", line=lineno) from None
            continue
        if not isinstance(event, dict) or event.get("type") not in _PAYLOAD_TYPES:
            continue
        if event["type"] == "suite":
            continue

        name = event.get("name")
        kind = event.get("event")
        if not isinstance(name, str) or not name or not isinstance(kind, str):
            raise ReportError(job, "test event needs 'name' and 'event'", line=lineno)
        if kind in _NON_TERMINAL_EVENTS:
            continue
        if kind not in _TEST_EVENTS:
            raise ReportError(job, f"unknown test event {kind!r}", line=lineno)

        status = _TEST_EVENTS[kind]
        stdout = event.get("stdout") or None
        message = None
        if status == "failed":
            message = stdout.strip().splitlines()[0] if stdout and stdout.strip() else "failed"
        try:
            duration = float(event.get("exec_time") or 0.0)
        except (TypeError, ValueError):
            raise ReportError(job, f"bad exec_time {event.get('exec_time')!r}", line=lineno) from None

        cases.append(TestCase(job=job, name=name, status=status, duration=duration, message=message, output=stdout))
    return cases


# ---------------------------------------------------------------------
# JUnit XML
# ---------------------------------------------------------------------

def _xml_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return _XML_INVALID_RE.sub("\ufffd", _ANSI_RE.sub("", text))


def to_junit(tests: Sequence[TestCase]) -> ET.ElementTree:
    root = ET.Element("testsuites")
    by_job: Dict[str, List[TestCase]] = {}
    for t in tests:
        by_job.setdefault(t.job, []).append(t)

    total = failures = skipped = 0
    total_time = 0.0
    for job, cases in by_job.items():
        n_fail = sum(1 for c in cases if c.status == "failed")
        n_skip = sum(1 for c in cases if c.status == "skipped")
        time_s = sum(c.duration for c in cases)
        suite = ET.SubElement(
            root,
            "testsuite",
            name=_xml_text(job),
            tests=str(len(cases)),
            failures=str(n_fail),
            errors="0",
            skipped=str(n_skip),
            time=f"{time_s:.3f}",
        )
        for c in cases:
            tc = ET.SubElement(
                suite, "testcase", classname=_xml_text(job), name=_xml_text(c.name), time=f"{c.duration:.3f}"
            )
            if c.status == "failed":
                failure = ET.SubElement(tc, "failure", message=_xml_text(c.message) or "failed")
                if c.output:
                    failure.text = _xml_text(c.output)
            elif c.status == "skipped":
                ET.SubElement(tc, "skipped")
        total += len(cases)
        failures += n_fail
        skipped += n_skip
        total_time += time_s

    root.set("tests", str(total))
    root.set("failures", str(failures))
    root.set("skipped", str(skipped))
    root.set("time", f"{total_time:.3f}")
    return ET.ElementTree(root)


def write_junit(tests: Sequence[TestCase], path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    tree = to_junit(tests)
    ET.indent(tree)
    tree.write(out, encoding="utf-8", xml_declaration=True)
    return out


def read_junit(source: str | Path) -> List[TestCase]:
    """Parse a JUnit XML file (path) or document (string starting with '<')."""
    text = str(source)
    if text.lstrip().startswith("<"):
        root = ET.fromstring(text)
    else:
        root = ET.parse(source).getroot()

    suites = [root] if root.tag == "testsuite" else root.findall("testsuite")
    cases: List[TestCase] = []
    for suite in suites:
        for tc in suite.findall("testcase"):
            job = tc.get("classname") or suite.get("name") or ""
            failure = tc.find("failure")
            if failure is None:
                failure = tc.find("error")
            if failure is not None:
                status, message, output = "failed", failure.get("message"), failure.text
            elif tc.find("skipped") is not None:
                status, message, output = "skipped", None, None
            else:
                status, message, output = "passed", None, None
            cases.append(
                TestCase(
                    job=job,
                    name=tc.get("name", ""),
                    status=status,
                    duration=float(tc.get("time") or 0.0),
                    message=message,
                    output=output,
                )
            )
    return cases


# ---------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------

@dataclass
class Report:
    status: str
    jobs: List[JobOutcome]
    tests: List[TestCase] = field(default_factory=list)
    errors: List[ReportError] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.SKIPPED)}
        for j in self.jobs:
            out[j.status] = out.get(j.status, 0) + 1
        return out

    def job(self, identity: str) -> JobOutcome:
        for j in self.jobs:
            if j.identity == identity:
                return j
        raise KeyError(identity)

    def summary_text(self) -> str:
        c = self.counts()
        lines = [
            f"Run {self.status.upper()}: "
            f"{c[JobStatus.SUCCEEDED]} succeeded, {c[JobStatus.FAILED]} failed, "
            f"{c[JobStatus.CANCELED]} canceled, {c[JobStatus.SKIPPED]} skipped"
        ]
        for j in self.jobs:
            lines.append(f"  {j.identity}: {j.status.upper()} ({j.duration:.1f}s)")
            for s in j.steps:
                extra = f" [{s.error}]" if s.error and s.status != StepStatus.SUCCEEDED else ""
                lines.append(f"    {s.name}: {s.status}{extra}")
        if self.tests:
            failed = sum(1 for t in self.tests if t.status == "failed")
            lines.append(f"Tests: {len(self.tests)} total, {failed} failed")
        for e in self.errors:
            lines.append(f"Report error: {e}")
        return "\n".join(lines)

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "counts": self.counts(),
            "jobs": [j.to_dict() for j in self.jobs],
            "tests": [
                {"job": t.job, "name": t.name, "status": t.status, "duration": t.duration, "message": t.message}
                for t in self.tests
            ],
            "report_errors": [{"job": e.job, "line": e.line, "message": e.message} for e in self.errors],
        }

    def raise_for_status(self) -> None:
        """Raise StepFailure for the first failed step of the first failed job."""
        for j in self.jobs:
            if j.status not in (JobStatus.FAILED, JobStatus.CANCELED):
                continue
            for s in j.steps:
                if s.failed and not s.always:
                    raise StepFailure(job=j.identity, step=s.name, status=s.status, exit_code=s.exit_code, message=s.error)
            raise StepFailure(job=j.identity, step="<none>", status=j.status, exit_code=None)

    def write_junit(self, path: str | Path) -> Path:
        return write_junit(self.tests, path)

    def write_summary(self, path: str | Path) -> Path:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return out


class ResultAggregator:
    """
    Collects JobOutcomes from concurrently running jobs.

    Submissions are serialized by a lock; a submitted outcome is never
    modified. Test payload conversion is best-effort: a ReportError is
    recorded for the job but never changes its status.
    """

    def __init__(self, order: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._order = {identity: i for i, identity in enumerate(order or [])}
        self._jobs: List[JobOutcome] = []
        self._tests: List[TestCase] = []
        self._errors: List[ReportError] = []

    def submit(self, outcome: JobOutcome) -> None:
        tests: List[TestCase] = []
        error: Optional[ReportError] = None
        try:
            for step in outcome.steps:
                if step.status != StepStatus.SKIPPED and step.output and has_test_payload(step.output):
                    tests.extend(parse_test_output(step.output, outcome.identity))
        except ReportError as e:
            tests, error = [], e

        with self._lock:
            self._jobs.append(outcome)
            self._tests.extend(tests)
            if error is not None:
                self._errors.append(error)

    def _sort_key(self, identity: str) -> int:
        return self._order.get(identity, len(self._order))

    def report(self) -> Report:
        with self._lock:
            jobs = sorted(self._jobs, key=lambda j: self._sort_key(j.identity))
            tests = sorted(self._tests, key=lambda t: self._sort_key(t.job))
            errors = list(self._errors)

        status = RunStatus.SUCCEEDED
        if any(j.status in (JobStatus.FAILED, JobStatus.CANCELED) for j in jobs):
            status = RunStatus.FAILED
        return Report(status=status, jobs=jobs, tests=tests, errors=errors)
