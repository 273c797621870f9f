from __future__ import annotations

import json
import threading

import pytest

from matrixci.errors import ReportError, StepFailure
from matrixci.model import JobConfig, JobOutcome, JobStatus, RunStatus, StepOutcome, StepStatus
from matrixci.report import ResultAggregator, has_test_payload, parse_test_output, read_junit, write_junit

LIBTEST_OUTPUT = "\n".join(
    [
        "   Compiling demo v0.1.0",
        json.dumps({"type": "suite", "event": "started", "test_count": 3}),
        json.dumps({"type": "test", "event": "started", "name": "tests::adds"}),
        json.dumps({"type": "test", "name": "tests::adds", "event": "ok", "exec_time": 0.25}),
        json.dumps({"type": "test", "name": "tests::divides", "event": "failed", "stdout": "thread panicked at 'divide by zero'\nnote: backtrace"}),
        json.dumps({"type": "test", "name": "tests::slow", "event": "ignored"}),
        json.dumps({"type": "suite", "event": "failed", "passed": 1, "failed": 1, "ignored": 1}),
    ]
)


def _job(identity: str, status: str = JobStatus.SUCCEEDED, output: str = "") -> JobOutcome:
    cfg = JobConfig(labels=(("d", identity),), variables={})
    step = StepOutcome("test", StepStatus.SUCCEEDED if status == JobStatus.SUCCEEDED else StepStatus.FAILED, output=output)
    return JobOutcome(config=cfg, steps=[step], status=status)


def test_parse_libtest_events():
    cases = parse_test_output(LIBTEST_OUTPUT, "linux-stable")
    assert [(c.name, c.status) for c in cases] == [
        ("tests::adds", "passed"),
        ("tests::divides", "failed"),
        ("tests::slow", "skipped"),
    ]
    assert cases[0].duration == 0.25
    assert cases[1].message == "thread panicked at 'divide by zero'"
    assert all(c.job == "linux-stable" for c in cases)


def test_plain_output_is_not_a_payload():
    assert not has_test_payload("running 3 tests\n{not json}\n")
    assert parse_test_output('{"other": 1}\nhello', "j") == []


@pytest.mark.parametrize(
    "line",
    [
        '{"type": "test", "event": "ok", "name": ',
        '{"type": "test", "event": "ok"}',
        '{"type": "test", "event": "exploded", "name": "x"}',
    ],
)
def test_malformed_payload_raises(line):
    with pytest.raises(ReportError) as info:
        parse_test_output("noise\n" + line, "linux-beta")
    assert info.value.job == "linux-beta"
    assert info.value.line == 2


def test_report_error_does_not_change_job_status():
    agg = ResultAggregator()
    agg.submit(_job("linux", output='{"type": "test", "event": "ok"}'))
    report = agg.report()
    assert report.status == RunStatus.SUCCEEDED
    assert report.jobs[0].status == JobStatus.SUCCEEDED
    assert len(report.errors) == 1
    assert report.tests == []


def test_counts_and_status():
    agg = ResultAggregator(order=["a", "b", "c"])
    agg.submit(_job("c", JobStatus.SKIPPED))
    agg.submit(_job("b", JobStatus.FAILED))
    agg.submit(_job("a"))
    report = agg.report()
    assert [j.identity for j in report.jobs] == ["a", "b", "c"]
    assert report.counts()[JobStatus.SUCCEEDED] == 1
    assert report.counts()[JobStatus.FAILED] == 1
    assert report.counts()[JobStatus.SKIPPED] == 1
    assert report.status == RunStatus.FAILED
    assert "b: FAILED" in report.summary_text()


def test_concurrent_submissions():
    agg = ResultAggregator()
    threads = [
        threading.Thread(target=agg.submit, args=(_job(f"job{i}", output=LIBTEST_OUTPUT),))
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    report = agg.report()
    assert len(report.jobs) == 20
    assert len(report.tests) == 60


def test_junit_round_trip(tmp_path):
    agg = ResultAggregator()
    agg.submit(_job("linux-stable", output=LIBTEST_OUTPUT))
    agg.submit(_job("windows-beta", JobStatus.FAILED, output=LIBTEST_OUTPUT))
    report = agg.report()

    path = report.write_junit(tmp_path / "out" / "results.xml")
    parsed = read_junit(path)
    assert {c.key() for c in parsed} == {t.key() for t in report.tests}
    assert {c.key() for c in read_junit(path.read_text(encoding="utf-8"))} == {t.key() for t in report.tests}
    failed = [c for c in parsed if c.status == "failed"]
    assert failed[0].message == "thread panicked at 'divide by zero'"


def test_write_junit_empty(tmp_path):
    path = write_junit([], tmp_path / "empty.xml")
    assert read_junit(path) == []


def test_summary_json(tmp_path):
    agg = ResultAggregator()
    agg.submit(_job("linux", output=LIBTEST_OUTPUT))
    data = json.loads(agg.report().write_summary(tmp_path / "summary.json").read_text())
    assert data["status"] == "succeeded"
    assert data["jobs"][0]["steps"][0]["name"] == "test"
    assert len(data["tests"]) == 3


def test_raise_for_status():
    agg = ResultAggregator()
    agg.submit(_job("ok"))
    agg.report().raise_for_status()

    agg.submit(_job("bad", JobStatus.FAILED))
    with pytest.raises(StepFailure, match=r"\[bad\] step 'test' failed"):
        agg.report().raise_for_status()


def test_junit_strips_control_characters(tmp_path):
    colored = json.dumps(
        {"type": "test", "name": "tests::colors", "event": "failed", "stdout": "\x1b[31mpanicked\x1b[0m at src/lib.rs\x07\n"}
    )
    agg = ResultAggregator()
    agg.submit(_job("linux", output=colored))
    report = agg.report()

    parsed = read_junit(report.write_junit(tmp_path / "results.xml"))
    assert {c.key() for c in parsed} == {("linux", "tests::colors", "failed")}
    assert parsed[0].message == "panicked at src/lib.rs\ufffd"
    assert "\x1b" not in parsed[0].output
