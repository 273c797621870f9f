from __future__ import annotations

import pytest

from matrixci.model import JobConfig, JobOutcome, JobStatus, StepOutcome, StepStatus


def test_identity_joins_labels_in_order():
    cfg = JobConfig(labels=(("platform", "windows"), ("channel", "beta")), variables={})
    assert cfg.identity == "windows-beta"
    assert cfg.label_of("channel") == "beta"
    assert cfg.label_of("missing") is None


def test_empty_matrix_identity():
    assert JobConfig(labels=(), variables={}).identity == "default"


def test_job_config_is_immutable():
    source = {"a": "1"}
    cfg = JobConfig(labels=(("d", "x"),), variables=source)
    source["a"] = "2"
    assert cfg.variables["a"] == "1"
    with pytest.raises(TypeError):
        cfg.variables["a"] = "3"
    with pytest.raises(AttributeError):
        cfg.labels = ()


def test_job_config_equality_and_hash():
    a = JobConfig(labels=(("d", "x"),), variables={"a": "1"})
    b = JobConfig(labels=(("d", "x"),), variables={"a": "1"})
    assert a == b
    assert len({a, b}) == 1


def test_verdict_ignores_skipped_and_always_failures(config):
    outcome = JobOutcome(
        config=config,
        steps=[
            StepOutcome("build", StepStatus.SUCCEEDED),
            StepOutcome("test", StepStatus.SKIPPED),
            StepOutcome("publish", StepStatus.FAILED, exit_code=1, always=True),
        ],
    )
    assert outcome.verdict() == JobStatus.SUCCEEDED


def test_verdict_failed_on_timeout(config):
    outcome = JobOutcome(config=config, steps=[StepOutcome("build", StepStatus.TIMED_OUT)])
    assert outcome.verdict() == JobStatus.FAILED


def test_verdict_canceled(config):
    outcome = JobOutcome(config=config, steps=[StepOutcome("build", StepStatus.CANCELED)])
    assert outcome.verdict() == JobStatus.CANCELED
