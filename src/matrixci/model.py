# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple


# Step run policies
ON_SUCCESS = "on_success"
ALWAYS = "always"
POLICIES = (ON_SUCCESS, ALWAYS)


class StepStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"
    SKIPPED = "skipped"

    FAILURES = (FAILED, TIMED_OUT, CANCELED)


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"

    TERMINAL = (SUCCEEDED, FAILED, CANCELED, SKIPPED)


class RunStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Variant:
    """One labeled value of a dimension, e.g. `linux -> {imageName: ubuntu-20.04}`."""
    label: str
    bindings: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Dimension:
    """A named axis of the matrix with ordered, uniquely-labeled variants."""
    name: str
    variants: Tuple[Variant, ...]

    @property
    def labels(self) -> List[str]:
        return [v.label for v in self.variants]

    def variant(self, label: str) -> Variant:
        for v in self.variants:
            if v.label == label:
                return v
        raise KeyError(label)


@dataclass(frozen=True)
class JobConfig:
    """
    One cell of the matrix cross-product.

    `labels` holds (dimension, variant) pairs in declaration order; the
    identity is the variant labels joined with '-'.
    """
    labels: Tuple[Tuple[str, str], ...]
    variables: Mapping[str, str]

    def __post_init__(self) -> None:
        # freeze the mapping so a config can be shared across threads
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @property
    def identity(self) -> str:
        return "-".join(label for _dim, label in self.labels) or "default"

    def label_of(self, dimension: str) -> Optional[str]:
        for dim, label in self.labels:
            if dim == dimension:
                return label
        return None

    def __hash__(self) -> int:
        return hash((self.labels, tuple(sorted(self.variables.items()))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobConfig):
            return NotImplemented
        return self.labels == other.labels and dict(self.variables) == dict(other.variables)


@dataclass(frozen=True)
class Command:
    """A single shell command inside a step."""
    run: str
    best_effort: bool = False


@dataclass(frozen=True)
class Step:
    """A named unit of work: commands, an optional condition and a run policy."""
    name: str
    commands: Tuple[Command, ...]
    condition: str | None = None
    policy: str = ON_SUCCESS
    host: str | None = None
    timeout: float | None = None
    env: Tuple[Tuple[str, str], ...] = ()
    cwd: str | None = None
    script: bool = False

    @property
    def always(self) -> bool:
        return self.policy == ALWAYS


@dataclass(frozen=True)
class Pipeline:
    """Ordered steps plus the matrix they are run against."""
    steps: Tuple[Step, ...]
    dimensions: Tuple[Dimension, ...] = ()
    name: str = "pipeline"


@dataclass
class StepOutcome:
    name: str
    status: str
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0
    always: bool = False
    error: Optional[str] = None     # TimeoutError / spawn error / skip reason
    exports: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status in StepStatus.FAILURES

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "always": self.always,
            "error": self.error,
        }


@dataclass
class JobOutcome:
    """
    All step outcomes of one JobConfig.

    Status is derived: failed if any non-skipped, non-"always" step failed;
    canceled/skipped are set explicitly by the executor and orchestrator.
    """
    config: JobConfig
    steps: List[StepOutcome] = field(default_factory=list)
    status: str = JobStatus.PENDING
    duration: float = 0.0

    @property
    def identity(self) -> str:
        return self.config.identity

    def verdict(self) -> str:
        for s in self.steps:
            if s.status == StepStatus.CANCELED:
                return JobStatus.CANCELED
        for s in self.steps:
            if s.failed and not s.always:
                return JobStatus.FAILED
        return JobStatus.SUCCEEDED

    def step(self, name: str) -> StepOutcome:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def to_dict(self) -> Dict:
        return {
            "job": self.identity,
            "variables": dict(self.config.variables),
            "status": self.status,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
        }
