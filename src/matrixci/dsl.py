# dsl.py
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Union

from .model import ALWAYS, ON_SUCCESS, Command, Dimension, Pipeline, Step, Variant

CommandLike = Union[str, Command]


def _command(c: CommandLike) -> Command:
    return c if isinstance(c, Command) else Command(run=c)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def best_effort(cmd: str) -> Command:
    """A command whose non-zero exit does not fail its step."""
    return Command(run=cmd, best_effort=True)


def sh(
    name: str,
    *commands: CommandLike,
    when: str | None = None,
    always: bool = False,
    host: str | None = None,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    script: bool = False,
) -> Step:
    """
    Create a shell step.

        sh("Build", "cargo build")
        sh("Install", "curl ... | sh", when="agent.osfamily != 'windows'")
        sh("Publish", "cat results.json", always=True)
    """
    if not commands:
        raise ValueError(f"sh({name!r}) must have at least one command")
    cmds = tuple(_command(c) for c in commands)
    if script and len(cmds) != 1:
        raise ValueError(f"sh({name!r}, script=True) takes exactly one script body")
    return Step(
        name=name,
        commands=cmds,
        condition=when,
        policy=ALWAYS if always else ON_SUCCESS,
        host=host,
        timeout=timeout,
        # force values to str, they end up in a process environment
        env=tuple((k, str(v)) for k, v in (env or {}).items()),
        cwd=cwd,
        script=script,
    )


# ---------------------------------------------------------------------
# Matrix helpers
# ---------------------------------------------------------------------

def dimension(name: str, variants: Optional[Mapping[str, Mapping[str, object]]] = None, **kw) -> Dimension:
    """
    dimension("platform", linux={"imageName": "ubuntu-20.04"}, windows={...})
    dimension("channel", {"stable": {"toolchain_channel": "stable"}})

    Labels keep the order they are given in.
    """
    merged: Dict[str, Mapping[str, object]] = dict(variants or {})
    merged.update(kw)
    return Dimension(
        name=name,
        variants=tuple(
            Variant(label=label, bindings={k: str(v) for k, v in (bindings or {}).items()})
            for label, bindings in merged.items()
        ),
    )


def axis(name: str, values: Sequence[str], var: str | None = None) -> Dimension:
    """Shorthand for a dimension binding a single variable: axis("py", ["3.11", "3.12"])."""
    var = var or name
    return Dimension(name=name, variants=tuple(Variant(label=v, bindings={var: v}) for v in values))


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipe(*steps: Step, matrix: Sequence[Dimension] = (), name: str = "pipeline") -> Pipeline:
    """
    Pipeline definition helper. Use this name so a workflow file can define
    its own `def pipeline(): return pipe(...)`.
    """
    if not steps:
        raise ValueError("pipe() needs at least one step")
    return Pipeline(steps=tuple(steps), dimensions=tuple(matrix), name=name)


class PipelineBuilder:
    def __init__(self, name: str = "pipeline"):
        self.name = name
        self._dims: List[Dimension] = []
        self._steps: List[Step] = []

    def with_dimension(self, name: str, **variants: Mapping[str, object]):
        self._dims.append(dimension(name, **variants))
        return self

    def with_axis(self, name: str, *values: str):
        self._dims.append(axis(name, values))
        return self

    def define_step(self, name: str, *commands: CommandLike, **options):
        self._steps.append(sh(name, *commands, **options))
        return self

    def build(self) -> Pipeline:
        if not self._steps:
            raise ValueError(f"Pipeline '{self.name}' has no steps")
        return pipe(*self._steps, matrix=self._dims, name=self.name)


def build(name: str = "pipeline") -> PipelineBuilder:
    """Convenience: build('ci').with_axis('py', '3.11').define_step(...).build()"""
    return PipelineBuilder(name)
