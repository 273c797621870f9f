# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from .errors import ConfigError
from .model import ALWAYS, ON_SUCCESS, POLICIES, Command, Dimension, Pipeline, Step, Variant

TOP_LEVEL_KEYS = ("name", "matrix", "steps")
STEP_KEYS = ("name", "run", "script", "condition", "policy", "host", "timeout", "env", "cwd")
COMMAND_KEYS = ("cmd", "best_effort")

# whole-expression conditions that are really run policies
POLICY_CONDITIONS = {
    "always()": ALWAYS,
    "succeededorfailed()": ALWAYS,
    "succeeded()": ON_SUCCESS,
}
POLICY_ALIASES = {"succeededorfailed": ALWAYS, "on-success": ON_SUCCESS}


def _scalar(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"Expected a scalar value, got {type(value).__name__}", location=where)


def _mapping(value: Any, where: str) -> Mapping:
    # "" is how the raw loader spells an empty node
    if value is None or value == "":
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected a mapping, got {type(value).__name__}", location=where)
    return value


def _check_keys(data: Mapping, allowed: Tuple[str, ...], where: str) -> None:
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        raise ConfigError(f"Unknown keys {unknown}. Allowed: {list(allowed)}", location=where)


# ---------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------

class _UniqueKeys:
    """Reject repeated mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=True)
            try:
                duplicate = key in seen
            except TypeError:
                continue  # unhashable, the base constructor reports it
            if duplicate:
                raise ConfigError(
                    f"Duplicate key {key!r}",
                    location=f"line {key_node.start_mark.line + 1}",
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class _Loader(_UniqueKeys, yaml.SafeLoader):
    pass


class _RawLoader(_UniqueKeys, yaml.BaseLoader):
    """Every scalar stays a string, exactly as written (1.70 stays "1.70")."""


def _load_yaml(text: str) -> Tuple[Any, Any]:
    """Return the document typed (SafeLoader) and raw (BaseLoader)."""
    try:
        return yaml.load(text, Loader=_Loader), yaml.load(text, Loader=_RawLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from None


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _parse_dimensions(data: Any) -> Tuple[Dimension, ...]:
    dims: List[Dimension] = []
    for dim_name, variants in _mapping(data, "matrix").items():
        where = f"matrix.{dim_name}"
        variant_list = []
        for label, bindings in _mapping(variants, where).items():
            vwhere = f"{where}.{label}"
            variant_list.append(
                Variant(
                    label=_scalar(label, vwhere),
                    bindings={str(k): _scalar(v, f"{vwhere}.{k}") for k, v in _mapping(bindings, vwhere).items()},
                )
            )
        dims.append(Dimension(name=str(dim_name), variants=tuple(variant_list)))
    return tuple(dims)


def _parse_commands(run: Any, script: bool, where: str) -> Tuple[Command, ...]:
    if isinstance(run, str):
        if script:
            return (Command(run=run.rstrip("\n")),)
        return tuple(Command(run=line.strip()) for line in run.splitlines() if line.strip())

    if not isinstance(run, list):
        raise ConfigError("'run' must be a string or a list of commands", location=where)

    commands: List[Command] = []
    for i, item in enumerate(run):
        cwhere = f"{where}.run[{i}]"
        if isinstance(item, str):
            commands.append(Command(run=item))
            continue
        item = _mapping(item, cwhere)
        _check_keys(item, COMMAND_KEYS, cwhere)
        if not isinstance(item.get("cmd"), str):
            raise ConfigError("command needs a 'cmd' string", location=cwhere)
        commands.append(Command(run=item["cmd"], best_effort=bool(item.get("best_effort", False))))

    if script:
        if len(commands) != 1:
            raise ConfigError("a script step takes exactly one command body", location=where)
    return tuple(commands)


def _parse_step(data: Any, index: int, raw: Any = None) -> Step:
    where = f"steps[{index}]"
    data = _mapping(data, where)
    _check_keys(data, STEP_KEYS, where)

    name = _scalar(data.get("name") or f"step {index + 1}", where)
    where = f"step {name!r}"
    script = bool(data.get("script", False))
    commands = _parse_commands(data.get("run"), script, where)
    if not commands:
        raise ConfigError("step has no commands", location=where)

    policy = str(data.get("policy") or ON_SUCCESS).strip().lower()
    policy = POLICY_ALIASES.get(policy, policy)
    if policy not in POLICIES:
        raise ConfigError(f"Unknown policy {policy!r}. Allowed: {list(POLICIES)}", location=where)

    condition = data.get("condition")
    if condition is not None:
        condition = _scalar(condition, where).strip()
        special = POLICY_CONDITIONS.get(condition.replace(" ", "").lower())
        if special is not None:
            policy, condition = special, None

    timeout = data.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"timeout must be a positive number, got {timeout!r}", location=where)
        timeout = float(timeout)

    # env values come from the raw document so "1.70" is not read as 1.7
    env_data = raw.get("env") if isinstance(raw, Mapping) else data.get("env")
    env = tuple((str(k), _scalar(v, f"{where}.env.{k}")) for k, v in _mapping(env_data, f"{where}.env").items())

    return Step(
        name=name,
        commands=commands,
        condition=condition or None,
        policy=policy,
        host=_scalar(data["host"], where) if data.get("host") is not None else None,
        timeout=timeout,
        env=env,
        cwd=_scalar(data["cwd"], where) if data.get("cwd") is not None else None,
        script=script,
    )


def parse_pipeline(source: str | Mapping) -> Pipeline:
    """Build a Pipeline from a YAML document (string) or an already-loaded mapping."""
    raw: Any = None
    if isinstance(source, str):
        data, raw = _load_yaml(source)
    else:
        data = source

    data = _mapping(data, "pipeline")
    _check_keys(data, TOP_LEVEL_KEYS, "pipeline")

    steps_data = data.get("steps")
    if not isinstance(steps_data, list) or not steps_data:
        raise ConfigError("'steps' must be a non-empty list", location="pipeline")

    raw_steps = raw.get("steps") if isinstance(raw, Mapping) else None
    steps = tuple(
        _parse_step(s, i, raw_steps[i] if isinstance(raw_steps, list) else None)
        for i, s in enumerate(steps_data)
    )
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate step names: {dupes}", location="steps")

    return Pipeline(
        steps=steps,
        # matrix labels and bindings are taken as written, never as YAML numbers/bools
        dimensions=_parse_dimensions(raw.get("matrix") if isinstance(raw, Mapping) else data.get("matrix")),
        name=_scalar(data.get("name") or "pipeline", "name"),
    )


# ---------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------

def pipeline_to_dict(pipeline: Pipeline) -> Dict[str, Any]:
    steps = []
    for s in pipeline.steps:
        run = [{"cmd": c.run, "best_effort": True} if c.best_effort else c.run for c in s.commands]
        d: Dict[str, Any] = {"name": s.name, "run": run}
        if s.script:
            d["script"] = True
        if s.condition is not None:
            d["condition"] = s.condition
        if s.policy != ON_SUCCESS:
            d["policy"] = s.policy
        if s.host is not None:
            d["host"] = s.host
        if s.timeout is not None:
            d["timeout"] = s.timeout
        if s.env:
            d["env"] = dict(s.env)
        if s.cwd is not None:
            d["cwd"] = s.cwd
        steps.append(d)

    return {
        "name": pipeline.name,
        "matrix": {
            dim.name: {v.label: dict(v.bindings) for v in dim.variants}
            for dim in pipeline.dimensions
        },
        "steps": steps,
    }


def dump_pipeline(pipeline: Pipeline) -> str:
    return yaml.safe_dump(pipeline_to_dict(pipeline), sort_keys=False, allow_unicode=True)


# ---------------------------------------------------------------------
# Loading from disk
# ---------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a YAML file, or from a Python file defining either
    `pipeline() -> Pipeline` or `PIPELINE = Pipeline(...)`.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        try:
            return parse_pipeline(p.read_text(encoding="utf-8"))
        except ConfigError as e:
            raise ConfigError(e.message, location=f"{p.name}: {e.location}" if e.location else p.name) from None

    if p.suffix != ".py":
        raise ConfigError(f"Pipeline must be a .yml/.yaml or .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"matrixci_pipeline_{p.stem}")
    if callable(globals_dict.get("pipeline")):
        result = globals_dict["pipeline"]()
    else:
        result = globals_dict.get("PIPELINE")

    if not isinstance(result, Pipeline):
        raise ConfigError(
            "Python pipeline must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)",
            location=p.name,
        )
    return result
