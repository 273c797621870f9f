# matrix.py
from __future__ import annotations

import itertools
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .errors import ConfigError
from .model import Dimension, JobConfig, Pipeline

RESERVED_PREFIXES = ("MATRIXCI_", "AGENT.")


def _is_reserved(name: str) -> bool:
    upper = name.upper()
    return any(upper.startswith(p) for p in RESERVED_PREFIXES)


def _check_dimensions(dimensions: Sequence[Dimension]) -> None:
    seen_dims: Set[str] = set()
    # variable -> {dimension -> values bound by that dimension}
    bound: Dict[str, Dict[str, Set[str]]] = {}

    for dim in dimensions:
        if dim.name in seen_dims:
            raise ConfigError(f"Duplicate dimension name: {dim.name!r}", location="matrix")
        seen_dims.add(dim.name)

        if not dim.variants:
            raise ConfigError(f"Dimension {dim.name!r} has no variants", location="matrix")

        labels = dim.labels
        if len(set(labels)) != len(labels):
            dupes = sorted({l for l in labels if labels.count(l) > 1})
            raise ConfigError(
                f"Dimension {dim.name!r} has duplicate variant labels: {dupes}",
                location=f"matrix.{dim.name}",
            )

        for v in dim.variants:
            for var, value in v.bindings.items():
                if not var:
                    raise ConfigError(
                        "Empty variable name", location=f"matrix.{dim.name}.{v.label}"
                    )
                if _is_reserved(var):
                    raise ConfigError(
                        f"Variable {var!r} uses a reserved name",
                        location=f"matrix.{dim.name}.{v.label}",
                    )
                bound.setdefault(var, {}).setdefault(dim.name, set()).add(value)

    for var, per_dim in bound.items():
        if len(per_dim) < 2:
            continue
        values = set().union(*per_dim.values())
        # identical constant bindings cannot disagree in any cell
        if len(values) > 1:
            raise ConfigError(
                f"Variable {var!r} is bound by dimensions {sorted(per_dim)} "
                f"with conflicting values {sorted(values)}",
                location="matrix",
            )


def expand(dimensions: Iterable[Dimension]) -> List[JobConfig]:
    """
    Cross-product of all dimensions' variants, in declaration order.

    The last dimension varies fastest, so
    `{platform: [linux, windows]} x {channel: [stable, beta]}` yields
    linux-stable, linux-beta, windows-stable, windows-beta.
    """
    dims = list(dimensions)
    _check_dimensions(dims)

    configs: List[JobConfig] = []
    for combo in itertools.product(*(d.variants for d in dims)):
        variables: Dict[str, str] = {}
        for v in combo:
            variables.update(v.bindings)
        labels = tuple((d.name, v.label) for d, v in zip(dims, combo))
        configs.append(JobConfig(labels=labels, variables=variables))

    # labels may contain the "-" separator, so distinct cells can collide
    seen: Dict[str, JobConfig] = {}
    for c in configs:
        other = seen.setdefault(c.identity, c)
        if other is not c:
            raise ConfigError(
                f"Job identity {c.identity!r} is produced by both {list(other.labels)} and {list(c.labels)}; "
                "rename variant labels so their joined names differ",
                location="matrix",
            )
    return configs


def parse_filters(items: Iterable[str]) -> Dict[str, List[str]]:
    """
    Parse CLI filters: `platform=linux`, `channel=stable,beta`.
    Repeating a dimension accumulates its labels.
    """
    out: Dict[str, List[str]] = {}
    for item in items:
        dim, sep, labels = item.partition("=")
        dim = dim.strip()
        if not sep or not dim or not labels.strip():
            raise ConfigError(f"Invalid filter {item!r}, expected DIMENSION=VARIANT[,VARIANT]")
        for label in labels.split(","):
            label = label.strip()
            if label and label not in out.setdefault(dim, []):
                out[dim].append(label)
    return out


def filter_configs(
    configs: Sequence[JobConfig],
    dimensions: Sequence[Dimension],
    only: Optional[Mapping[str, Sequence[str]]],
) -> List[JobConfig]:
    """Keep the configs whose labels match every filtered dimension."""
    if not only:
        return list(configs)

    by_name = {d.name: d for d in dimensions}
    for dim, labels in only.items():
        if dim not in by_name:
            raise ConfigError(f"Filter references unknown dimension {dim!r}. Known: {sorted(by_name)}")
        for label in labels:
            if label not in by_name[dim].labels:
                raise ConfigError(
                    f"Filter references unknown variant {label!r} of {dim!r}. "
                    f"Known: {by_name[dim].labels}"
                )

    return [
        c for c in configs
        if all(c.label_of(dim) in labels for dim, labels in only.items())
    ]


def expand_pipeline(
    pipeline: Pipeline,
    only: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[JobConfig]:
    """
    Expand the pipeline's matrix, apply filters and check every step
    condition against every job. Raises ConfigError before anything runs.
    """
    from .conditions import validate_pipeline

    configs = expand(pipeline.dimensions)
    validate_pipeline(pipeline, configs)
    return filter_configs(configs, pipeline.dimensions, only)
