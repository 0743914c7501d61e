"""JSON config file loading and typed solver / hierarchy settings."""

import json
import logging
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Union

from skelforge.constants import (
    CONFIG_DIR,
    DEFAULT_DAMPENING, DEFAULT_DECAY, DEFAULT_EFFECTOR_INFLUENCE,
    DEFAULT_ITERATIONS, DEFAULT_ORIENTATION_WEIGHT, DEFAULT_SMOOTHING_FACTOR,
    DEFAULT_TOLERANCE,
    MAX_CHILDREN_PER_NODE, MAX_HIERARCHY_DEPTH, MAX_TRANSFORM_MAGNITUDE,
)

logger = logging.getLogger(__name__)

ConfigSource = Union[str, Path, dict, None]


def load_json(path: Path) -> Any:
    """Load and return parsed JSON from a file."""
    with open(path) as f:
        return json.load(f)


def load_config(name: str) -> Any:
    """Load a bundled config file from skelforge/config/."""
    return load_json(CONFIG_DIR / name)


@dataclass(frozen=True)
class HierarchyLimits:
    """Robustness bounds enforced by :class:`JointHierarchy`."""
    max_depth: int = MAX_HIERARCHY_DEPTH
    max_children: int = MAX_CHILDREN_PER_NODE
    max_transform_magnitude: float = MAX_TRANSFORM_MAGNITUDE


@dataclass(frozen=True)
class SolverSettings:
    """Tunables for the EWBIK solver."""
    iterations: int = DEFAULT_ITERATIONS
    tolerance: float = DEFAULT_TOLERANCE
    decay: float = DEFAULT_DECAY
    effector_influence: float = DEFAULT_EFFECTOR_INFLUENCE
    # Weight of the effector orientation headings relative to its position
    orientation_weight: float = DEFAULT_ORIENTATION_WEIGHT
    dampening: float = DEFAULT_DAMPENING
    # Frame-to-frame blend of propagation factors (1.0 = use current only)
    smoothing_factor: float = DEFAULT_SMOOTHING_FACTOR
    # >1 solves independent chains on a thread pool before the combine step
    max_workers: int = 1

    def with_overrides(self, **overrides) -> "SolverSettings":
        return _validated(replace(self, **overrides))


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _coerce(cls, data: dict):
    known = {f.name: f.type for f in fields(cls)}
    kwargs = {}
    for raw_key, value in data.items():
        key = _snake_case(raw_key)
        if key not in known:
            logger.warning("Ignoring unknown %s key: %s", cls.__name__, raw_key)
            continue
        kwargs[key] = int(value) if known[key] in (int, "int") else float(value)
    return cls(**kwargs)


def _validated(settings: SolverSettings) -> SolverSettings:
    if settings.iterations < 0:
        raise ValueError(f"iterations must be >= 0, got {settings.iterations}")
    if settings.tolerance <= 0:
        raise ValueError(f"tolerance must be > 0, got {settings.tolerance}")
    if not 0.0 <= settings.decay <= 1.0:
        raise ValueError(f"decay must be within [0, 1], got {settings.decay}")
    if not 0.0 <= settings.smoothing_factor <= 1.0:
        raise ValueError(
            f"smoothing_factor must be within [0, 1], got {settings.smoothing_factor}"
        )
    return settings


def _read_source(source: ConfigSource, default_name: str) -> dict:
    if source is None:
        return load_config(default_name)
    if isinstance(source, dict):
        return source
    return load_json(Path(source))


def load_solver_settings(source: ConfigSource = None) -> SolverSettings:
    """Build :class:`SolverSettings` from a JSON file, a dict, or the bundled default.

    Keys may be camelCase or snake_case; a top-level ``"solver"`` section is
    used when present.
    """
    data = _read_source(source, "solver.json")
    data = data.get("solver", data)
    return _validated(_coerce(SolverSettings, data))


def load_hierarchy_limits(source: ConfigSource = None) -> HierarchyLimits:
    """Build :class:`HierarchyLimits` from a JSON file, a dict, or the bundled default."""
    data = _read_source(source, "solver.json")
    data = data.get("hierarchy", data if source is not None else {})
    limits = _coerce(HierarchyLimits, data)
    if limits.max_depth < 1 or limits.max_children < 1:
        raise ValueError(f"hierarchy limits must be positive: {limits}")
    return limits
