"""Validation rules for joint transforms and hierarchy structure."""

from typing import Callable, Optional

import numpy as np

from skelforge.constants import MAX_HIERARCHY_DEPTH, MAX_TRANSFORM_MAGNITUDE
from skelforge.core.errors import InvalidTransform
from skelforge.core.math_utils import Mat4, is_finite_matrix

ParentLookup = Callable[[object], Optional[object]]


def valid_transform(m, max_magnitude: float = MAX_TRANSFORM_MAGNITUDE) -> bool:
    """A transform is valid when it is 4x4, finite and below ``max_magnitude``."""
    return is_finite_matrix(m, max_magnitude)


def validate_transform(m, max_magnitude: float = MAX_TRANSFORM_MAGNITUDE) -> Mat4:
    """Return a float64 copy of ``m`` or raise :class:`InvalidTransform`."""
    if not valid_transform(m, max_magnitude):
        raise InvalidTransform(f"Invalid 4x4 transform: {np.asarray(m)!r}")
    return np.array(m, dtype=np.float64)


def hierarchy_depth(node, parent_of: ParentLookup, max_depth: int = MAX_HIERARCHY_DEPTH) -> int:
    """Number of ancestors above ``node``, saturating at ``max_depth``."""
    depth = 0
    current = parent_of(node)
    while current is not None:
        depth += 1
        if depth >= max_depth:
            return max_depth
        current = parent_of(current)
    return depth


def would_create_cycle(
    child,
    potential_parent,
    parent_of: ParentLookup,
    max_depth: int = MAX_HIERARCHY_DEPTH,
) -> bool:
    """True if parenting ``child`` under ``potential_parent`` closes a loop.

    Walks the ancestors of ``potential_parent`` (itself included) looking for
    ``child``.  The walk stops after ``max_depth`` steps or on a revisit.
    """
    visited = set()
    current = potential_parent
    steps = 0
    while current is not None and steps <= max_depth:
        if current == child:
            return True
        if current in visited:
            return False
        visited.add(current)
        current = parent_of(current)
        steps += 1
    return False
