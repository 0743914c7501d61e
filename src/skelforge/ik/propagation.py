"""Motion propagation: influence decay along chains and multi-effector blending.

Joints close to an effector follow it strongly; joints near the root move
less per iteration.  When several effectors adjust the same joint, their
adjustments are blended by effector weight.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Union

import numpy as np

from skelforge.constants import (
    ANCESTOR_WEIGHT_DEPTH, DEFAULT_DECAY,
    INTERMEDIARY_EFFECTOR_MULTIPLIER, ULTIMATE_EFFECTOR_MULTIPLIER,
)
from skelforge.core.math_utils import (
    Quat, Vec3,
    lerp, quat_average, quat_from_axis_angle, quat_identity, quat_normalize,
    quat_to_axis_angle,
)

logger = logging.getLogger(__name__)


class EffectorType(Enum):
    ULTIMATE = "ultimate"          # true end target
    INTERMEDIARY = "intermediary"  # pass-through coordination point
    OTHER = "other"


def effector_type_weight(kind: Union[EffectorType, str, None], base_weight: float) -> float:
    """Scale ``base_weight`` by the effector's role in the skeleton."""
    if kind == EffectorType.ULTIMATE or kind == EffectorType.ULTIMATE.value:
        return base_weight * ULTIMATE_EFFECTOR_MULTIPLIER
    if kind == EffectorType.INTERMEDIARY or kind == EffectorType.INTERMEDIARY.value:
        return base_weight * INTERMEDIARY_EFFECTOR_MULTIPLIER
    return base_weight


@dataclass(frozen=True)
class PropagationConfig:
    effector_id: str
    base_influence: float
    decay_rate: float = DEFAULT_DECAY


def create_propagation_config(
    effector_id: str, influence: float, decay_rate: float = DEFAULT_DECAY,
) -> PropagationConfig:
    if not 0.0 <= decay_rate <= 1.0:
        raise ValueError(f"decay_rate must be within [0, 1], got {decay_rate}")
    return PropagationConfig(effector_id, influence, decay_rate)


def calculate_propagation_factors(
    chain: Sequence[str], effector_influence: float, decay: float = DEFAULT_DECAY,
) -> dict[str, float]:
    """Geometric falloff ``influence * decay**i`` along an effector-first chain."""
    return {joint: effector_influence * decay ** i for i, joint in enumerate(chain)}


@dataclass
class JointAdjustment:
    """Per-joint delta: a local rotation and an optional translation."""
    rotation: Quat = field(default_factory=quat_identity)
    translation: Vec3 = field(default_factory=lambda: np.zeros(3))


def scale_adjustment(adjustment: JointAdjustment, factor: float) -> JointAdjustment:
    """Scale the rotation angle and the translation by ``factor``."""
    axis, angle = quat_to_axis_angle(adjustment.rotation)
    return JointAdjustment(
        rotation=quat_from_axis_angle(axis, angle * factor),
        translation=np.asarray(adjustment.translation, dtype=np.float64) * factor,
    )


def default_hierarchical_weight(hierarchy, joint_id: str) -> float:
    """Root/leaf bias hook.  Uniform until a policy is chosen."""
    return 1.0


def apply_propagation(
    adjustments: dict[str, JointAdjustment],
    factors: dict[str, float],
    hierarchy=None,
    hierarchical_weight: Optional[Callable[[object, str], float]] = None,
) -> dict[str, JointAdjustment]:
    """Scale raw adjustments by propagation factor, then hierarchical weight.

    Joints without a factor keep a factor of 1.0.
    """
    weight_fn = hierarchical_weight or default_hierarchical_weight
    result = {}
    for joint_id, raw in adjustments.items():
        factor = factors.get(joint_id, 1.0) * weight_fn(hierarchy, joint_id)
        result[joint_id] = scale_adjustment(raw, factor)
    return result


@dataclass
class EffectorSolution:
    """Adjustments one effector wants, with its blending weight (if known)."""
    effector_id: str
    adjustments: dict[str, JointAdjustment]
    weight: Optional[float] = None


def _as_solution(item) -> EffectorSolution:
    if isinstance(item, EffectorSolution):
        return item
    effector_id, adjustments = item[0], item[1]
    weight = item[2] if len(item) > 2 else None
    return EffectorSolution(effector_id, dict(adjustments), weight)


def _blend(contributions: list[tuple[Optional[float], JointAdjustment]]) -> JointAdjustment:
    weights = [w for w, _ in contributions]
    if any(w is None for w in weights) or sum(weights) <= 0:
        # No usable priorities: first contributor wins
        return contributions[0][1]
    w = np.asarray(weights, dtype=np.float64)
    rotations = [quat_normalize(np.asarray(a.rotation, dtype=np.float64)) for _, a in contributions]
    translations = np.array([a.translation for _, a in contributions], dtype=np.float64)
    return JointAdjustment(
        rotation=quat_average(rotations, w),
        translation=(translations * w[:, None]).sum(axis=0) / w.sum(),
    )


def combine_multi_effector_solutions(solutions: Sequence, hierarchy=None) -> dict[str, JointAdjustment]:
    """Merge per-effector adjustments into one adjustment per joint.

    A joint touched by a single effector passes through unchanged.  Shared
    joints get a weighted blend (quaternion average, weighted mean
    translation); if any contributor lacks a weight the first one wins.
    With a hierarchy, adjustments for joints it does not contain are dropped.
    """
    grouped: dict[str, list[tuple[Optional[float], JointAdjustment]]] = {}
    for item in solutions:
        solution = _as_solution(item)
        for joint_id, adjustment in solution.adjustments.items():
            grouped.setdefault(joint_id, []).append((solution.weight, adjustment))

    combined = {}
    for joint_id, contributions in grouped.items():
        if hierarchy is not None and joint_id not in hierarchy:
            logger.warning("Dropping adjustment for unknown joint %s", joint_id)
            continue
        if len(contributions) == 1:
            combined[joint_id] = contributions[0][1]
        else:
            combined[joint_id] = _blend(contributions)
    return combined


def smooth_propagation(
    current: dict[str, float], previous: dict[str, float], smoothing_factor: float,
) -> dict[str, float]:
    """Blend factors toward the previous frame for temporal stability."""
    return {
        joint_id: lerp(previous.get(joint_id, factor), factor, smoothing_factor)
        for joint_id, factor in current.items()
    }


def calculate_ancestor_weights(
    hierarchy, joint_id, max_depth: int = ANCESTOR_WEIGHT_DEPTH, decay: float = DEFAULT_DECAY,
) -> dict[str, float]:
    """Influence of a joint's motion on its ancestors, nearest ancestor highest."""
    weights = {}
    for distance, ancestor in enumerate(hierarchy.ancestors(joint_id)[:max_depth], start=1):
        weights[hierarchy.get_name(ancestor)] = decay ** distance
    return weights
