"""Kusudama orientation constraints: cone-shaped limits on joint orientation.

A constraint is an ordered list of cones in orientation space.  Each cone is
a geodesic ball: every orientation within ``radius`` radians of its
``center`` is allowed.  A cone with a ``tangent_radius`` also opens a
passage to the next cone in the list, so a joint can sweep continuously
between the two regions.  Twist about the bone axis is limited separately.

Applying a constraint never raises; bad input degrades to the current
orientation.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Union

import numpy as np

from skelforge.constants import (
    BOUNDARY_EPSILON, CONE_TOLERANCE, DEFAULT_TWIST_AXIS, DEFAULT_TWIST_LIMITS,
    PASSAGE_SAMPLES, SWING_BISECTIONS, TWIST_TOLERANCE,
)
from skelforge.core.math_utils import (
    EPSILON, Quat, as_vec3, clamp, deg_to_rad, lerp, normalize, quat_angle,
    quat_from_axis_angle, quat_multiply, quat_normalize, quat_rotate_towards,
    quat_swing_twist, quat_to_axis_angle, rad_to_deg,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Cone:
    center: Quat
    radius: float
    tangent_radius: Optional[float] = None


@dataclass(frozen=True, eq=False)
class ConeSequence:
    """Ordered group of cones, optionally linked by passages.

    Groups may nest; :func:`create_constraint` flattens them in order.
    """
    cones: tuple
    tangent_radius: Optional[float] = None


@dataclass(frozen=True, eq=False)
class KusudamaConstraint:
    joint_id: str
    cones: tuple[Cone, ...]
    twist_limits: tuple[float, float] = DEFAULT_TWIST_LIMITS  # degrees
    twist_axis: tuple[float, float, float] = DEFAULT_TWIST_AXIS


@dataclass(frozen=True, eq=False)
class ConstraintViolation:
    joint_id: str
    orientation: Quat
    constraint: KusudamaConstraint


def create_cone(center, radius: float, tangent_radius: Optional[float] = None) -> Cone:
    """Cone of half-angle ``radius`` (radians) around a normalised ``center``."""
    c = quat_normalize(np.asarray(center, dtype=np.float64).reshape(4))
    if radius < 0:
        logger.warning("Negative cone radius %.4f clamped to 0", radius)
        radius = 0.0
    return Cone(center=c, radius=float(radius), tangent_radius=tangent_radius)


def create_cone_sequence(
    cones: Sequence[Union[Cone, ConeSequence]], tangent_radius: Optional[float] = None,
) -> ConeSequence:
    """Group cones; with ``tangent_radius`` each cone opens a passage to the next."""
    return ConeSequence(cones=tuple(cones), tangent_radius=tangent_radius)


def _flatten(items) -> list[Cone]:
    cones = []
    for item in items:
        if isinstance(item, ConeSequence):
            group = _flatten(item.cones)
            if item.tangent_radius is not None:
                # The last cone of a group does not link onward
                group = [
                    replace(cone, tangent_radius=item.tangent_radius) if i < len(group) - 1 else cone
                    for i, cone in enumerate(group)
                ]
            cones.extend(group)
        else:
            cones.append(item)
    return cones


def create_constraint(
    joint_id: str, cones: Sequence[Union[Cone, ConeSequence]],
) -> KusudamaConstraint:
    return KusudamaConstraint(joint_id=joint_id, cones=tuple(_flatten(cones)))


def set_twist_limits(
    constraint: KusudamaConstraint, min_twist: float, max_twist: float,
) -> KusudamaConstraint:
    """Return a copy of ``constraint`` with twist limits in degrees."""
    if min_twist > max_twist:
        raise ValueError(f"min_twist {min_twist} exceeds max_twist {max_twist}")
    return replace(constraint, twist_limits=(float(min_twist), float(max_twist)))


# ------------------------------------------------------------------
# Containment
# ------------------------------------------------------------------

@dataclass
class _Passage:
    """Tangent passage along the geodesic from ``start`` to ``end``.

    The width blends from one cone's radius to the next and widens to
    ``tangent_radius`` at the midpoint.
    """
    start: Cone
    end: Cone
    span: float

    def point(self, t: float) -> Quat:
        return quat_rotate_towards(self.start.center, self.end.center, self.span * t)

    def width(self, t: float) -> float:
        bulge = math.sin(math.pi * t)
        return ((1.0 - bulge) * lerp(self.start.radius, self.end.radius, t)
                + bulge * self.start.tangent_radius)

    def samples(self):
        for t in np.linspace(0.0, 1.0, PASSAGE_SAMPLES):
            yield self.point(t), self.width(t)

    def closest(self, q: Quat) -> float:
        """Parameter of the point on the centre geodesic nearest to ``q``."""
        a = self.start.center
        b = self.end.center
        if np.dot(a, b) < 0:
            b = -b
        ortho = b - np.dot(a, b) * a
        n = np.linalg.norm(ortho)
        if n < EPSILON:
            return 0.0
        e2 = ortho / n
        half_span = math.atan2(n, float(np.dot(a, b)))
        best_t, best_angle = 0.0, math.inf
        # q and -q are the same orientation
        for s in (q, -q):
            phi = math.atan2(float(np.dot(s, e2)), float(np.dot(s, a)))
            t = clamp(phi / half_span, 0.0, 1.0)
            angle = quat_angle(q, self.point(t))
            if angle < best_angle:
                best_t, best_angle = t, angle
        return best_t


def _passages(constraint: KusudamaConstraint) -> list[_Passage]:
    cones = constraint.cones
    return [
        _Passage(a, b, quat_angle(a.center, b.center))
        for a, b in zip(cones, cones[1:])
        if a.tangent_radius is not None
    ]


def orientation_in_cone(orientation: Quat, cone: Cone) -> bool:
    return quat_angle(orientation, cone.center) <= cone.radius + CONE_TOLERANCE


def orientation_allowed(constraint: KusudamaConstraint, orientation: Quat) -> bool:
    """True when the orientation lies in a cone or in a tangent passage."""
    if any(orientation_in_cone(orientation, cone) for cone in constraint.cones):
        return True
    for passage in _passages(constraint):
        t = passage.closest(orientation)
        if quat_angle(orientation, passage.point(t)) <= passage.width(t) + CONE_TOLERANCE:
            return True
        for point, width in passage.samples():
            if quat_angle(orientation, point) <= width + CONE_TOLERANCE:
                return True
    return False


def _as_orientation(q) -> Optional[Quat]:
    try:
        arr = np.asarray(q, dtype=np.float64).reshape(4)
    except (TypeError, ValueError):
        return None
    if not np.all(np.isfinite(arr)) or np.linalg.norm(arr) < 1e-10:
        return None
    return arr


def apply_constraint(constraint: KusudamaConstraint, current_orientation, target_orientation):
    """Clamp ``target_orientation`` into the allowed region.

    An allowed target comes back unchanged.  Otherwise the target is moved
    along the geodesic onto the nearest boundary (cone or passage), landing
    just inside it.  With no cones or unusable input, ``current_orientation``
    is returned.
    """
    target = _as_orientation(target_orientation)
    if target is None or not constraint.cones:
        return current_orientation

    q = quat_normalize(target)
    if orientation_allowed(constraint, q):
        return target

    # (slack, centre, width); distance to a geodesic ball is angle - radius
    candidates = [(quat_angle(cone.center, q) - cone.radius, cone.center, cone.radius)
                  for cone in constraint.cones]
    for passage in _passages(constraint):
        t = passage.closest(q)
        point, width = passage.point(t), passage.width(t)
        candidates.append((quat_angle(point, q) - width, point, width))
        candidates.extend((quat_angle(p, q) - w, p, w) for p, w in passage.samples())
    candidates.sort(key=lambda c: c[0])

    for _, center, width in candidates:
        result = quat_rotate_towards(center, q, max(width - BOUNDARY_EPSILON, 0.0))
        if orientation_allowed(constraint, result):
            return result
    logger.warning("No usable cone for joint %s; keeping current orientation",
                   constraint.joint_id)
    return current_orientation


def validate_constraints(
    constraints: Sequence[KusudamaConstraint], pose: dict,
) -> list[ConstraintViolation]:
    """Return violations for joints present in ``pose``; empty means valid.

    Constraints whose joint is missing from the pose are skipped.
    """
    violations = []
    for constraint in constraints:
        orientation = pose.get(constraint.joint_id)
        if orientation is None:
            continue
        q = _as_orientation(orientation)
        if q is None or not orientation_allowed(constraint, quat_normalize(q)):
            violations.append(ConstraintViolation(constraint.joint_id, orientation, constraint))
    return violations


# ------------------------------------------------------------------
# Twist
# ------------------------------------------------------------------

def _wrap_degrees(angle: float) -> float:
    return (angle + 180.0) % 360.0 - 180.0


def _twist_axis(constraint: KusudamaConstraint):
    return normalize(as_vec3(constraint.twist_axis))


def twist_angle(constraint: KusudamaConstraint, orientation) -> float:
    """Twist about the constraint's bone axis, in degrees within [-180, 180)."""
    axis = _twist_axis(constraint)
    _, twist = quat_swing_twist(quat_normalize(np.asarray(orientation, dtype=np.float64)), axis)
    angle = 2.0 * math.atan2(float(np.dot(twist[:3], axis)), float(twist[3]))
    return _wrap_degrees(rad_to_deg(angle))


def check_twist_limits(constraint: KusudamaConstraint, orientation) -> bool:
    lo, hi = constraint.twist_limits
    if lo <= -180.0 and hi >= 180.0:
        return True
    return lo - TWIST_TOLERANCE <= twist_angle(constraint, orientation) <= hi + TWIST_TOLERANCE


def clamp_twist(constraint: KusudamaConstraint, orientation):
    """Replace an out-of-range twist with the nearest twist limit."""
    if check_twist_limits(constraint, orientation):
        return orientation
    axis = _twist_axis(constraint)
    q = quat_normalize(np.asarray(orientation, dtype=np.float64))
    swing, _ = quat_swing_twist(q, axis)
    angle = twist_angle(constraint, q)
    lo, hi = constraint.twist_limits
    to_lo = abs(_wrap_degrees(angle - lo))
    to_hi = abs(_wrap_degrees(angle - hi))
    limit = lo if to_lo <= to_hi else hi
    return quat_normalize(quat_multiply(swing, quat_from_axis_angle(axis, deg_to_rad(limit))))


def constrain_orientation(constraint: KusudamaConstraint, current_orientation, target_orientation):
    """Apply the cones and the twist limits together.

    The cones are applied first, then the twist is clamped.  When the
    clamped twist leaves the cones, the swing is shrunk with the twist held
    at its limit until the orientation is back inside.  If even the bare
    twist lies outside every cone the limits cannot both hold, and the cone
    result wins.
    """
    coned = apply_constraint(constraint, current_orientation, target_orientation)
    clamped = clamp_twist(constraint, coned)
    if clamped is coned or not constraint.cones:
        return clamped
    clamped = quat_normalize(np.asarray(clamped, dtype=np.float64))
    if orientation_allowed(constraint, clamped):
        return clamped

    swing, twist = quat_swing_twist(clamped, _twist_axis(constraint))
    if not orientation_allowed(constraint, twist):
        logger.debug("Twist limits of %s fall outside its cones; keeping the cone limit",
                     constraint.joint_id)
        return coned

    axis, angle = quat_to_axis_angle(swing)
    lo, hi = 0.0, 1.0
    for _ in range(SWING_BISECTIONS):
        mid = 0.5 * (lo + hi)
        candidate = quat_multiply(quat_from_axis_angle(axis, angle * mid), twist)
        if orientation_allowed(constraint, candidate):
            lo = mid
        else:
            hi = mid
    return quat_normalize(quat_multiply(quat_from_axis_angle(axis, angle * lo), twist))
