"""EWBIK (Entirely Wahba's-problem Based Inverse Kinematics) solver.

Each iteration walks a chain from the effector to the root.  At every joint
the effector's "tip headings" (its position plus points along its axes) and
the matching "target headings" are expressed about the joint pivot, and the
rotation that best maps one set onto the other is found by solving Wahba's
problem.  The rotation is damped by the propagation factor, constrained by
the joint's kusudama and written back into the pose.  Without a target
orientation the fit reduces to the shortest arc taking the tip onto the
goal.

The solver never mutates the hierarchy: it returns a pose (local rotation
per chain joint) that callers commit with :func:`apply_pose`.  Structural
problems come back as ``SolveResult.error``; running out of iterations is
not an error and returns the best pose found.
"""

import concurrent.futures
import contextlib
import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np

from skelforge.core.config_loader import SolverSettings
from skelforge.core.errors import ErrorKind, SolveError
from skelforge.core.math_utils import (
    Mat4, Quat, Vec3,
    as_quat, as_vec3, best_fit_rotation, mat3_from_quaternion, mat4_compose, mat4_decompose,
    mat4_identity, mat4_orthogonalize, quat_conjugate, quat_from_mat3, quat_from_two_vectors,
    quat_angle, quat_identity, quat_multiply, quat_normalize, quat_rotate_towards,
)
from skelforge.ik.kusudama import KusudamaConstraint, constrain_orientation
from skelforge.ik.propagation import (
    EffectorSolution, EffectorType, JointAdjustment,
    calculate_propagation_factors, combine_multi_effector_solutions,
    effector_type_weight, scale_adjustment, smooth_propagation,
)
from skelforge.ik.segmentation import (
    Chain, analyze_chains, build_chain, classify_effectors, get_processing_order,
)
from skelforge.skeleton.joint import JointHierarchy, JointRef

logger = logging.getLogger(__name__)

Pose = dict[str, Quat]


@dataclass
class EffectorTarget:
    """World-space goal for one effector joint."""
    joint: JointRef
    position: Vec3
    orientation: Optional[Quat] = None
    weight: float = 1.0
    kind: Optional[EffectorType] = None

    @classmethod
    def coerce(cls, item) -> "EffectorTarget":
        """Accept an ``EffectorTarget`` or a ``(joint, position[, orientation])`` tuple."""
        if isinstance(item, cls):
            return item
        joint, position, *rest = item
        orientation = rest[0] if rest else None
        return cls(joint=joint, position=np.asarray(position, dtype=np.float64),
                   orientation=orientation)

    def is_finite(self) -> bool:
        position = np.asarray(self.position, dtype=np.float64)
        if position.shape != (3,) or not np.all(np.isfinite(position)):
            return False
        if self.orientation is not None:
            q = np.asarray(self.orientation, dtype=np.float64)
            return q.shape == (4,) and bool(np.all(np.isfinite(q)))
        return True


@dataclass
class SolveResult:
    """Pose produced by a solve, or the reason no pose could be produced."""
    pose: Pose = field(default_factory=dict)
    converged: bool = False
    iterations: int = 0
    distance: float = math.inf
    error: Optional[SolveError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _failure(kind: ErrorKind, message: str) -> SolveResult:
    logger.warning(message)
    return SolveResult(error=SolveError(kind, message))


# ------------------------------------------------------------------
# Kinematics helpers
# ------------------------------------------------------------------

def current_pose(hierarchy: JointHierarchy, joints: Sequence[str]) -> Pose:
    """Local rotations currently stored in the hierarchy for ``joints``."""
    return {name: mat4_decompose(hierarchy.get_local_transform(name))[1] for name in joints}


def forward_kinematics(hierarchy: JointHierarchy, chain: Chain, pose: Pose) -> dict[str, Mat4]:
    """Global matrices of the chain joints with local rotations taken from ``pose``.

    Translation and scale come from the hierarchy's local transforms.  The
    frame above the chain's last joint is read from the hierarchy, so chains
    that stop short of the root still work.
    """
    globals_: dict[str, Mat4] = {}
    top = chain[-1]
    parent = hierarchy.get_parent(top)
    g = hierarchy.get_global_transform(parent) if parent is not None else mat4_identity()
    for name in reversed(chain):
        position, rotation, scale = mat4_decompose(hierarchy.get_local_transform(name))
        g = g @ mat4_compose(position, pose.get(name, rotation), scale)
        globals_[name] = g
    return globals_


def _rotation_of(m: Mat4) -> Quat:
    return quat_from_mat3(mat4_orthogonalize(m)[:3, :3])


def apply_pose(hierarchy: JointHierarchy, pose: Pose) -> None:
    """Commit solved local rotations, keeping each joint's translation and scale."""
    for name, rotation in pose.items():
        position, _, scale = mat4_decompose(hierarchy.get_local_transform(name))
        hierarchy.set_local_transform(name, mat4_compose(position, quat_normalize(rotation), scale))


def effector_weights(chains: Sequence[Chain], targets: Sequence[EffectorTarget]) -> list[float]:
    """Blend weight per chain: target weight scaled by the effector's role.

    An explicit ``target.kind`` overrides the role found by
    :func:`classify_effectors`.
    """
    kinds = classify_effectors(chains)
    return [
        effector_type_weight(target.kind or kinds[chain[0]], target.weight)
        for chain, target in zip(chains, targets)
    ]


def blend_chain_poses(
    pose: Pose,
    chains: Sequence[Chain],
    chain_poses: Sequence[Pose],
    weights: Sequence[float],
    hierarchy: Optional[JointHierarchy] = None,
) -> Pose:
    """Merge per-chain poses that all started from ``pose``.

    Each chain's change at a joint is ``conj(pose) * chain_pose``; shared
    joints get the weighted blend of those changes.
    """
    solutions = []
    for chain, chain_pose, weight in zip(chains, chain_poses, weights):
        adjustments = {
            name: JointAdjustment(rotation=quat_multiply(quat_conjugate(pose[name]), chain_pose[name]))
            for name in chain
        }
        solutions.append(EffectorSolution(chain[0], adjustments, weight))
    combined = combine_multi_effector_solutions(solutions, hierarchy)
    return {
        name: quat_normalize(quat_multiply(pose[name], adjustment.rotation))
        for name, adjustment in combined.items()
    }


# ------------------------------------------------------------------
# Solver
# ------------------------------------------------------------------

class EWBIKSolver:
    """Iterative multi-effector IK solver.

    Parameters
    ----------
    settings:
        Solver tunables; defaults to :class:`SolverSettings`.
    constraints:
        Kusudama constraints, as a sequence or a ``{joint_id: constraint}``
        mapping.
    """

    def __init__(
        self,
        settings: Optional[SolverSettings] = None,
        constraints: Union[Sequence[KusudamaConstraint], dict, None] = None,
    ) -> None:
        self.settings = settings or SolverSettings()
        if isinstance(constraints, dict):
            self.constraints = dict(constraints)
        else:
            self.constraints = {c.joint_id: c for c in (constraints or [])}
        # Propagation factors from the previous solve, per effector
        self._previous_factors: dict[str, dict[str, float]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def solve(self, hierarchy: JointHierarchy, target) -> SolveResult:
        """Single-effector solve: Init -> Iterate -> Converged | Exhausted."""
        target = EffectorTarget.coerce(target)
        chain = build_chain(hierarchy, target.joint)
        if not chain:
            return _failure(ErrorKind.NO_CHAIN_FOUND,
                            f"No valid chain found for effector {target.joint}")
        if not target.is_finite():
            return _failure(ErrorKind.INVALID_TRANSFORM,
                            f"Invalid target for effector {target.joint}")
        return self._solve_chain(hierarchy, chain, target, current_pose(hierarchy, chain))

    def solve_multi(self, hierarchy: JointHierarchy, targets: Sequence) -> SolveResult:
        """Solve several effectors whose chains may share joints.

        Each round forks one solver sweep per chain from the current pose
        (on a thread pool when ``settings.max_workers > 1``), then joins:
        per-joint adjustments are blended by effector type and target
        weight and committed leaves-first.  Rounds repeat until every
        effector is within ``tolerance`` or the iteration budget runs out.
        """
        targets = [EffectorTarget.coerce(t) for t in targets]
        analysis = analyze_chains(hierarchy, targets)
        if not analysis.ok:
            return SolveResult(error=SolveError(ErrorKind.CHAIN_ANALYSIS_FAILED,
                                                analysis.error.message))
        for target in targets:
            if not target.is_finite():
                return _failure(
                    ErrorKind.MULTI_EFFECTOR_SOLVE_FAILED,
                    f"Multi-effector solving failed: Invalid target for effector {target.joint}",
                )

        chains = analysis.chains
        order = get_processing_order(chains)
        weights = effector_weights(chains, targets)
        factors = [self._chain_factors(chain[0], chain) for chain in chains]
        tolerance = self.settings.tolerance
        iterations = self.settings.iterations

        pose = current_pose(hierarchy, order)
        best_pose, best_score, best_distance = dict(pose), math.inf, math.inf
        with self._executor(hierarchy, order, len(chains)) as executor:
            for iteration in range(iterations + 1):
                errors = [self._measure(hierarchy, chain, target, pose)
                          for chain, target in zip(chains, targets)]
                distance = max(d for d, _ in errors)
                score = sum(d + o for d, o in errors)
                if score < best_score:
                    best_pose, best_score, best_distance = dict(pose), score, distance
                if all(d < tolerance and o < tolerance for d, o in errors):
                    logger.info("Multi-effector solve over %d chains converged after %d "
                                "iterations (max distance %.6f)", len(chains), iteration, distance)
                    return SolveResult(pose=pose, converged=True,
                                       iterations=iteration, distance=distance)
                if iteration == iterations:
                    break
                logger.debug("Multi-effector iteration %d: max distance %.6f", iteration, distance)
                stepped = self._step_all(hierarchy, chains, targets, pose, factors, executor)
                pose = self._join(hierarchy, order, chains, pose, stepped, weights)

        logger.info("Multi-effector solve over %d chains exhausted %d iterations; "
                    "best max distance %.6f", len(chains), iterations, best_distance)
        return SolveResult(pose=best_pose, converged=False,
                           iterations=iterations, distance=best_distance)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _executor(self, hierarchy: JointHierarchy, joints: Sequence[str], n_chains: int):
        if self.settings.max_workers <= 1 or n_chains <= 1:
            return contextlib.nullcontext()
        # Chains only read the hierarchy; warm the global cache first so
        # worker threads never write to it.
        for name in joints:
            hierarchy.get_global_transform(name)
        return concurrent.futures.ThreadPoolExecutor(max_workers=self.settings.max_workers)

    def _step_all(self, hierarchy, chains, targets, pose, factors, executor) -> list[Pose]:
        """One sweep per chain, each from the same shared pose."""
        def step(chain, target, chain_factors):
            start = {name: pose[name] for name in chain}
            return self._iterate(hierarchy, chain, target, start, chain_factors)

        if executor is not None:
            return list(executor.map(step, chains, targets, factors))
        return [step(c, t, f) for c, t, f in zip(chains, targets, factors)]

    def _join(self, hierarchy, order, chains, pose, stepped, weights) -> Pose:
        blended = blend_chain_poses(pose, chains, stepped, weights, hierarchy)
        return {name: self._constrain(name, pose[name], blended.get(name, pose[name])) for name in order}

    def _chain_factors(self, effector: str, chain: Chain) -> dict[str, float]:
        factors = calculate_propagation_factors(
            chain, self.settings.effector_influence, self.settings.decay,
        )
        previous = self._previous_factors.get(effector)
        if previous is not None and self.settings.smoothing_factor < 1.0:
            factors = smooth_propagation(factors, previous, self.settings.smoothing_factor)
        self._previous_factors[effector] = factors
        return factors

    def _constrain(self, name: str, current: Quat, proposed: Quat) -> Quat:
        constraint = self.constraints.get(name)
        if constraint is None:
            return proposed
        return quat_normalize(np.asarray(constrain_orientation(constraint, current, proposed),
                                         dtype=np.float64))

    def _measure(
        self, hierarchy: JointHierarchy, chain: Chain, target: EffectorTarget, pose: Pose,
    ) -> tuple[float, float]:
        """(position distance, orientation error in radians) of the effector."""
        effector = forward_kinematics(hierarchy, chain, pose)[chain[0]]
        distance = float(np.linalg.norm(effector[:3, 3] - as_vec3(target.position)))
        if target.orientation is None:
            return distance, 0.0
        return distance, quat_angle(_rotation_of(effector), as_quat(target.orientation))

    def _solve_chain(
        self,
        hierarchy: JointHierarchy,
        chain: Chain,
        target: EffectorTarget,
        start: Pose,
    ) -> SolveResult:
        tolerance = self.settings.tolerance
        iterations = self.settings.iterations
        factors = self._chain_factors(chain[0], chain)

        pose = dict(start)
        best_pose, best_score, best_distance = dict(pose), math.inf, math.inf
        for iteration in range(iterations + 1):
            distance, orientation_error = self._measure(hierarchy, chain, target, pose)
            if distance + orientation_error < best_score:
                best_pose, best_score, best_distance = dict(pose), distance + orientation_error, distance
            if distance < tolerance and orientation_error < tolerance:
                logger.info("Effector %s converged after %d iterations (distance %.6f)",
                            chain[0], iteration, distance)
                return SolveResult(pose=pose, converged=True,
                                   iterations=iteration, distance=distance)
            if iteration == iterations:
                break
            logger.debug("Effector %s iteration %d: distance %.6f", chain[0], iteration, distance)
            pose = self._iterate(hierarchy, chain, target, pose, factors)

        if iterations > 0:
            logger.debug("Effector %s exhausted %d iterations; best distance %.6f",
                         chain[0], iterations, best_distance)
        return SolveResult(pose=best_pose, converged=False,
                           iterations=iterations, distance=best_distance)

    def _headings(
        self, pivot: Vec3, effector_global: Mat4, target: EffectorTarget,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Corresponding tip / target heading vectors about ``pivot`` and their weights."""
        tip = effector_global[:3, 3]
        goal = as_vec3(target.position)
        tip_axes = mat4_orthogonalize(effector_global)[:3, :3]
        goal_axes = mat3_from_quaternion(quat_normalize(as_quat(target.orientation)))
        reach = max(np.linalg.norm(tip - pivot), np.linalg.norm(goal - pivot), 1e-3)

        sources = [tip - pivot]
        targets = [goal - pivot]
        weights = [1.0]
        for k in range(3):
            for sign in (1.0, -1.0):
                sources.append(tip - pivot + sign * reach * tip_axes[:, k])
                targets.append(goal - pivot + sign * reach * goal_axes[:, k])
                weights.append(self.settings.orientation_weight)
        return np.array(sources), np.array(targets), np.array(weights)

    def _iterate(
        self,
        hierarchy: JointHierarchy,
        chain: Chain,
        target: EffectorTarget,
        pose: Pose,
        factors: dict[str, float],
    ) -> Pose:
        """One effector-to-root sweep of Wahba solves."""
        pose = dict(pose)
        for name in chain:
            globals_ = forward_kinematics(hierarchy, chain, pose)
            joint_global = globals_[name]
            pivot = joint_global[:3, 3]
            if target.orientation is None:
                # Free orientation: shortest arc swinging the tip onto the goal
                delta = quat_from_two_vectors(globals_[chain[0]][:3, 3] - pivot,
                                              as_vec3(target.position) - pivot)
            else:
                sources, targets, weights = self._headings(pivot, globals_[chain[0]], target)
                delta = best_fit_rotation(sources, targets, weights)
            delta = quat_rotate_towards(quat_identity(), delta, self.settings.dampening)
            delta = scale_adjustment(JointAdjustment(rotation=delta), factors.get(name, 1.0)).rotation

            # World-space delta into the joint's parent frame
            local = pose[name]
            parent_rotation = quat_normalize(quat_multiply(_rotation_of(joint_global),
                                                           quat_conjugate(local)))
            local_delta = quat_multiply(quat_multiply(quat_conjugate(parent_rotation), delta),
                                        parent_rotation)
            proposed = quat_normalize(quat_multiply(local_delta, local))
            pose[name] = self._constrain(name, local, proposed)
        return pose


def solve_ik(
    hierarchy: JointHierarchy,
    target,
    settings: Optional[SolverSettings] = None,
    constraints=None,
    **overrides,
) -> SolveResult:
    """Single-effector convenience wrapper; keyword overrides tweak settings."""
    settings = (settings or SolverSettings()).with_overrides(**overrides)
    return EWBIKSolver(settings, constraints).solve(hierarchy, target)


def solve_multi_effector(
    hierarchy: JointHierarchy,
    targets: Sequence,
    settings: Optional[SolverSettings] = None,
    constraints=None,
    **overrides,
) -> SolveResult:
    """Multi-effector convenience wrapper; keyword overrides tweak settings."""
    settings = (settings or SolverSettings()).with_overrides(**overrides)
    return EWBIKSolver(settings, constraints).solve_multi(hierarchy, targets)
