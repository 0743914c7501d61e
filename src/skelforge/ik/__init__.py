"""Inverse kinematics: chain segmentation, kusudama constraints and the EWBIK solver."""

from skelforge.ik.kusudama import (
    KusudamaConstraint, create_cone, create_cone_sequence, create_constraint,
)
from skelforge.ik.propagation import EffectorType
from skelforge.ik.solver import (
    EffectorTarget, EWBIKSolver, SolveResult, apply_pose, solve_ik, solve_multi_effector,
)

__all__ = [
    "EWBIKSolver",
    "EffectorTarget",
    "EffectorType",
    "KusudamaConstraint",
    "SolveResult",
    "apply_pose",
    "create_cone",
    "create_cone_sequence",
    "create_constraint",
    "solve_ik",
    "solve_multi_effector",
]
