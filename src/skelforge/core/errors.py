"""Error taxonomy shared by the hierarchy, segmentation and solver.

Hierarchy mutators raise :class:`JointError` subclasses before touching any
state.  Segmentation and the solver never raise for structural problems;
they hand back a :class:`SolveError` value inside their result objects.
"""

from dataclasses import dataclass
from enum import Enum, auto


class ErrorKind(Enum):
    # Joint hierarchy
    INVALID_NODE = auto()
    INVALID_TRANSFORM = auto()
    CIRCULAR_DEPENDENCY = auto()
    HIERARCHY_TOO_DEEP = auto()
    TOO_MANY_CHILDREN = auto()

    # Segmentation / solver
    NO_CHAIN_FOUND = auto()
    CHAIN_ANALYSIS_FAILED = auto()
    MULTI_EFFECTOR_SOLVE_FAILED = auto()


class JointError(Exception):
    """Base class for joint hierarchy failures."""
    kind = ErrorKind.INVALID_NODE


class InvalidNode(JointError):
    kind = ErrorKind.INVALID_NODE


class InvalidTransform(JointError):
    kind = ErrorKind.INVALID_TRANSFORM


class CircularDependency(JointError):
    kind = ErrorKind.CIRCULAR_DEPENDENCY


class HierarchyTooDeep(JointError):
    kind = ErrorKind.HIERARCHY_TOO_DEEP


class TooManyChildren(JointError):
    kind = ErrorKind.TOO_MANY_CHILDREN


@dataclass(frozen=True)
class SolveError:
    """Explicit error value returned by segmentation and the solver."""
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return self.message
