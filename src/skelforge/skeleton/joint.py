"""Joint hierarchy with cached global transforms and dirty-flag propagation.

All joints live in a :class:`JointHierarchy` arena.  Parent and child links
are :class:`JointHandle` values (slot index + generation), never object
references, so ancestor walks are O(1) per step and destroyed slots can be
detected.  Every public method accepts either a handle or a joint name.

Global transforms are computed lazily: ``global = parent.global @ local``
(or ``local`` for a root) and cached until the joint or one of its
ancestors changes.  The cache makes a hierarchy single-writer: mutate one
skeleton from one thread at a time.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, NamedTuple, Optional, Union

import numpy as np

from skelforge.core.config_loader import HierarchyLimits
from skelforge.core.errors import (
    CircularDependency, HierarchyTooDeep, InvalidNode, TooManyChildren,
)
from skelforge.core.math_utils import (
    Mat4, Vec3,
    as_vec3, mat4_compose, mat4_identity, mat4_inverse, mat4_orthogonalize,
    quat_identity, transform_point,
)
from skelforge.skeleton.validation import (
    hierarchy_depth, validate_transform, would_create_cycle,
)

logger = logging.getLogger(__name__)


class JointHandle(NamedTuple):
    """Generation-checked reference to a joint slot."""
    index: int
    generation: int


JointRef = Union[JointHandle, str]


@dataclass
class Joint:
    """A single joint record owned by a :class:`JointHierarchy`."""
    handle: JointHandle
    name: str
    parent: Optional[JointHandle] = None
    children: list[JointHandle] = field(default_factory=list)
    local_transform: Mat4 = field(default_factory=mat4_identity)
    disable_scale: bool = False

    # Cached global transform
    _global_transform: Mat4 = field(default_factory=mat4_identity, repr=False)
    _dirty: bool = field(default=True, repr=False)


class JointHierarchy:
    """Arena owning every joint of one skeleton."""

    def __init__(self, limits: Optional[HierarchyLimits] = None):
        self.limits = limits or HierarchyLimits()
        self._slots: list[Optional[Joint]] = []
        self._generations: list[int] = []
        self._free: list[int] = []
        self._by_name: dict[str, JointHandle] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _get(self, ref: JointRef) -> Joint:
        if isinstance(ref, str):
            handle = self._by_name.get(ref)
            if handle is None:
                raise InvalidNode(f"Unknown joint: {ref}")
            ref = handle
        if not isinstance(ref, JointHandle):
            raise InvalidNode(f"Not a joint reference: {ref!r}")
        if not 0 <= ref.index < len(self._slots):
            raise InvalidNode(f"Joint handle out of range: {ref}")
        joint = self._slots[ref.index]
        if joint is None or self._generations[ref.index] != ref.generation:
            raise InvalidNode(f"Stale joint handle: {ref}")
        return joint

    def resolve(self, ref: JointRef) -> JointHandle:
        """Return the handle for a name or validate an existing handle."""
        return self._get(ref).handle

    def find(self, name: str) -> Optional[JointHandle]:
        return self._by_name.get(name)

    def get_name(self, ref: JointRef) -> str:
        return self._get(ref).name

    def get_parent(self, ref: JointRef) -> Optional[JointHandle]:
        return self._get(ref).parent

    def get_children(self, ref: JointRef) -> list[JointHandle]:
        return list(self._get(ref).children)

    def names(self) -> list[str]:
        return [joint.name for joint in self._joints()]

    def roots(self) -> list[JointHandle]:
        return [joint.handle for joint in self._joints() if joint.parent is None]

    def depth(self, ref: JointRef) -> int:
        """Number of ancestors above the joint (0 for a root)."""
        return hierarchy_depth(self._get(ref).handle, self._parent_of, self.limits.max_depth)

    def is_scale_disabled(self, ref: JointRef) -> bool:
        return self._get(ref).disable_scale

    def _joints(self) -> Iterator[Joint]:
        return (joint for joint in self._slots if joint is not None)

    def _parent_of(self, handle: JointHandle) -> Optional[JointHandle]:
        return self._get(handle).parent

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, ref) -> bool:
        try:
            self._get(ref)
        except InvalidNode:
            return False
        return True

    def __iter__(self) -> Iterator[JointHandle]:
        return (joint.handle for joint in self._joints())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        parent: Optional[JointRef] = None,
        name: Optional[str] = None,
        transform: Optional[Mat4] = None,
        disable_scale: bool = False,
    ) -> JointHandle:
        """Allocate a joint, optionally as a child of ``parent``."""
        parent_joint = self._get(parent) if parent is not None else None
        local = (
            validate_transform(transform, self.limits.max_transform_magnitude)
            if transform is not None else mat4_identity()
        )
        if parent_joint is not None:
            self._check_can_adopt(parent_joint, subtree_height=0)
        if name is not None and name in self._by_name:
            raise InvalidNode(f"Duplicate joint name: {name}")

        if self._free:
            index = self._free.pop()
        else:
            index = len(self._slots)
            self._slots.append(None)
            self._generations.append(0)
        handle = JointHandle(index, self._generations[index])

        if name is None:
            name = f"joint_{index}"
            while name in self._by_name:
                name += "_"

        joint = Joint(handle=handle, name=name, local_transform=local,
                      disable_scale=disable_scale)
        self._slots[index] = joint
        self._by_name[name] = handle
        if parent_joint is not None:
            joint.parent = parent_joint.handle
            parent_joint.children.append(handle)
        return handle

    def destroy(self, ref: JointRef) -> None:
        """Remove a joint, severing its parent link and orphaning its children."""
        joint = self._get(ref)
        if joint.parent is not None:
            self._get(joint.parent).children.remove(joint.handle)
        for child_handle in joint.children:
            child = self._get(child_handle)
            child.parent = None
            self._mark_dirty(child)
        joint.children = []
        del self._by_name[joint.name]
        index = joint.handle.index
        self._slots[index] = None
        self._generations[index] += 1
        self._free.append(index)

    # ------------------------------------------------------------------
    # Parenting
    # ------------------------------------------------------------------

    def _subtree_height(self, joint: Joint) -> int:
        if not joint.children:
            return 0
        return 1 + max(self._subtree_height(self._get(c)) for c in joint.children)

    def _check_can_adopt(self, parent: Joint, subtree_height: int) -> None:
        new_depth = self.depth(parent.handle) + 1 + subtree_height
        if new_depth >= self.limits.max_depth:
            raise HierarchyTooDeep(
                f"Parenting under {parent.name} would reach depth {new_depth} "
                f"(max {self.limits.max_depth})"
            )
        if len(parent.children) >= self.limits.max_children:
            raise TooManyChildren(
                f"{parent.name} already has {len(parent.children)} children "
                f"(max {self.limits.max_children})"
            )

    def set_parent(self, ref: JointRef, new_parent: Optional[JointRef]) -> None:
        """Reparent a joint; ``None`` makes it a root.

        Raises :class:`CircularDependency` when ``new_parent`` is the joint
        itself or one of its descendants.  Nothing is modified on failure.
        """
        joint = self._get(ref)
        parent_joint = self._get(new_parent) if new_parent is not None else None

        if parent_joint is not None:
            if parent_joint.handle == joint.parent:
                return
            if would_create_cycle(joint.handle, parent_joint.handle,
                                  self._parent_of, self.limits.max_depth):
                raise CircularDependency(
                    f"{parent_joint.name} is {joint.name} or one of its descendants"
                )
            self._check_can_adopt(parent_joint, self._subtree_height(joint))

        if joint.parent is not None:
            self._get(joint.parent).children.remove(joint.handle)
        joint.parent = None
        if parent_joint is not None:
            joint.parent = parent_joint.handle
            parent_joint.children.append(joint.handle)
        self._mark_dirty(joint)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _mark_dirty(self, joint: Joint) -> None:
        """Mark this joint and all descendants as needing a global update."""
        stack = [joint]
        while stack:
            current = stack.pop()
            current._dirty = True
            stack.extend(self._get(c) for c in current.children)

    def get_local_transform(self, ref: JointRef) -> Mat4:
        return self._get(ref).local_transform.copy()

    def set_local_transform(self, ref: JointRef, matrix: Mat4) -> None:
        """Store a new local transform; bit-identical input is a no-op."""
        joint = self._get(ref)
        m = validate_transform(matrix, self.limits.max_transform_magnitude)
        if m.tobytes() == joint.local_transform.tobytes():
            return
        joint.local_transform = m
        self._mark_dirty(joint)

    def _global(self, joint: Joint) -> Mat4:
        if not joint._dirty:
            return joint._global_transform
        if joint.parent is None:
            g = joint.local_transform.copy()
        else:
            g = self._global(self._get(joint.parent)) @ joint.local_transform
        if joint.disable_scale:
            g = mat4_orthogonalize(g)
        joint._global_transform = g
        joint._dirty = False
        return g

    def get_global_transform(self, ref: JointRef) -> Mat4:
        return self._global(self._get(ref)).copy()

    def set_global_transform(self, ref: JointRef, matrix: Mat4) -> None:
        """Choose the local transform so the joint's global equals ``matrix``."""
        joint = self._get(ref)
        m = validate_transform(matrix, self.limits.max_transform_magnitude)
        if joint.parent is None:
            self.set_local_transform(joint.handle, m)
        else:
            parent_global = self._global(self._get(joint.parent))
            self.set_local_transform(joint.handle, mat4_inverse(parent_global) @ m)

    def set_disable_scale(self, ref: JointRef, disabled: bool) -> None:
        joint = self._get(ref)
        if joint.disable_scale != disabled:
            joint.disable_scale = disabled
            self._mark_dirty(joint)

    def get_global_position(self, ref: JointRef) -> Vec3:
        """Extract world position from the global matrix."""
        return self._global(self._get(ref))[:3, 3].copy()

    def to_local(self, ref: JointRef, point) -> Vec3:
        """Convert a global-space point into the joint's space."""
        p = as_vec3(point)
        g = self._global(self._get(ref))
        if np.array_equal(g, np.eye(4)):
            return p.copy()
        return transform_point(mat4_inverse(g), p)

    def to_global(self, ref: JointRef, point) -> Vec3:
        """Convert a joint-space point into global space."""
        p = as_vec3(point)
        g = self._global(self._get(ref))
        if np.array_equal(g, np.eye(4)):
            return p.copy()
        return transform_point(g, p)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def traverse(self, ref: JointRef, callback: Callable[[JointHandle], None]) -> None:
        """Visit this joint and all descendants depth-first."""
        joint = self._get(ref)
        callback(joint.handle)
        for child in list(joint.children):
            self.traverse(child, callback)

    def ancestors(self, ref: JointRef) -> list[JointHandle]:
        """Parents of the joint, nearest first."""
        result = []
        current = self._get(ref).parent
        while current is not None and len(result) < self.limits.max_depth:
            result.append(current)
            current = self._get(current).parent
        return result

    # ------------------------------------------------------------------
    # Plain-data conversion
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        skeleton: dict[str, dict],
        limits: Optional[HierarchyLimits] = None,
    ) -> "JointHierarchy":
        """Build a hierarchy from ``{name: {"parent": ..., "transform": ...}}``.

        A joint's local transform is taken from ``"transform"`` (4x4 rows)
        or composed from ``"translation"``, ``"rotation"`` ([x, y, z, w]) and
        ``"scale"``.  Parents are created before children whatever the dict
        order is.
        """
        hierarchy = cls(limits)
        visiting: set[str] = set()

        def ensure(name: str) -> JointHandle:
            existing = hierarchy.find(name)
            if existing is not None:
                return existing
            if name not in skeleton:
                raise InvalidNode(f"Unknown parent joint: {name}")
            if name in visiting:
                raise CircularDependency(f"Cycle in skeleton data at {name}")
            visiting.add(name)
            entry = skeleton[name] or {}
            parent_name = entry.get("parent")
            parent = ensure(parent_name) if parent_name is not None else None
            visiting.discard(name)
            return hierarchy.create(
                parent=parent,
                name=name,
                transform=_transform_from_entry(entry),
                disable_scale=bool(entry.get("disable_scale", False)),
            )

        for joint_name in skeleton:
            ensure(joint_name)
        return hierarchy

    def to_dict(self) -> dict[str, dict]:
        """Export as plain data understood by :meth:`from_dict`."""
        result = {}
        for joint in self._joints():
            result[joint.name] = {
                "parent": self._get(joint.parent).name if joint.parent is not None else None,
                "transform": joint.local_transform.tolist(),
                "disable_scale": joint.disable_scale,
            }
        return result


def _transform_from_entry(entry: dict) -> Optional[Mat4]:
    if entry.get("transform") is not None:
        return np.asarray(entry["transform"], dtype=np.float64)
    keys = ("translation", "rotation", "scale")
    if not any(k in entry for k in keys):
        return None
    return mat4_compose(
        as_vec3(entry.get("translation", (0.0, 0.0, 0.0))),
        np.asarray(entry.get("rotation", quat_identity()), dtype=np.float64),
        as_vec3(entry.get("scale", (1.0, 1.0, 1.0))),
    )
