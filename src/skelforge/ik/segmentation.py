"""Skeleton segmentation: effector chains, junctions and processing order.

A chain is the list of joint names from an effector up to the root of the
hierarchy, effector first.  Joints shared by several chains are junctions
where the solver has to blend the influence of more than one effector.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from skelforge.core.errors import ErrorKind, SolveError
from skelforge.ik.propagation import EffectorType
from skelforge.skeleton.joint import JointHierarchy, JointRef

logger = logging.getLogger(__name__)

Chain = list[str]


@dataclass
class ChainAnalysis:
    """Outcome of :func:`analyze_chains`: chains, or an explicit error."""
    chains: list[Chain] = field(default_factory=list)
    error: Optional[SolveError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def effector_name(item) -> JointRef:
    """Joint reference of an effector/target pair or an ``EffectorTarget``."""
    if hasattr(item, "joint"):
        return item.joint
    if isinstance(item, (tuple, list)):
        return item[0]
    return item


def build_chain(hierarchy: JointHierarchy, effector: JointRef) -> Chain:
    """Walk parent links from ``effector`` to its root, effector first.

    Returns an empty list when the effector is not part of the hierarchy.
    """
    if effector not in hierarchy:
        return []
    chain = [hierarchy.get_name(effector)]
    chain.extend(hierarchy.get_name(h) for h in hierarchy.ancestors(effector))
    return chain


def analyze_chains(hierarchy: JointHierarchy, effector_targets: Sequence) -> ChainAnalysis:
    """Build one chain per effector.

    Fails (without raising) on the first effector that yields no chain.
    """
    chains = []
    for item in effector_targets:
        effector = effector_name(item)
        chain = build_chain(hierarchy, effector)
        if not chain:
            message = f"Chain analysis failed: No valid chain found for effector {effector}"
            logger.warning(message)
            return ChainAnalysis(error=SolveError(ErrorKind.CHAIN_ANALYSIS_FAILED, message))
        chains.append(chain)
    return ChainAnalysis(chains=chains)


def get_processing_order(chains: Sequence[Chain]) -> list[str]:
    """Merge chains into one joint order with leaves before their ancestors.

    Every chain is effector-first, so a joint's distance to the root is
    ``len(chain) - 1 - index``.  Sorting by that depth, deepest first, puts
    each joint ahead of everything on its root side; ties keep the order of
    first appearance.  Shared joints appear once.
    """
    depth: dict[str, int] = {}
    first_seen: dict[str, int] = {}
    for chain in chains:
        n = len(chain)
        for i, joint in enumerate(chain):
            if joint not in first_seen:
                first_seen[joint] = len(first_seen)
            depth[joint] = max(depth.get(joint, 0), n - 1 - i)
    return sorted(first_seen, key=lambda j: (-depth[j], first_seen[j]))


def find_junctions(chains: Sequence[Chain]) -> dict[str, list[str]]:
    """Map each joint shared by several chains to the effectors using it."""
    users: dict[str, list[str]] = {}
    for chain in chains:
        if not chain:
            continue
        for joint in chain:
            users.setdefault(joint, []).append(chain[0])
    return {joint: effectors for joint, effectors in users.items() if len(effectors) > 1}


def classify_effectors(chains: Sequence[Chain]) -> dict[str, EffectorType]:
    """Label each effector ultimate or intermediary.

    An effector that sits on another effector's chain only passes motion
    through to the true end target, so it is intermediary.
    """
    kinds = {}
    for chain in chains:
        if not chain:
            continue
        effector = chain[0]
        on_other_chain = any(
            other and other[0] != effector and effector in other[1:]
            for other in chains
        )
        kinds[effector] = EffectorType.INTERMEDIARY if on_other_chain else EffectorType.ULTIMATE
    return kinds
