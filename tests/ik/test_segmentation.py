"""Tests for chain building, junctions and processing order."""

import numpy as np

from skelforge.core.errors import ErrorKind
from skelforge.core.math_utils import mat4_translation
from skelforge.ik.propagation import EffectorType
from skelforge.ik.segmentation import (
    analyze_chains, build_chain, classify_effectors, effector_name,
    find_junctions, get_processing_order,
)
from skelforge.skeleton.joint import JointHierarchy


def _make_tree():
    """Two arms sharing a spine:  root -> spine -> {l_arm -> l_hand, r_arm -> r_hand}."""
    h = JointHierarchy()
    root = h.create(name="root")
    spine = h.create(root, "spine", mat4_translation(0, 1, 0))
    l_arm = h.create(spine, "l_arm", mat4_translation(-1, 0, 0))
    h.create(l_arm, "l_hand", mat4_translation(-1, 0, 0))
    r_arm = h.create(spine, "r_arm", mat4_translation(1, 0, 0))
    h.create(r_arm, "r_hand", mat4_translation(1, 0, 0))
    return h


def test_build_chain_effector_first():
    h = JointHierarchy()
    root = h.create(name="root")
    middle = h.create(root, "middle")
    h.create(middle, "leaf")
    assert build_chain(h, "leaf") == ["leaf", "middle", "root"]


def test_build_chain_accepts_handle():
    h = _make_tree()
    assert build_chain(h, h.resolve("spine")) == ["spine", "root"]


def test_build_chain_missing_effector():
    h = _make_tree()
    assert build_chain(h, "tail") == []


def test_analyze_chains_two_effectors():
    h = _make_tree()
    analysis = analyze_chains(h, [("l_hand", np.zeros(3)), ("r_hand", np.zeros(3))])
    assert analysis.ok
    assert analysis.chains == [
        ["l_hand", "l_arm", "spine", "root"],
        ["r_hand", "r_arm", "spine", "root"],
    ]
    union = set(analysis.chains[0]) | set(analysis.chains[1])
    assert union == {"l_hand", "l_arm", "r_hand", "r_arm", "spine", "root"}


def test_analyze_chains_reports_missing_effector():
    h = _make_tree()
    analysis = analyze_chains(h, [("l_hand", np.zeros(3)), ("nonexistent", np.zeros(3))])
    assert not analysis.ok
    assert analysis.chains == []
    assert analysis.error.kind == ErrorKind.CHAIN_ANALYSIS_FAILED
    assert "No valid chain found for effector nonexistent" in analysis.error.message


def test_effector_name_shapes():
    class Target:
        joint = "hand"

    assert effector_name(Target()) == "hand"
    assert effector_name(("hand", None)) == "hand"
    assert effector_name("hand") == "hand"


def test_processing_order_leaves_first():
    chains = [
        ["l_hand", "l_arm", "spine", "root"],
        ["r_hand", "r_arm", "spine", "root"],
    ]
    order = get_processing_order(chains)
    assert order == ["l_hand", "r_hand", "l_arm", "r_arm", "spine", "root"]


def test_processing_order_children_before_parents_uneven_chains():
    chains = [
        ["head", "neck", "spine", "root"],
        ["l_hand", "l_forearm", "l_arm", "l_shoulder", "spine", "root"],
    ]
    order = get_processing_order(chains)
    assert len(order) == len(set(order))
    for chain in chains:
        positions = [order.index(j) for j in chain]
        assert positions == sorted(positions)


def test_find_junctions():
    chains = [
        ["l_hand", "l_arm", "spine", "root"],
        ["r_hand", "r_arm", "spine", "root"],
    ]
    junctions = find_junctions(chains)
    assert junctions == {"spine": ["l_hand", "r_hand"], "root": ["l_hand", "r_hand"]}


def test_classify_effectors():
    chains = [
        ["hand", "forearm", "arm", "root"],
        ["arm", "root"],
    ]
    kinds = classify_effectors(chains)
    assert kinds["hand"] == EffectorType.ULTIMATE
    assert kinds["arm"] == EffectorType.INTERMEDIARY
