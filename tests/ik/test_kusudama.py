"""Tests for kusudama cone constraints and twist limits."""

import numpy as np
import pytest

from skelforge.core.math_utils import (
    quat_angle, quat_from_axis_angle, quat_identity, quat_multiply, vec3,
)
from skelforge.ik.kusudama import (
    apply_constraint, check_twist_limits, clamp_twist, constrain_orientation, create_cone,
    create_cone_sequence, create_constraint, orientation_allowed, orientation_in_cone,
    set_twist_limits, twist_angle, validate_constraints,
)


def _single_cone(radius=0.5):
    return create_constraint("elbow", [create_cone(quat_identity(), radius)])


def test_create_cone_normalizes_center():
    cone = create_cone([0, 0, 0, 2], 0.3)
    np.testing.assert_array_almost_equal(cone.center, [0, 0, 0, 1])


def test_create_cone_clamps_negative_radius():
    assert create_cone(quat_identity(), -1.0).radius == 0.0


def test_center_is_inside_and_unchanged():
    c = _single_cone()
    q = quat_identity()
    assert orientation_in_cone(q, c.cones[0])
    result = apply_constraint(c, q, q)
    np.testing.assert_array_almost_equal(result, q)


def test_inside_target_passes_through():
    c = _single_cone()
    q = quat_from_axis_angle(vec3(1, 0, 0), 0.3)
    np.testing.assert_array_almost_equal(apply_constraint(c, quat_identity(), q), q)


def test_outside_target_projected_to_boundary():
    c = _single_cone(radius=0.5)
    q = quat_from_axis_angle(vec3(1, 0, 0), 1.5)
    result = apply_constraint(c, quat_identity(), q)
    assert orientation_allowed(c, result)
    assert quat_angle(result, q) > 0.9
    # Lands on the boundary, on the geodesic toward the target
    assert quat_angle(quat_identity(), result) == pytest.approx(0.5, abs=1e-6)
    assert quat_angle(result, q) == pytest.approx(1.0, abs=1e-6)


def test_nearest_cone_wins():
    cones = [
        create_cone(quat_identity(), 0.2),
        create_cone(quat_from_axis_angle(vec3(0, 0, 1), 1.5), 0.2),
    ]
    c = create_constraint("shoulder", cones)
    q = quat_from_axis_angle(vec3(0, 0, 1), 1.1)
    result = apply_constraint(c, quat_identity(), q)
    assert quat_angle(result, cones[1].center) == pytest.approx(0.2, abs=1e-6)


def test_tangent_passage_allows_path_between_cones():
    far = quat_from_axis_angle(vec3(0, 0, 1), 1.2)
    blocked = create_constraint("wrist", [
        create_cone(quat_identity(), 0.2),
        create_cone(far, 0.2),
    ])
    linked = create_constraint("wrist", [
        create_cone(quat_identity(), 0.2, tangent_radius=0.25),
        create_cone(far, 0.2),
    ])
    midway = quat_from_axis_angle(vec3(0, 0, 1), 0.6)
    assert not orientation_allowed(blocked, midway)
    assert orientation_allowed(linked, midway)


def test_no_cones_keeps_current():
    c = create_constraint("free", [])
    current = quat_from_axis_angle(vec3(0, 1, 0), 0.1)
    result = apply_constraint(c, current, quat_from_axis_angle(vec3(1, 0, 0), 2.0))
    np.testing.assert_array_equal(result, current)


def test_bad_target_keeps_current():
    c = _single_cone()
    current = quat_identity()
    assert apply_constraint(c, current, [np.nan, 0, 0, 1]) is current
    assert apply_constraint(c, current, "not a quaternion") is current


def test_validate_constraints_reports_violations():
    c = _single_cone(radius=0.5)
    pose = {"elbow": quat_from_axis_angle(vec3(1, 0, 0), 1.0)}
    violations = validate_constraints([c], pose)
    assert len(violations) == 1
    assert violations[0].joint_id == "elbow"


def test_validate_constraints_missing_joint_is_ok():
    c = _single_cone()
    assert validate_constraints([c], {"knee": quat_identity()}) == []


def test_set_twist_limits():
    c = set_twist_limits(_single_cone(), -30, 45)
    assert c.twist_limits == (-30.0, 45.0)
    with pytest.raises(ValueError):
        set_twist_limits(c, 10, -10)


def test_twist_angle_about_bone_axis():
    c = _single_cone()
    q = quat_from_axis_angle(vec3(0, 1, 0), np.radians(40))
    assert twist_angle(c, q) == pytest.approx(40.0)


def test_full_range_twist_always_allowed():
    c = _single_cone()
    assert check_twist_limits(c, quat_from_axis_angle(vec3(0, 1, 0), 3.0))


def test_clamp_twist_keeps_swing():
    c = set_twist_limits(_single_cone(), -20, 20)
    swing = quat_from_axis_angle(vec3(1, 0, 0), 0.3)
    q = quat_multiply(swing, quat_from_axis_angle(vec3(0, 1, 0), np.radians(60)))
    assert not check_twist_limits(c, q)
    clamped = clamp_twist(c, q)
    assert twist_angle(c, clamped) == pytest.approx(20.0)
    expected = quat_multiply(swing, quat_from_axis_angle(vec3(0, 1, 0), np.radians(20)))
    assert quat_angle(clamped, expected) < 1e-9


def test_zero_radius_cone_accepts_its_center():
    center = quat_from_axis_angle(vec3(0.3, 0.7, 0.2), 1.234)
    c = create_constraint("finger", [create_cone(center, -0.5)])
    assert orientation_allowed(c, c.cones[0].center)
    result = apply_constraint(c, quat_identity(), c.cones[0].center)
    np.testing.assert_array_equal(result, c.cones[0].center)


def test_narrow_passage_center_line_is_allowed():
    far = quat_from_axis_angle(vec3(1, 0, 0), np.pi / 2)
    c = create_constraint("wrist", [
        create_cone(quat_identity(), 0.02, tangent_radius=0.02),
        create_cone(far, 0.02),
    ])
    # Between two of the sampled passage points
    on_line = quat_from_axis_angle(vec3(1, 0, 0), np.pi / 2 * 16.5 / 32)
    assert orientation_allowed(c, on_line)
    np.testing.assert_array_equal(apply_constraint(c, quat_identity(), on_line), on_line)


def test_projection_into_narrow_passage_is_allowed():
    far = quat_from_axis_angle(vec3(1, 0, 0), np.pi / 2)
    c = create_constraint("wrist", [
        create_cone(quat_identity(), 0.02, tangent_radius=0.02),
        create_cone(far, 0.02),
    ])
    off_line = quat_multiply(quat_from_axis_angle(vec3(1, 0, 0), 0.8),
                             quat_from_axis_angle(vec3(0, 0, 1), 0.3))
    result = apply_constraint(c, quat_identity(), off_line)
    assert orientation_allowed(c, result)
    assert quat_angle(result, off_line) < 0.3


def test_cone_sequence_links_its_cones():
    far = quat_from_axis_angle(vec3(0, 0, 1), 1.2)
    other = quat_from_axis_angle(vec3(1, 0, 0), 1.0)
    sequence = create_cone_sequence(
        [create_cone(quat_identity(), 0.2), create_cone(far, 0.2)], tangent_radius=0.25,
    )
    c = create_constraint("wrist", [sequence, create_cone(other, 0.1)])
    assert len(c.cones) == 3
    assert c.cones[0].tangent_radius == 0.25
    # The last cone of a group does not link onward
    assert c.cones[1].tangent_radius is None
    assert orientation_allowed(c, quat_from_axis_angle(vec3(0, 0, 1), 0.6))


def test_nested_cone_sequences_flatten_in_order():
    a, b, d = (create_cone(quat_from_axis_angle(vec3(0, 1, 0), x), 0.1) for x in (0.0, 1.0, 2.0))
    c = create_constraint("spine", [create_cone_sequence([create_cone_sequence([a, b]), d])])
    assert c.cones == (a, b, d)


def test_constrain_orientation_keeps_twist_inside_cone():
    c = set_twist_limits(create_constraint("root", [create_cone(quat_identity(), 0.6)]), 20, 40)
    proposed = quat_from_axis_angle(vec3(1, 0, 0), 0.5)
    result = constrain_orientation(c, quat_identity(), proposed)
    assert validate_constraints([c], {"root": result}) == []
    assert quat_angle(quat_identity(), result) <= 0.6 + 1e-9
    assert check_twist_limits(c, result)
    assert twist_angle(c, result) == pytest.approx(20.0, abs=1e-6)


def test_constrain_orientation_incompatible_limits_favour_cone():
    c = set_twist_limits(create_constraint("root", [create_cone(quat_identity(), 0.1)]), 30, 40)
    result = constrain_orientation(c, quat_identity(), quat_from_axis_angle(vec3(1, 0, 0), 0.5))
    assert validate_constraints([c], {"root": result}) == []


def test_constrain_orientation_passes_allowed_through():
    c = set_twist_limits(_single_cone(), -30, 30)
    q = quat_from_axis_angle(vec3(1, 0, 0), 0.2)
    np.testing.assert_array_almost_equal(constrain_orientation(c, quat_identity(), q), q)
