"""Tests for math_utils module."""

import numpy as np
import pytest

from skelforge.core.math_utils import (
    vec3, mat4_identity, mat4_translation,
    mat4_from_quaternion, mat4_compose, mat4_decompose, mat4_inverse,
    mat4_orthogonalize, is_finite_matrix,
    quat_identity, quat_from_axis_angle, quat_from_mat3, mat3_from_quaternion,
    quat_multiply, quat_conjugate, quat_normalize,
    quat_to_axis_angle, quat_angle, quat_rotate_towards,
    quat_from_two_vectors, quat_swing_twist, quat_average, best_fit_rotation,
    normalize, lerp, clamp, deg_to_rad, rad_to_deg,
    transform_point,
)


def _rotate(q, v):
    return mat3_from_quaternion(q) @ v


def test_vec3():
    v = vec3(1, 2, 3)
    assert v.shape == (3,)
    np.testing.assert_array_equal(v, [1, 2, 3])


def test_mat4_identity():
    m = mat4_identity()
    np.testing.assert_array_equal(m, np.eye(4))


def test_mat4_translation():
    m = mat4_translation(1, 2, 3)
    p = transform_point(m, vec3(0, 0, 0))
    np.testing.assert_array_almost_equal(p, [1, 2, 3])


def test_quat_identity():
    q = quat_identity()
    np.testing.assert_array_equal(q, [0, 0, 0, 1])


def test_quat_from_axis_angle():
    q = quat_from_axis_angle(vec3(0, 1, 0), np.pi / 2)
    v = _rotate(q, vec3(0, 0, 1))
    np.testing.assert_array_almost_equal(v, [1, 0, 0], decimal=10)


def test_quat_multiply_identity():
    q = quat_from_axis_angle(vec3(1, 0, 0), 0.5)
    result = quat_multiply(q, quat_identity())
    np.testing.assert_array_almost_equal(result, q)


def test_quat_conjugate_inverts_rotation():
    q = quat_from_axis_angle(vec3(0.3, 1, 0.2), 1.1)
    result = quat_multiply(q, quat_conjugate(q))
    np.testing.assert_array_almost_equal(result, quat_identity())


def test_mat4_from_quaternion_quarter_turn():
    m = mat4_from_quaternion(quat_from_axis_angle(vec3(0, 0, 1), np.pi / 2))
    np.testing.assert_array_almost_equal(transform_point(m, vec3(1, 0, 0)), [0, 1, 0], decimal=10)


@pytest.mark.parametrize("angle", [0.0, 0.5, np.pi / 2, 3.0])
def test_quat_from_mat3_roundtrip(angle):
    q = quat_from_axis_angle(vec3(1, 2, 3), angle)
    back = quat_from_mat3(mat3_from_quaternion(q))
    # q and -q are the same rotation
    assert quat_angle(q, back) < 1e-9


def test_mat4_compose():
    pos = vec3(1, 2, 3)
    q = quat_identity()
    scale = vec3(2, 2, 2)
    m = mat4_compose(pos, q, scale)
    p = transform_point(m, vec3(1, 0, 0))
    np.testing.assert_array_almost_equal(p, [3, 2, 3])


def test_mat4_compose_scales_before_rotating():
    q = quat_from_axis_angle(vec3(0, 0, 1), np.pi / 2)
    m = mat4_compose(vec3(0, 0, 0), q, vec3(2, 1, 1))
    # x is stretched first, then rotated onto y
    np.testing.assert_array_almost_equal(transform_point(m, vec3(1, 0, 0)), [0, 2, 0])


def test_mat4_decompose_roundtrip():
    pos = vec3(1, -2, 3)
    q = quat_from_axis_angle(vec3(0, 1, 1), 0.7)
    scale = vec3(1.5, 2.0, 0.5)
    p2, q2, s2 = mat4_decompose(mat4_compose(pos, q, scale))
    np.testing.assert_array_almost_equal(p2, pos)
    np.testing.assert_array_almost_equal(s2, scale)
    assert quat_angle(q, q2) < 1e-9


def test_mat4_decompose_folds_reflection_into_x():
    _, q, s = mat4_decompose(np.diag([-1.0, 1.0, 1.0, 1.0]))
    np.testing.assert_array_almost_equal(s, [-1, 1, 1])
    assert quat_angle(q, quat_identity()) < 1e-9


def test_mat4_orthogonalize_strips_scale():
    m = mat4_compose(vec3(4, 5, 6), quat_identity(), vec3(3, 3, 3))
    o = mat4_orthogonalize(m)
    np.testing.assert_array_almost_equal(o[:3, :3], np.eye(3))
    np.testing.assert_array_almost_equal(o[:3, 3], [4, 5, 6])


def test_mat4_inverse():
    m = mat4_translation(5, 10, 15)
    mi = mat4_inverse(m)
    result = m @ mi
    np.testing.assert_array_almost_equal(result, np.eye(4), decimal=10)


def test_is_finite_matrix():
    assert is_finite_matrix(np.eye(4), 1e12)
    bad = np.eye(4)
    bad[0, 3] = np.nan
    assert not is_finite_matrix(bad, 1e12)
    assert not is_finite_matrix(np.eye(3), 1e12)
    assert not is_finite_matrix(mat4_translation(1e13, 0, 0), 1e12)


def test_quat_to_axis_angle():
    axis, angle = quat_to_axis_angle(quat_from_axis_angle(vec3(0, 0, 2), 1.2))
    np.testing.assert_array_almost_equal(axis, [0, 0, 1])
    assert angle == pytest.approx(1.2)


def test_quat_angle_ignores_sign():
    q = quat_from_axis_angle(vec3(1, 0, 0), 0.4)
    assert quat_angle(q, -q) == pytest.approx(0.0, abs=1e-12)
    assert quat_angle(quat_identity(), q) == pytest.approx(0.4)


def test_quat_angle_small_angle_precision():
    q = quat_from_axis_angle(vec3(0, 1, 0), 1e-7)
    assert quat_angle(quat_identity(), q) == pytest.approx(1e-7, rel=1e-6)


def test_quat_rotate_towards_is_exact():
    a = quat_identity()
    b = quat_from_axis_angle(vec3(0, 1, 0), 1.0)
    step = quat_rotate_towards(a, b, 0.25)
    assert quat_angle(a, step) == pytest.approx(0.25)
    assert quat_angle(step, b) == pytest.approx(0.75)
    # Never overshoots
    assert quat_angle(quat_rotate_towards(a, b, 5.0), b) < 1e-8


def test_quat_from_two_vectors():
    q = quat_from_two_vectors(vec3(1, 0, 0), vec3(0, 1, 0))
    np.testing.assert_array_almost_equal(_rotate(q, vec3(1, 0, 0)), [0, 1, 0])


def test_quat_from_two_vectors_opposite():
    q = quat_from_two_vectors(vec3(0, 0, 1), vec3(0, 0, -1))
    np.testing.assert_array_almost_equal(_rotate(q, vec3(0, 0, 1)), [0, 0, -1])


def test_quat_swing_twist_recomposes():
    q = quat_multiply(
        quat_from_axis_angle(vec3(1, 0, 0), 0.6),
        quat_from_axis_angle(vec3(0, 1, 0), 0.9),
    )
    swing, twist = quat_swing_twist(q, vec3(0, 1, 0))
    np.testing.assert_array_almost_equal(quat_multiply(swing, twist), q)
    # Twist is purely about the axis
    assert abs(twist[0]) < 1e-12 and abs(twist[2]) < 1e-12


def test_quat_average_of_equal_weights():
    a = quat_identity()
    b = quat_from_axis_angle(vec3(0, 0, 1), 1.0)
    avg = quat_average([a, b], [1.0, 1.0])
    assert quat_angle(avg, quat_from_axis_angle(vec3(0, 0, 1), 0.5)) < 1e-6


def test_quat_average_respects_sign_flip():
    q = quat_from_axis_angle(vec3(1, 0, 0), 0.3)
    avg = quat_average([q, -q])
    assert quat_angle(avg, q) < 1e-9


def test_best_fit_rotation_recovers_rotation():
    rng = np.random.default_rng(7)
    sources = rng.normal(size=(6, 3))
    q = quat_from_axis_angle(vec3(1, 1, 0), 0.8)
    targets = np.array([_rotate(q, s) for s in sources])
    fit = best_fit_rotation(sources, targets)
    assert quat_angle(fit, q) < 1e-8


def test_best_fit_rotation_never_reflects():
    sources = np.eye(3)
    targets = np.diag([1.0, 1.0, -1.0])
    fit = best_fit_rotation(sources, targets)
    r = mat3_from_quaternion(fit)
    assert np.linalg.det(r) == pytest.approx(1.0)


def test_best_fit_rotation_degenerate_is_identity():
    fit = best_fit_rotation(np.zeros((3, 3)), np.zeros((3, 3)))
    np.testing.assert_array_equal(fit, quat_identity())


def test_normalize():
    v = normalize(vec3(3, 0, 0))
    np.testing.assert_array_almost_equal(v, [1, 0, 0])


def test_normalize_zero():
    v = normalize(vec3(0, 0, 0))
    np.testing.assert_array_equal(v, [0, 0, 0])


def test_lerp():
    assert lerp(0, 10, 0.5) == 5
    assert lerp(0, 10, 0.0) == 0
    assert lerp(0, 10, 1.0) == 10


def test_clamp():
    assert clamp(5, 0, 10) == 5
    assert clamp(-1, 0, 10) == 0
    assert clamp(15, 0, 10) == 10


def test_deg_rad_roundtrip():
    assert abs(rad_to_deg(deg_to_rad(45.0)) - 45.0) < 1e-10
