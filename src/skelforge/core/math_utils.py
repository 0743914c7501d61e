"""NumPy-backed math utilities: Vec3, Quaternion, Mat4 operations.

Vectors are plain numpy arrays; quaternions are [x, y, z, w] arrays.
Matrices are 4x4 numpy arrays applied to column vectors (``M @ p``).
"""

import numpy as np
from numpy.typing import NDArray

# Type aliases
Vec3 = NDArray[np.float64]
Mat3 = NDArray[np.float64]
Mat4 = NDArray[np.float64]
Quat = NDArray[np.float64]  # [x, y, z, w]

EPSILON = 1e-10


def vec3(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> Vec3:
    return np.array([x, y, z], dtype=np.float64)


def as_vec3(v) -> Vec3:
    return np.asarray(v, dtype=np.float64).reshape(3)


def as_quat(q) -> Quat:
    return np.asarray(q, dtype=np.float64).reshape(4)


def mat4_identity() -> Mat4:
    return np.eye(4, dtype=np.float64)


def mat4_translation(x: float, y: float, z: float) -> Mat4:
    m = np.eye(4, dtype=np.float64)
    m[0, 3] = x
    m[1, 3] = y
    m[2, 3] = z
    return m


def mat3_from_quaternion(q: Quat) -> Mat3:
    """Convert quaternion [x,y,z,w] to a 3x3 rotation matrix."""
    x, y, z, w = q
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ], dtype=np.float64)


def mat4_from_quaternion(q: Quat) -> Mat4:
    """Convert quaternion [x,y,z,w] to 4x4 rotation matrix."""
    m = np.eye(4, dtype=np.float64)
    m[:3, :3] = mat3_from_quaternion(q)
    return m


def quat_from_mat3(r: Mat3) -> Quat:
    """Convert a 3x3 rotation matrix to a unit quaternion [x, y, z, w].

    Uses Shepperd's method, branching on the largest diagonal term.
    """
    trace = r[0, 0] + r[1, 1] + r[2, 2]
    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        q = np.array([
            (r[2, 1] - r[1, 2]) * s,
            (r[0, 2] - r[2, 0]) * s,
            (r[1, 0] - r[0, 1]) * s,
            0.25 / s,
        ])
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        s = 2.0 * np.sqrt(1.0 + r[0, 0] - r[1, 1] - r[2, 2])
        q = np.array([
            0.25 * s,
            (r[0, 1] + r[1, 0]) / s,
            (r[0, 2] + r[2, 0]) / s,
            (r[2, 1] - r[1, 2]) / s,
        ])
    elif r[1, 1] > r[2, 2]:
        s = 2.0 * np.sqrt(1.0 + r[1, 1] - r[0, 0] - r[2, 2])
        q = np.array([
            (r[0, 1] + r[1, 0]) / s,
            0.25 * s,
            (r[1, 2] + r[2, 1]) / s,
            (r[0, 2] - r[2, 0]) / s,
        ])
    else:
        s = 2.0 * np.sqrt(1.0 + r[2, 2] - r[0, 0] - r[1, 1])
        q = np.array([
            (r[0, 2] + r[2, 0]) / s,
            (r[1, 2] + r[2, 1]) / s,
            0.25 * s,
            (r[1, 0] - r[0, 1]) / s,
        ])
    return quat_normalize(q.astype(np.float64))


def mat4_compose(position: Vec3, quaternion: Quat, scale: Vec3) -> Mat4:
    """Compose TRS matrix from position, quaternion rotation, and scale."""
    m = mat4_from_quaternion(quaternion)
    m[:3, 0] *= scale[0]
    m[:3, 1] *= scale[1]
    m[:3, 2] *= scale[2]
    m[0, 3] = position[0]
    m[1, 3] = position[1]
    m[2, 3] = position[2]
    return m


def mat4_decompose(m: Mat4) -> tuple[Vec3, Quat, Vec3]:
    """Split a TRS matrix into (position, quaternion, scale).

    A negative determinant is folded into the X scale so the rotation
    stays proper.
    """
    position = m[:3, 3].astype(np.float64).copy()
    basis = m[:3, :3].astype(np.float64)
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0:
        scale[0] = -scale[0]
    safe = np.where(np.abs(scale) < EPSILON, 1.0, scale)
    rotation = basis / safe
    return position, quat_from_mat3(rotation), scale


def mat4_orthogonalize(m: Mat4) -> Mat4:
    """Strip scale from a transform: unit basis vectors, translation kept."""
    result = m.astype(np.float64).copy()
    for col in range(3):
        n = np.linalg.norm(result[:3, col])
        if n > EPSILON:
            result[:3, col] /= n
    return result


def mat4_inverse(m: Mat4) -> Mat4:
    return np.linalg.inv(m)


def is_finite_matrix(m, max_magnitude: float) -> bool:
    """True for a 4x4 array of finite values all below ``max_magnitude``."""
    arr = np.asarray(m)
    if arr.shape != (4, 4):
        return False
    if not np.issubdtype(arr.dtype, np.number):
        return False
    if not np.all(np.isfinite(arr)):
        return False
    return bool(np.all(np.abs(arr) < max_magnitude))


# Quaternion operations

def quat_identity() -> Quat:
    return np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float64)


def quat_from_axis_angle(axis: Vec3, angle: float) -> Quat:
    """Create quaternion from axis-angle."""
    half = angle / 2
    s = np.sin(half)
    a = normalize(as_vec3(axis))
    return np.array([a[0] * s, a[1] * s, a[2] * s, np.cos(half)], dtype=np.float64)


def quat_multiply(a: Quat, b: Quat) -> Quat:
    """Multiply two quaternions (a * b)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ], dtype=np.float64)


def quat_conjugate(q: Quat) -> Quat:
    return np.array([-q[0], -q[1], -q[2], q[3]], dtype=np.float64)


def quat_normalize(q: Quat) -> Quat:
    n = np.linalg.norm(q)
    if n < EPSILON:
        return quat_identity()
    return q / n


def quat_to_axis_angle(q: Quat) -> tuple[Vec3, float]:
    """Return (unit axis, angle in [0, pi]) for a rotation quaternion."""
    q = quat_normalize(q)
    if q[3] < 0:
        q = -q
    s = np.linalg.norm(q[:3])
    if s < EPSILON:
        return vec3(1, 0, 0), 0.0
    return q[:3] / s, float(2.0 * np.arctan2(s, q[3]))


def quat_angle(a: Quat, b: Quat) -> float:
    """Geodesic angle in radians between two orientations (0..pi).

    ``q`` and ``-q`` describe the same orientation, so the result is the
    shortest rotation taking ``a`` to ``b``.  Uses atan2 rather than acos
    so small angles keep full precision.
    """
    rel = quat_multiply(quat_conjugate(quat_normalize(a)), quat_normalize(b))
    return float(2.0 * np.arctan2(np.linalg.norm(rel[:3]), abs(rel[3])))


def quat_rotate_towards(a: Quat, b: Quat, max_angle: float) -> Quat:
    """Orientation on the geodesic from ``a`` to ``b``, at most ``max_angle`` from ``a``.

    Exact for small angles: the distance of the result from ``a`` is
    ``min(max_angle, quat_angle(a, b))``.
    """
    a = quat_normalize(a)
    rel = quat_multiply(quat_conjugate(a), quat_normalize(b))
    axis, angle = quat_to_axis_angle(rel)
    step = clamp(max_angle, 0.0, angle)
    return quat_normalize(quat_multiply(a, quat_from_axis_angle(axis, step)))


def quat_from_two_vectors(u: Vec3, v: Vec3) -> Quat:
    """Shortest-arc rotation taking direction ``u`` onto direction ``v``."""
    a = normalize(as_vec3(u))
    b = normalize(as_vec3(v))
    if not a.any() or not b.any():
        return quat_identity()
    d = float(np.dot(a, b))
    if d < -1.0 + 1e-9:
        # Opposite directions: rotate pi about any perpendicular axis
        axis = np.cross(a, vec3(1, 0, 0))
        if np.linalg.norm(axis) < 1e-6:
            axis = np.cross(a, vec3(0, 1, 0))
        return quat_from_axis_angle(axis, np.pi)
    c = np.cross(a, b)
    return quat_normalize(np.array([c[0], c[1], c[2], 1.0 + d], dtype=np.float64))


def quat_swing_twist(q: Quat, axis: Vec3) -> tuple[Quat, Quat]:
    """Decompose ``q`` into (swing, twist) with ``q = swing * twist``.

    The twist is the rotation component about ``axis``.
    """
    a = normalize(as_vec3(axis))
    proj = np.dot(q[:3], a) * a
    twist = np.array([proj[0], proj[1], proj[2], q[3]], dtype=np.float64)
    if np.linalg.norm(twist) < EPSILON:
        twist = quat_identity()
    else:
        twist = quat_normalize(twist)
    swing = quat_multiply(q, quat_conjugate(twist))
    return swing, twist


def quat_average(quats, weights=None) -> Quat:
    """Weighted average of unit quaternions (Markley's eigenvector method).

    The result is sign-aligned with the first input quaternion.
    """
    q = np.asarray(quats, dtype=np.float64).reshape(-1, 4)
    if len(q) == 0:
        return quat_identity()
    w = np.ones(len(q)) if weights is None else np.asarray(weights, dtype=np.float64)
    m = (q * w[:, None]).T @ q
    try:
        _, vecs = np.linalg.eigh(m)
    except np.linalg.LinAlgError:
        return quat_normalize(q[0].copy())
    avg = vecs[:, -1]
    if np.dot(avg, q[0]) < 0:
        avg = -avg
    return quat_normalize(avg)


def best_fit_rotation(sources, targets, weights=None) -> Quat:
    """Solve Wahba's problem: rotation R minimising sum w_i |R s_i - t_i|^2.

    ``sources`` and ``targets`` are (N, 3) arrays of corresponding vectors
    expressed about a common pivot.  Weighted Kabsch via SVD with a
    reflection guard.  Degenerate input yields the identity.
    """
    s = np.asarray(sources, dtype=np.float64).reshape(-1, 3)
    t = np.asarray(targets, dtype=np.float64).reshape(-1, 3)
    w = np.ones(len(s)) if weights is None else np.asarray(weights, dtype=np.float64)

    h = (s * w[:, None]).T @ t
    if not np.all(np.isfinite(h)) or np.abs(h).max(initial=0.0) < EPSILON:
        return quat_identity()
    try:
        u, _, vt = np.linalg.svd(h)
    except np.linalg.LinAlgError:
        return quat_identity()
    d = np.sign(np.linalg.det(vt.T @ u.T)) or 1.0
    r = vt.T @ np.diag([1.0, 1.0, d]) @ u.T
    return quat_from_mat3(r)


# Vector operations

def normalize(v: Vec3) -> Vec3:
    n = np.linalg.norm(v)
    if n < EPSILON:
        return np.zeros_like(v)
    return v / n


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def deg_to_rad(degrees: float) -> float:
    return degrees * np.pi / 180.0


def rad_to_deg(radians: float) -> float:
    return radians * 180.0 / np.pi


def transform_point(m: Mat4, p: Vec3) -> Vec3:
    """Transform a point by a 4x4 matrix."""
    v = np.array([p[0], p[1], p[2], 1.0], dtype=np.float64)
    r = m @ v
    return r[:3]
