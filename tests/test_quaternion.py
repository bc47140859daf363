import math

import numpy as np

from posefusion.math3d.quaternion import (
    axis_angle_to_q,
    euler_xyz_to_q,
    q_angle_between,
    q_normalize,
    q_to_euler_xyz,
    q_to_rotmat,
    rotmat_to_q,
)


def test_q_normalize_zero_returns_identity():
    q = q_normalize(np.zeros(4, dtype=np.float64))
    np.testing.assert_allclose(q, np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64))


def test_rotmat_identity_to_quaternion():
    q = rotmat_to_q(np.eye(3, dtype=np.float64))
    np.testing.assert_allclose(q, np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64), atol=1e-8)


def test_rotmat_roundtrip_for_axis_angle():
    q = axis_angle_to_q(np.array([0.3, -0.5, 0.8]), 1.1)
    q2 = rotmat_to_q(q_to_rotmat(q))
    if np.dot(q, q2) < 0.0:
        q2 = -q2
    np.testing.assert_allclose(q2, q, atol=1e-9)


def test_euler_xyz_single_axis_matches_axis_angle():
    q = euler_xyz_to_q(0.0, 0.0, math.radians(90.0))
    expected = axis_angle_to_q(np.array([0.0, 0.0, 1.0]), math.radians(90.0))
    np.testing.assert_allclose(q, expected, atol=1e-12)


def test_euler_xyz_decomposition_recovers_angles():
    angles = np.array([0.2, -0.4, 1.3], dtype=np.float64)
    q = euler_xyz_to_q(*angles)
    np.testing.assert_allclose(q_to_euler_xyz(q), angles, atol=1e-9)


def test_angle_between_ignores_quaternion_sign():
    q = axis_angle_to_q(np.array([0.0, 1.0, 0.0]), math.radians(30.0))
    assert abs(q_angle_between(q, -q)) < 1e-6
    identity = np.array([1.0, 0.0, 0.0, 0.0])
    assert abs(math.degrees(q_angle_between(identity, q)) - 30.0) < 1e-6
