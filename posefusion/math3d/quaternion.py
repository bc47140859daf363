"""Quaternion utilities for right-handed coordinates.

All quaternions are numpy arrays ordered [w, x, y, z].
"""

from __future__ import annotations

import math

import numpy as np


def q_identity() -> np.ndarray:
    return np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64)


def q_normalize(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    n = float(np.linalg.norm(q))
    if n < 1e-12:
        return q_identity()
    return q / n


def q_angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Relative rotation angle in radians: 2*acos(|dot(a, b)|)."""
    d = abs(float(np.dot(q_normalize(a), q_normalize(b))))
    return 2.0 * math.acos(min(1.0, d))


def axis_angle_to_q(axis: np.ndarray, angle_rad: float) -> np.ndarray:
    axis = np.asarray(axis, dtype=np.float64)
    axis = axis / (np.linalg.norm(axis) + 1e-12)
    s = math.sin(angle_rad / 2.0)
    return q_normalize(
        np.array(
            [math.cos(angle_rad / 2.0), axis[0] * s, axis[1] * s, axis[2] * s],
            dtype=np.float64,
        )
    )


def euler_xyz_to_q(x_rad: float, y_rad: float, z_rad: float) -> np.ndarray:
    """Intrinsic XYZ Euler angles (radians) to quaternion."""
    c1, s1 = math.cos(x_rad / 2.0), math.sin(x_rad / 2.0)
    c2, s2 = math.cos(y_rad / 2.0), math.sin(y_rad / 2.0)
    c3, s3 = math.cos(z_rad / 2.0), math.sin(z_rad / 2.0)
    return q_normalize(
        np.array(
            [
                c1 * c2 * c3 - s1 * s2 * s3,
                s1 * c2 * c3 + c1 * s2 * s3,
                c1 * s2 * c3 - s1 * c2 * s3,
                c1 * c2 * s3 + s1 * s2 * c3,
            ],
            dtype=np.float64,
        )
    )


def q_to_rotmat(q: np.ndarray) -> np.ndarray:
    w, x, y, z = q_normalize(q)
    return np.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
            [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
            [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def rotmat_to_euler_xyz(R: np.ndarray) -> np.ndarray:
    """Decompose a 3x3 rotation matrix into intrinsic XYZ Euler angles (radians)."""
    R = np.asarray(R, dtype=np.float64)
    m13 = float(np.clip(R[0, 2], -1.0, 1.0))
    y = math.asin(m13)
    if abs(m13) < 0.9999999:
        x = math.atan2(-R[1, 2], R[2, 2])
        z = math.atan2(-R[0, 1], R[0, 0])
    else:
        # Gimbal lock: roll folded into x.
        x = math.atan2(R[2, 1], R[1, 1])
        z = 0.0
    return np.array([x, y, z], dtype=np.float64)


def q_to_euler_xyz(q: np.ndarray) -> np.ndarray:
    return rotmat_to_euler_xyz(q_to_rotmat(q))


def rotmat_to_q(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to unit quaternion [w, x, y, z]."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Expected 3x3 rotation matrix, got {R.shape}")

    trace = float(R[0, 0] + R[1, 1] + R[2, 2])
    if trace > 0.0:
        s = math.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (R[2, 1] - R[1, 2]) / s
        qy = (R[0, 2] - R[2, 0]) / s
        qz = (R[1, 0] - R[0, 1]) / s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = math.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2]) * 2.0
        qw = (R[2, 1] - R[1, 2]) / s
        qx = 0.25 * s
        qy = (R[0, 1] + R[1, 0]) / s
        qz = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = math.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2]) * 2.0
        qw = (R[0, 2] - R[2, 0]) / s
        qx = (R[0, 1] + R[1, 0]) / s
        qy = 0.25 * s
        qz = (R[1, 2] + R[2, 1]) / s
    else:
        s = math.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1]) * 2.0
        qw = (R[1, 0] - R[0, 1]) / s
        qx = (R[0, 2] + R[2, 0]) / s
        qy = (R[1, 2] + R[2, 1]) / s
        qz = 0.25 * s

    return q_normalize(np.array([qw, qx, qy, qz], dtype=np.float64))
