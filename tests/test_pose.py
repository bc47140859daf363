import math

import numpy as np

from posefusion.control.pose import SOURCE_MARKER, make_pose


def test_make_pose_normalizes_quaternion():
    pose = make_pose([1.0, 2.0, 3.0], [2.0, 0.0, 0.0, 0.0], SOURCE_MARKER)
    assert pose is not None
    np.testing.assert_allclose(pose.quaternion, np.array([1.0, 0.0, 0.0, 0.0]))
    assert pose.source == SOURCE_MARKER


def test_make_pose_rejects_non_finite_and_bad_shapes():
    assert make_pose([math.nan, 0.0, 0.0], [1.0, 0.0, 0.0, 0.0], SOURCE_MARKER) is None
    assert make_pose([0.0, 0.0], [1.0, 0.0, 0.0, 0.0], SOURCE_MARKER) is None
    assert make_pose([0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0], SOURCE_MARKER) is None


def test_pose_euler_is_derived_from_quaternion():
    half = math.radians(45.0)
    pose = make_pose(
        [0.0, 0.0, 0.0], [math.cos(half), 0.0, 0.0, math.sin(half)], SOURCE_MARKER
    )
    np.testing.assert_allclose(pose.euler, np.array([0.0, 0.0, math.radians(90.0)]), atol=1e-9)


def test_pose_copy_is_independent():
    pose = make_pose([1.0, 2.0, 3.0], [1.0, 0.0, 0.0, 0.0], SOURCE_MARKER)
    dup = pose.copy()
    dup.position[0] = 9.0
    assert pose.position[0] == 1.0
