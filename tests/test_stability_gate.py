import math

import numpy as np

from posefusion.control.pose import SOURCE_VISUAL, Pose
from posefusion.control.stability import StabilityGate
from posefusion.math3d.quaternion import axis_angle_to_q


def _pose(x=0.0, yaw_deg=0.0) -> Pose:
    return Pose(
        position=np.array([x, 0.0, 0.0], dtype=np.float64),
        quaternion=axis_angle_to_q(np.array([0.0, 0.0, 1.0]), math.radians(yaw_deg)),
        source=SOURCE_VISUAL,
    )


def test_first_pose_is_always_accepted():
    gate = StabilityGate()
    assert gate.accept(_pose(x=100.0, yaw_deg=170.0))
    assert gate.last_accepted is not None


def test_rejects_translation_jump():
    gate = StabilityGate()
    assert gate.accept(_pose(x=0.0))
    assert not gate.accept(_pose(x=0.6))
    assert gate.accept(_pose(x=0.4))


def test_rejects_rotation_jump():
    gate = StabilityGate()
    assert gate.accept(_pose(yaw_deg=0.0))
    assert not gate.accept(_pose(yaw_deg=50.0))
    assert gate.accept(_pose(yaw_deg=40.0))


def test_rejection_does_not_move_reference():
    gate = StabilityGate()
    gate.accept(_pose(x=0.0))
    gate.accept(_pose(x=5.0))
    np.testing.assert_allclose(gate.last_accepted.position, np.zeros(3))
    assert gate.consecutive_rejections == 1


def test_reseeds_after_consecutive_rejections():
    gate = StabilityGate(max_consecutive_rejections=3)
    gate.accept(_pose(x=0.0))
    for _ in range(3):
        assert not gate.accept(_pose(x=5.0))
    assert gate.accept(_pose(x=5.0))
    assert gate.consecutive_rejections == 0
    np.testing.assert_allclose(gate.last_accepted.position, np.array([5.0, 0.0, 0.0]))


def test_reset_clears_reference():
    gate = StabilityGate()
    gate.accept(_pose(x=0.0))
    gate.reset()
    assert gate.last_accepted is None
    assert gate.accept(_pose(x=10.0))
