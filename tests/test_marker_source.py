import asyncio
import logging
import math

import numpy as np
import pytest

from posefusion.control.pose import SOURCE_MARKER
from posefusion.errors import InitializationError
from posefusion.sources.frame_source import FrameSource
from posefusion.sources.marker import (
    MarkerDetector,
    MarkerPoseSource,
    decompose_marker_transform,
    marker_sample_to_pose,
)


def _rot_z(deg: float) -> np.ndarray:
    a = math.radians(deg)
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _transform(x=0.0, y=0.0, z=0.0, rot=None) -> np.ndarray:
    T = np.eye(4, dtype=np.float64)
    if rot is not None:
        T[:3, :3] = rot
    T[:3, 3] = [x, y, z]
    return T


class _Frames(FrameSource):
    def dimensions(self):
        return 64, 48

    def read(self):
        return np.zeros((48, 64, 3), dtype=np.uint8)


class _ScriptedDetector(MarkerDetector):
    def __init__(self, script):
        super().__init__()
        self.script = list(script)
        self.initialized = False
        self.disposed = False

    def initialize(self):
        self.initialized = True

    def update(self, frame):
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        self.pose_matrix = item
        self._set_visible(item is not None)

    def dispose(self):
        super().dispose()
        self.disposed = True


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_decompose_removes_scale():
    T = _transform(0.5, -1.0, 2.0, _rot_z(30.0) * 2.0)
    sample = decompose_marker_transform(T)
    np.testing.assert_allclose(sample.position, np.array([0.5, -1.0, 2.0]))
    np.testing.assert_allclose(sample.euler_xyz, np.array([0.0, 0.0, math.radians(30.0)]), atol=1e-9)

    pose = marker_sample_to_pose(sample)
    half = math.radians(30.0) * 0.5
    np.testing.assert_allclose(
        pose.quaternion, np.array([math.cos(half), 0.0, 0.0, math.sin(half)]), atol=1e-9
    )
    assert pose.source == SOURCE_MARKER


def test_decompose_rejects_degenerate_transform():
    T = _transform()
    T[:3, :3] = 0.0
    assert decompose_marker_transform(T) is None
    assert decompose_marker_transform(np.eye(3)) is None


def test_visibility_listeners_fire_on_transitions_only():
    det = _ScriptedDetector([_transform(), _transform(), None, None, _transform(), None])
    seen = []
    det.add_visibility_listener(seen.append)
    for _ in range(5):
        det.update(None)
    assert seen == [True, False, True]
    det.remove_visibility_listener(seen.append)
    det.update(None)
    assert seen == [True, False, True]


def test_loop_emits_marker_poses_and_logs_visibility(caplog):
    caplog.set_level(logging.INFO, logger="posefusion.sources.marker")

    async def scenario():
        out = []
        det = _ScriptedDetector([_transform(1.0, 2.0, 3.0)])
        src = MarkerPoseSource(out.append, det, frame_interval_s=0.001)
        await src.start(_Frames())
        await _wait_for(lambda: len(out) >= 2)
        src.stop()
        return out, det

    out, det = asyncio.run(scenario())
    assert det.initialized
    np.testing.assert_allclose(out[0].position, np.array([1.0, 2.0, 3.0]))
    np.testing.assert_allclose(out[0].quaternion, np.array([1.0, 0.0, 0.0, 0.0]))
    assert "marker found" in caplog.text


def test_lost_marker_is_held_then_reported():
    async def scenario():
        out = []
        det = _ScriptedDetector([_transform(1.0), None])
        src = MarkerPoseSource(out.append, det, frame_interval_s=0.001, hold_timeout_s=0.05)
        await src.start(_Frames())
        await _wait_for(lambda: None in out)
        src.stop()
        return out

    out = asyncio.run(scenario())
    assert out.index(None) == 5
    assert all(p.position[0] == 1.0 for p in out[:5])


def test_detector_error_is_treated_as_lost_frame():
    async def scenario():
        out = []
        det = _ScriptedDetector([_transform(1.0), RuntimeError("bad frame"), _transform(2.0)])
        src = MarkerPoseSource(out.append, det, frame_interval_s=0.001)
        await src.start(_Frames())
        await _wait_for(lambda: len(out) >= 4)
        running = src.is_running
        src.stop()
        return out, running

    out, running = asyncio.run(scenario())
    assert running
    assert [p.position[0] for p in out[:3]] == [1.0, 1.0, 2.0]


def test_start_requires_frame_source_and_detector():
    src = MarkerPoseSource(lambda pose: None, _ScriptedDetector([None]))
    with pytest.raises(InitializationError, match="frame source"):
        asyncio.run(src.start(None))

    src = MarkerPoseSource(lambda pose: None, None)
    with pytest.raises(InitializationError, match="detector"):
        asyncio.run(src.initialize())


def test_dispose_releases_detector():
    det = _ScriptedDetector([None])
    src = MarkerPoseSource(lambda pose: None, det)
    asyncio.run(src.initialize())
    assert len(det._listeners) == 1
    src.dispose()
    assert det.disposed
    assert det._listeners == []


class _FlakyFrames(_Frames):
    def __init__(self):
        self.reads = 0

    def read(self):
        self.reads += 1
        if self.reads == 2:
            raise OSError("camera unplugged")
        return super().read()


def test_frame_source_error_counts_as_lost_frame():
    async def scenario():
        out = []
        frames = _FlakyFrames()
        det = _ScriptedDetector([_transform(1.0)])
        src = MarkerPoseSource(out.append, det, frame_interval_s=0.001)
        await src.start(frames)
        await _wait_for(lambda: frames.reads >= 5)
        running = src.is_running
        src.stop()
        return out, running

    out, running = asyncio.run(scenario())
    assert running
    assert None not in out
    assert len(out) >= 4


def test_detector_without_runtime_params_rejects_them():
    det = _ScriptedDetector([None])
    det.update_config()
    with pytest.raises(ValueError, match="marker_size"):
        det.update_config(marker_size=0.1)


def test_configure_detector_forwards_params():
    class _Configurable(_ScriptedDetector):
        def __init__(self):
            super().__init__([None])
            self.params = []

        def update_config(self, **params):
            self.params.append(params)

    det = _Configurable()
    src = MarkerPoseSource(lambda pose: None, det)
    src.configure_detector({})
    src.configure_detector({"marker_size": 0.2})
    assert det.params == [{"marker_size": 0.2}]

    with pytest.raises(InitializationError, match="detector"):
        MarkerPoseSource(lambda pose: None, None).configure_detector({"marker_id": 1})
