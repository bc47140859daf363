import asyncio
import math

import numpy as np
import pytest

from posefusion.control.pose import SOURCE_GEOLOCATION
from posefusion.errors import FeedError, InitializationError
from posefusion.sources.geolocation import (
    GeolocationFeed,
    GeolocationFix,
    GeolocationPoseSource,
    geolocation_fix_to_pose,
)


class _Feed(GeolocationFeed):
    def __init__(self, granted=True):
        self.granted = granted
        self.callbacks = {}
        self._next = 0

    def request_permission(self):
        return self.granted

    def subscribe(self, callback):
        self._next += 1
        self.callbacks[self._next] = callback
        return self._next

    def unsubscribe(self, handle):
        self.callbacks.pop(handle, None)

    def push(self, update):
        for cb in list(self.callbacks.values()):
            cb(update)


class _AsyncPermissionFeed(_Feed):
    async def request_permission(self):
        await asyncio.sleep(0)
        return self.granted


def test_fix_to_pose_maps_heading_about_up_axis():
    pose = geolocation_fix_to_pose(
        GeolocationFix(longitude=10.0, latitude=20.0, timestamp_ms=0.0, heading=90.0)
    )
    np.testing.assert_allclose(pose.position, np.array([10.0, 20.0, 0.0]))
    half = math.radians(-90.0) * 0.5
    np.testing.assert_allclose(
        pose.quaternion, np.array([math.cos(half), 0.0, 0.0, math.sin(half)]), atol=1e-12
    )
    assert pose.source == SOURCE_GEOLOCATION
    assert pose.timestamp_ms == 0.0


def test_fix_without_heading_has_identity_orientation():
    pose = geolocation_fix_to_pose(
        GeolocationFix(longitude=1.0, latitude=2.0, timestamp_ms=5.0, altitude=30.0)
    )
    np.testing.assert_allclose(pose.position, np.array([1.0, 2.0, 30.0]))
    np.testing.assert_allclose(pose.quaternion, np.array([1.0, 0.0, 0.0, 0.0]))


def test_updates_are_throttled_by_timestamp():
    out = []
    feed = _Feed()
    src = GeolocationPoseSource(out.append, feed, update_interval_ms=1000.0)
    asyncio.run(src.start())
    for ts in (0.0, 500.0, 1000.0, 1500.0, 2000.0):
        feed.push(GeolocationFix(longitude=ts, latitude=0.0, timestamp_ms=ts))
    assert [p.position[0] for p in out] == [0.0, 1000.0, 2000.0]
    assert src.last_fix.timestamp_ms == 2000.0


def test_feed_error_emits_none_and_keeps_subscription():
    out = []
    feed = _Feed()
    src = GeolocationPoseSource(out.append, feed)
    asyncio.run(src.start())
    feed.push(GeolocationFix(longitude=1.0, latitude=1.0, timestamp_ms=0.0))
    feed.push(TimeoutError("no satellites"))
    assert out[-1] is None
    assert isinstance(src.last_error, FeedError)
    assert isinstance(src.last_error.__cause__, TimeoutError)
    feed.push(GeolocationFix(longitude=2.0, latitude=1.0, timestamp_ms=5000.0))
    assert out[-1].position[0] == 2.0


def test_stop_unsubscribes():
    out = []
    feed = _Feed()
    src = GeolocationPoseSource(out.append, feed)
    asyncio.run(src.start())
    src.stop()
    assert feed.callbacks == {}
    feed.push(GeolocationFix(longitude=1.0, latitude=1.0, timestamp_ms=0.0))
    assert out == []


def test_permission_denied_raises():
    src = GeolocationPoseSource(lambda pose: None, _AsyncPermissionFeed(granted=False))
    with pytest.raises(InitializationError, match="permission"):
        asyncio.run(src.initialize())
    assert not src.is_initialized


def test_missing_feed_raises():
    src = GeolocationPoseSource(lambda pose: None, None)
    with pytest.raises(InitializationError, match="geolocation"):
        asyncio.run(src.initialize())
