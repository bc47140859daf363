"""Satellite geolocation pose source."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import numpy as np

from ..control.pose import SOURCE_GEOLOCATION, Pose, PoseCallback, make_pose
from ..errors import FeedError, InitializationError
from ..math3d.quaternion import axis_angle_to_q, q_identity
from .base import PoseSource, resolve
from .frame_source import FrameSource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GeolocationFix:
    longitude: float
    latitude: float
    timestamp_ms: float
    altitude: Optional[float] = None
    heading: Optional[float] = None


FixCallback = Callable[[Union[GeolocationFix, BaseException]], None]


class GeolocationFeed:
    """Continuous location feed.

    The subscriber callback receives either a ``GeolocationFix`` or an
    exception instance. Callbacks must be delivered on the event loop thread;
    feeds driven by another thread should hop over with
    ``loop.call_soon_threadsafe``. The feed owns its own retry policy.
    """

    def request_permission(self) -> bool:
        """Return False when location access is denied (may be awaitable)."""
        return True

    def subscribe(self, callback: FixCallback) -> Any:
        raise NotImplementedError

    def unsubscribe(self, handle: Any) -> None:
        raise NotImplementedError


def geolocation_fix_to_pose(fix: GeolocationFix) -> Optional[Pose]:
    """Longitude/latitude/altitude as x/y/z, heading as a rotation about +z.

    Heading is clockwise from north, so it maps to ``-heading`` about the up
    axis. A missing heading or altitude maps to identity / 0.
    """
    altitude = 0.0 if fix.altitude is None else float(fix.altitude)
    if fix.heading is None or not math.isfinite(float(fix.heading)):
        q = q_identity()
    else:
        q = axis_angle_to_q(np.array([0.0, 0.0, 1.0]), -math.radians(float(fix.heading)))
    return make_pose(
        position=np.array([fix.longitude, fix.latitude, altitude], dtype=np.float64),
        quaternion=q,
        source=SOURCE_GEOLOCATION,
        timestamp_ms=float(fix.timestamp_ms),
    )


class GeolocationPoseSource(PoseSource):
    """Subscribes to a location feed and throttles updates by timestamp."""

    name = SOURCE_GEOLOCATION
    needs_frames = False

    def __init__(
        self,
        on_pose: PoseCallback,
        feed: Optional[GeolocationFeed],
        update_interval_ms: float = 1000.0,
    ):
        super().__init__(on_pose)
        if update_interval_ms < 0.0:
            raise ValueError(f"update_interval_ms must be >= 0, got {update_interval_ms}")
        self.feed = feed
        self.update_interval_ms = float(update_interval_ms)
        self.last_fix: Optional[GeolocationFix] = None
        self.last_error: Optional[FeedError] = None
        self._last_update_ms: Optional[float] = None
        self._handle: Any = None

    async def initialize(self) -> None:
        if self.feed is None:
            raise InitializationError(self.name, "no geolocation feed available")
        granted = await resolve(self.feed.request_permission())
        if not granted:
            raise InitializationError(self.name, "location permission denied")
        self._initialized = True
        logger.info("[GEO] feed ready (interval=%.0fms)", self.update_interval_ms)

    async def start(self, frame_source: Optional[FrameSource] = None) -> None:
        self._check_not_running()
        if not self._initialized:
            await self.initialize()
        self._last_update_ms = None
        self._running = True
        try:
            self._handle = self.feed.subscribe(self._on_feed)
        except (RuntimeError, OSError) as exc:
            self._running = False
            raise InitializationError(self.name, f"subscribe failed: {exc}") from exc
        logger.info("[GEO] tracking started")

    def stop(self) -> None:
        was_running = self._running
        super().stop()
        if self._handle is not None and self.feed is not None:
            handle, self._handle = self._handle, None
            self.feed.unsubscribe(handle)
        if was_running:
            logger.info("[GEO] tracking stopped")

    def dispose(self) -> None:
        super().dispose()
        self.last_fix = None

    def _on_feed(self, update: Union[GeolocationFix, BaseException]) -> None:
        if not self._running:
            return
        if isinstance(update, BaseException):
            self._on_error(update)
            return

        ts = float(update.timestamp_ms)
        if self._last_update_ms is not None and ts - self._last_update_ms < self.update_interval_ms:
            return
        self._last_update_ms = ts
        self.last_fix = update

        pose = geolocation_fix_to_pose(update)
        if pose is None:
            logger.warning("[GEO] discarding non-finite fix: %s", update)
            return
        self._emit(pose)

    def _on_error(self, error: BaseException) -> None:
        if not isinstance(error, FeedError):
            wrapped = FeedError(str(error))
            wrapped.__cause__ = error
            error = wrapped
        self.last_error = error
        logger.error("[GEO] feed error: %s", error)
        self._emit(None)
