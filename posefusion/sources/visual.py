"""Visual (SLAM-style) camera pose source with an adaptive frame loop."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Optional

import cv2
import numpy as np

from ..control.holder import LossRecoveryHolder
from ..control.pose import SOURCE_VISUAL, Pose, PoseCallback, make_pose
from ..control.scheduler import AdaptiveScheduler, SchedulerSettings
from ..control.stability import StabilityGate
from ..errors import FrameProcessingError, InitializationError
from ..math3d.quaternion import rotmat_to_q
from .base import PoseSource, resolve
from .frame_source import FrameSource

logger = logging.getLogger(__name__)


class PoseEstimator:
    """Opaque camera pose estimator bound to one processing resolution."""

    def estimate(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Return a 4x4 camera transform, or None when tracking is lost."""
        raise NotImplementedError

    def feature_points(self) -> list[tuple[float, float]]:
        """Tracked 2D feature points of the last frame (debug only)."""
        return []

    def close(self) -> None:
        pass


class PoseEstimatorFactory:
    """Creates estimators; ``initialize`` may also return an awaitable."""

    def initialize(self, width: int, height: int) -> PoseEstimator:
        raise NotImplementedError


def visual_sample_to_pose(
    transform: Optional[np.ndarray], timestamp_ms: Optional[float] = None
) -> Optional[Pose]:
    """Convert an estimator 4x4 transform into the consumer frame.

    Orientation becomes (w, -x, y, z) and translation (x, -y, -z).
    """
    if transform is None:
        return None
    T = np.asarray(transform, dtype=np.float64)
    if T.shape != (4, 4) or not np.isfinite(T).all():
        return None
    q = rotmat_to_q(T[:3, :3])
    t = T[:3, 3]
    return make_pose(
        position=np.array([t[0], -t[1], -t[2]], dtype=np.float64),
        quaternion=np.array([q[0], -q[1], q[2], q[3]], dtype=np.float64),
        source=SOURCE_VISUAL,
        timestamp_ms=timestamp_ms,
    )


class VisualPoseSource(PoseSource):
    """Runs the estimator on frames pulled at a fixed delay.

    Frames are resized to the scheduler's processing resolution; a change of
    scale reinitializes the estimator before the next frame. Accepted poses
    go through the stability gate and the loss-recovery holder. With
    ``offload_estimate`` the frame read and the estimate run in the default
    executor so other sources keep interleaving.
    """

    name = SOURCE_VISUAL

    def __init__(
        self,
        on_pose: PoseCallback,
        estimator_factory: Optional[PoseEstimatorFactory],
        scheduler_settings: Optional[SchedulerSettings] = None,
        gate: Optional[StabilityGate] = None,
        base_width: int = 640,
        base_height: int = 480,
        max_lost_frames: int = 5,
        hold_timeout_s: float = 1.0,
        dimension_timeout_s: float = 10.0,
        dimension_poll_s: float = 0.05,
        offload_estimate: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(on_pose)
        self.estimator_factory = estimator_factory
        self.scheduler = AdaptiveScheduler(scheduler_settings)
        self.gate = gate or StabilityGate()
        self.base_width = int(base_width)
        self.base_height = int(base_height)
        self.dimension_timeout_s = float(dimension_timeout_s)
        self.dimension_poll_s = float(dimension_poll_s)
        self.offload_estimate = bool(offload_estimate)
        self._clock = clock

        self.holder = LossRecoveryHolder(
            emit=self._emit,
            max_lost_frames=max_lost_frames,
            timeout_s=hold_timeout_s,
            on_lost=self.gate.reset,
            name=self.name,
        )

        self._estimator: Optional[PoseEstimator] = None
        self._estimator_size: tuple[int, int] = (0, 0)
        self._nominal_size = (self.base_width, self.base_height)
        self._needs_reinit = False
        self._generation = 0
        self._starting = False
        self._frame_number = 0
        self._feature_points: list[tuple[float, float]] = []

    def apply_performance(self, min_fps: float, target_fps: float) -> None:
        """Use the tracker's performance targets as scaling thresholds."""
        settings = replace(
            self.scheduler.settings, low_fps=float(min_fps), high_fps=float(target_fps)
        )
        settings.validate()
        self.scheduler.settings = settings

    async def initialize(self) -> None:
        if self.estimator_factory is None:
            raise InitializationError(self.name, "no pose estimator available")
        w, h = self.scheduler.processing_size(*self._nominal_size)
        logger.info("[VISUAL] initializing estimator at %dx%d", w, h)
        self._estimator = await self._create_estimator(w, h)
        self._estimator_size = (w, h)
        self._initialized = True

    async def _create_estimator(self, width: int, height: int) -> PoseEstimator:
        try:
            estimator = await resolve(self.estimator_factory.initialize(width, height))
        except InitializationError:
            raise
        except (RuntimeError, OSError, ValueError) as exc:
            raise InitializationError(self.name, f"estimator init failed: {exc}") from exc
        if estimator is None:
            raise InitializationError(self.name, "estimator factory returned nothing")
        return estimator

    async def start(self, frame_source: Optional[FrameSource] = None) -> None:
        self._check_not_running()
        if self._starting:
            logger.info("[VISUAL] start already in progress, ignoring")
            return
        if frame_source is None:
            raise InitializationError(self.name, "a frame source is required")
        if not self._initialized:
            await self.initialize()

        generation = self._generation
        self._starting = True
        try:
            width, height = await self._wait_for_dimensions(frame_source)
        finally:
            self._starting = False
        if generation != self._generation:
            logger.info("[VISUAL] stopped while waiting for frames")
            return

        nominal_h = max(1, int(round(self.base_width * height / width)))
        self._nominal_size = (self.base_width, nominal_h)
        self.scheduler.reset()
        self.gate.reset()
        self.holder.cancel()
        self._needs_reinit = (
            self.scheduler.processing_size(*self._nominal_size) != self._estimator_size
        )
        self._frame_number = 0
        self._running = True
        self._spawn(self._run(frame_source))
        logger.info(
            "[VISUAL] tracking started (video %dx%d, nominal %dx%d)",
            width,
            height,
            *self._nominal_size,
        )

    async def _wait_for_dimensions(self, frame_source: FrameSource) -> tuple[int, int]:
        deadline = self._clock() + self.dimension_timeout_s
        while True:
            w, h = frame_source.dimensions()
            if w > 0 and h > 0:
                return int(w), int(h)
            if self._clock() >= deadline:
                raise InitializationError(self.name, "frame source never reported dimensions")
            logger.debug("[VISUAL] waiting for frame dimensions")
            await asyncio.sleep(self.dimension_poll_s)

    def stop(self) -> None:
        was_running = self._running
        super().stop()
        self._generation += 1
        self.holder.cancel()
        self.scheduler.reset()
        self.gate.reset()
        if was_running:
            logger.info("[VISUAL] tracking stopped after %d frames", self._frame_number)

    def dispose(self) -> None:
        super().dispose()
        if self._estimator is not None:
            self._estimator.close()
            self._estimator = None
        self._estimator_size = (0, 0)

    def feature_points(self) -> list[tuple[float, float]]:
        return list(self._feature_points)

    def stats(self) -> dict:
        st = self.scheduler.state
        return {
            "fps": st.fps,
            "frame_time_ms": st.frame_time_ms,
            "scale": st.scale,
            "backlog": st.backlog,
            "recovery": st.recovery,
            "processing_size": self._estimator_size,
        }

    async def _run(self, frame_source: FrameSource) -> None:
        while self._running:
            start = self._clock()
            try:
                await self._process_frame(frame_source)
            except Exception:
                logger.warning("[VISUAL] frame %d failed", self._frame_number, exc_info=True)
                now = self._clock()
                self._handle_estimate(None, now, (now - start) * 1000.0)
            await asyncio.sleep(self.scheduler.next_delay())

    async def _process_frame(self, frame_source: FrameSource) -> None:
        if self._needs_reinit:
            await self._reinit_estimator()
        if self._estimator is None:
            return

        frame = await self._read_frame(frame_source, self.offload_estimate)
        if frame is None:
            logger.debug("[VISUAL] frame source not ready")
            return
        if not self._running:
            return

        self._frame_number += 1
        start = self._clock()
        w, h = self._estimator_size
        try:
            if frame.shape[1] != w or frame.shape[0] != h:
                frame = cv2.resize(frame, (w, h), interpolation=cv2.INTER_AREA)
            if self.offload_estimate:
                loop = asyncio.get_running_loop()
                transform = await loop.run_in_executor(None, self._estimator.estimate, frame)
            else:
                transform = self._estimator.estimate(frame)
        except Exception as exc:
            raise FrameProcessingError(f"estimate failed: {exc}") from exc

        if not self._running:
            # Stopped while the estimator was busy; drop the result.
            return
        now = self._clock()
        self._handle_estimate(transform, now, (now - start) * 1000.0)

    def _handle_estimate(
        self, transform: Optional[np.ndarray], now: float, frame_time_ms: float
    ) -> None:
        pose = visual_sample_to_pose(transform)
        if pose is None:
            self.scheduler.record_miss(now)
            if self.debug:
                self._capture_feature_points()
            self.holder.report_lost()
            if self._frame_number % 30 == 0:
                logger.debug("[VISUAL] frame %d: lost tracking", self._frame_number)
        elif self.gate.accept(pose):
            self.scheduler.record_hit(now)
            self.holder.report_pose(pose)
        else:
            logger.debug("[VISUAL] frame %d: pose rejected by stability gate", self._frame_number)

        if self.scheduler.record_frame(now, frame_time_ms):
            self._needs_reinit = True

    def _capture_feature_points(self) -> None:
        if self._estimator is None:
            return
        try:
            self._feature_points = list(self._estimator.feature_points())
        except Exception:
            logger.debug("[VISUAL] feature points unavailable", exc_info=True)
            self._feature_points = []
            return
        logger.debug("[VISUAL] %d feature points", len(self._feature_points))

    async def _reinit_estimator(self) -> None:
        self._needs_reinit = False
        w, h = self.scheduler.processing_size(*self._nominal_size)
        if (w, h) == self._estimator_size:
            return
        try:
            estimator = await self._create_estimator(w, h)
        except InitializationError:
            logger.exception(
                "[VISUAL] estimator reinit at %dx%d failed, keeping %dx%d",
                w,
                h,
                *self._estimator_size,
            )
            return
        if self._estimator is not None:
            self._estimator.close()
        self._estimator = estimator
        self._estimator_size = (w, h)
        logger.info("[VISUAL] estimator reinitialized at %dx%d", w, h)
