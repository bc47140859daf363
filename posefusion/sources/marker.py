"""Optical fiducial-marker pose source."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import numpy as np

from ..control.holder import LossRecoveryHolder
from ..control.pose import SOURCE_MARKER, Pose, PoseCallback, make_pose
from ..errors import FrameProcessingError, InitializationError
from ..math3d.quaternion import euler_xyz_to_q, rotmat_to_euler_xyz
from .base import PoseSource, resolve
from .frame_source import FrameSource

logger = logging.getLogger(__name__)

VisibilityListener = Callable[[bool], None]


class MarkerDetector:
    """Opaque marker detector.

    ``update(frame)`` runs detection; afterwards ``visible`` tells whether the
    marker is in view and ``pose_matrix`` holds the 4x4 camera transform in
    the consumer frame. Visibility transitions are pushed to listeners.
    """

    def __init__(self):
        self.visible = False
        self.pose_matrix: Optional[np.ndarray] = None
        self._listeners: list[VisibilityListener] = []

    def initialize(self) -> None:
        """Prepare detection resources (may return an awaitable)."""

    def update(self, frame: np.ndarray) -> None:
        raise NotImplementedError

    def update_config(self, **params: Any) -> None:
        """Apply runtime parameters (marker_size, marker_id, dictionary)."""
        if params:
            raise ValueError(
                f"{type(self).__name__} does not accept runtime parameters: {sorted(params)}"
            )

    def add_visibility_listener(self, listener: VisibilityListener) -> None:
        self._listeners.append(listener)

    def remove_visibility_listener(self, listener: VisibilityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_visible(self, visible: bool) -> None:
        if visible == self.visible:
            return
        self.visible = visible
        for listener in list(self._listeners):
            listener(visible)

    def dispose(self) -> None:
        self._listeners.clear()


@dataclass(slots=True)
class MarkerSample:
    position: np.ndarray
    euler_xyz: np.ndarray


def decompose_marker_transform(transform: np.ndarray) -> Optional[MarkerSample]:
    """Split a 4x4 transform into position and XYZ Euler angles (scale removed)."""
    T = np.asarray(transform, dtype=np.float64)
    if T.shape != (4, 4) or not np.isfinite(T).all():
        return None
    R = T[:3, :3].copy()
    scale = np.linalg.norm(R, axis=0)
    if np.any(scale < 1e-12):
        return None
    R /= scale
    return MarkerSample(position=T[:3, 3].copy(), euler_xyz=rotmat_to_euler_xyz(R))


def marker_sample_to_pose(sample: MarkerSample) -> Optional[Pose]:
    e = sample.euler_xyz
    return make_pose(
        position=sample.position,
        quaternion=euler_xyz_to_q(float(e[0]), float(e[1]), float(e[2])),
        source=SOURCE_MARKER,
    )


class MarkerPoseSource(PoseSource):
    """Fixed-interval detection loop with loss-recovery holding.

    Any per-frame failure, including a frame source error, counts as a lost
    frame; the loop keeps running.
    """

    name = SOURCE_MARKER

    def __init__(
        self,
        on_pose: PoseCallback,
        detector: Optional[MarkerDetector],
        frame_interval_s: float = 0.03,
        max_lost_frames: int = 5,
        hold_timeout_s: float = 2.0,
        offload_read: bool = True,
    ):
        super().__init__(on_pose)
        if frame_interval_s <= 0.0:
            raise ValueError(f"frame_interval_s must be > 0, got {frame_interval_s}")
        self.detector = detector
        self.frame_interval_s = float(frame_interval_s)
        self.offload_read = bool(offload_read)
        self.holder = LossRecoveryHolder(
            emit=self._emit,
            max_lost_frames=max_lost_frames,
            timeout_s=hold_timeout_s,
            name=self.name,
        )
        self._frame_number = 0

    async def initialize(self) -> None:
        if self.detector is None:
            raise InitializationError(self.name, "no marker detector available")
        try:
            await resolve(self.detector.initialize())
        except InitializationError:
            raise
        except (RuntimeError, OSError, ValueError) as exc:
            raise InitializationError(self.name, f"detector init failed: {exc}") from exc
        if not self._initialized:
            self.detector.add_visibility_listener(self._on_visibility)
        self._initialized = True
        logger.info("[MARKER] detector ready (interval=%.0fms)", self.frame_interval_s * 1000.0)

    async def start(self, frame_source: Optional[FrameSource] = None) -> None:
        self._check_not_running()
        if frame_source is None:
            raise InitializationError(self.name, "a frame source is required")
        if not self._initialized:
            await self.initialize()
        self.holder.cancel()
        self._frame_number = 0
        self._running = True
        self._spawn(self._run(frame_source))
        logger.info("[MARKER] tracking started")

    def stop(self) -> None:
        was_running = self._running
        super().stop()
        self.holder.cancel()
        if was_running:
            logger.info("[MARKER] tracking stopped after %d frames", self._frame_number)

    def dispose(self) -> None:
        super().dispose()
        if self.detector is not None:
            self.detector.remove_visibility_listener(self._on_visibility)
            self.detector.dispose()

    def configure_detector(self, params: Mapping[str, Any]) -> None:
        """Forward runtime marker parameters; ValueError leaves the detector as it was."""
        if not params:
            return
        if self.detector is None:
            raise InitializationError(self.name, "no marker detector available")
        self.detector.update_config(**params)
        logger.info("[MARKER] detector reconfigured: %s", dict(params))

    def _on_visibility(self, visible: bool) -> None:
        logger.info("[MARKER] marker %s", "found" if visible else "lost")

    async def _run(self, frame_source: FrameSource) -> None:
        while self._running:
            try:
                await self._process_frame(frame_source)
            except Exception:
                logger.warning("[MARKER] frame %d failed", self._frame_number, exc_info=True)
                self.holder.report_lost()
            await asyncio.sleep(self.frame_interval_s)

    async def _process_frame(self, frame_source: FrameSource) -> None:
        frame = await self._read_frame(frame_source, self.offload_read)
        if frame is None or not self._running:
            return
        self._frame_number += 1
        try:
            self.detector.update(frame)
        except Exception as exc:
            raise FrameProcessingError(f"marker update failed: {exc}") from exc

        pose = None
        if self.detector.visible and self.detector.pose_matrix is not None:
            sample = decompose_marker_transform(self.detector.pose_matrix)
            if sample is not None:
                pose = marker_sample_to_pose(sample)
        if pose is None:
            self.holder.report_lost()
        else:
            self.holder.report_pose(pose)
