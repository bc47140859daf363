"""Fusion/smoothing engine: the single configuration and pose aggregation point."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional

from ..config import TrackerConfig, merge_tracker_config
from ..errors import InitializationError
from ..sources.base import PoseSource
from ..sources.frame_source import FrameSource
from ..sources.geolocation import GeolocationFeed, GeolocationPoseSource
from ..sources.marker import MarkerDetector, MarkerPoseSource
from ..sources.visual import PoseEstimatorFactory, VisualPoseSource
from .pose import (
    SOURCE_GEOLOCATION,
    SOURCE_MARKER,
    SOURCE_NAMES,
    SOURCE_VISUAL,
    Pose,
    PoseCallback,
)
from .smoothing import PoseSmoother

logger = logging.getLogger(__name__)


class FusionEngine:
    """Owns the pose sources, merges their output and smooths it.

    Merge policy: whichever enabled source reported last becomes the current
    pose. Smoothing runs the same way whichever source reported. A ``None``
    report is forwarded unchanged and resets smoothing so the next valid pose
    is taken directly.
    """

    def __init__(
        self,
        frame_source: Optional[FrameSource],
        on_pose: PoseCallback,
        *,
        estimator_factory: Optional[PoseEstimatorFactory] = None,
        geolocation_feed: Optional[GeolocationFeed] = None,
        marker_detector_factory: Optional[Callable[[], MarkerDetector]] = None,
        smoothing_alpha: float = 0.3,
        source_options: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self.frame_source = frame_source
        self.on_pose = on_pose
        self.estimator_factory = estimator_factory
        self.geolocation_feed = geolocation_feed
        self.marker_detector_factory = marker_detector_factory
        self.source_options = {k: dict(v) for k, v in (source_options or {}).items()}
        unknown = set(self.source_options) - set(SOURCE_NAMES)
        if unknown:
            raise ValueError(f"source_options for unknown sources: {sorted(unknown)}")

        self.config = TrackerConfig()
        self.smoother = PoseSmoother(smoothing_alpha)
        self.sources: dict[str, Optional[PoseSource]] = {name: None for name in SOURCE_NAMES}
        self._current: Optional[Pose] = None
        self._lock = asyncio.Lock()

    def _build_source(self, name: str) -> PoseSource:
        def handler(pose: Optional[Pose]) -> None:
            self._on_source_pose(name, pose)

        opts = self.source_options.get(name, {})
        if name == SOURCE_VISUAL:
            return VisualPoseSource(handler, self.estimator_factory, **opts)
        if name == SOURCE_GEOLOCATION:
            return GeolocationPoseSource(handler, self.geolocation_feed, **opts)
        if name == SOURCE_MARKER:
            detector = None
            if self.marker_detector_factory is not None:
                detector = self.marker_detector_factory()
            source = MarkerPoseSource(handler, detector, **opts)
            try:
                source.configure_detector(self.config.marker.overrides())
            except ValueError as exc:
                raise InitializationError(name, f"invalid marker parameters: {exc}") from exc
            return source
        raise RuntimeError(f"Unsupported pose source: {name}")

    async def update_config(self, update: Mapping[str, Any] | TrackerConfig) -> TrackerConfig:
        """Merge ``update`` and start/stop sources whose enable flag changed.

        A ``marker`` (alias ``image``) mapping updates the marker detector's
        runtime parameters; rejected values leave the whole config unchanged.

        A source that fails to initialize keeps its previous flag; the other
        sources are still processed and the first error is re-raised.
        """
        async with self._lock:
            previous = self.config
            merged = merge_tracker_config(previous, update)
            marker_source = self.sources[SOURCE_MARKER]
            if isinstance(marker_source, MarkerPoseSource) and merged.marker != previous.marker:
                # Raises ValueError before any flag is applied.
                marker_source.configure_detector(merged.marker.overrides())
            self.config = merged

            errors: list[InitializationError] = []
            for name in SOURCE_NAMES:
                was_enabled = previous.enabled(name)
                now_enabled = merged.enabled(name)
                source = self.sources[name]
                if source is not None:
                    self._configure(source)

                if now_enabled and not was_enabled:
                    try:
                        await self._enable(name)
                    except InitializationError as exc:
                        logger.error("[FUSION] failed to enable %s: %s", name, exc)
                        self.config = replace(
                            self.config, pose=replace(self.config.pose, **{name: was_enabled})
                        )
                        errors.append(exc)
                elif was_enabled and not now_enabled and source is not None:
                    source.stop()
                    logger.info("[FUSION] %s disabled", name)

            if errors:
                raise errors[0]
            return self.config

    def _configure(self, source: PoseSource) -> None:
        source.set_debug(self.config.debug)
        if isinstance(source, VisualPoseSource):
            perf = self.config.performance
            source.apply_performance(perf.min_fps, perf.target_fps)

    async def _enable(self, name: str) -> None:
        source = self.sources[name]
        if source is None:
            source = self._build_source(name)
            self.sources[name] = source
            logger.info("[FUSION] constructed %s source", name)
        self._configure(source)
        if not source.is_initialized:
            await source.initialize()
        if source.is_running:
            return
        if source.needs_frames and self.frame_source is None:
            logger.info("[FUSION] %s enabled, waiting for start() with a frame source", name)
            return
        await source.start(self.frame_source)
        logger.info("[FUSION] %s enabled", name)

    async def start(self, frame_source: Optional[FrameSource] = None) -> None:
        """Start every enabled, initialized source that is not yet running."""
        if frame_source is not None:
            self.frame_source = frame_source
        errors: list[InitializationError] = []
        for name, source in self.sources.items():
            if source is None or not self.config.enabled(name):
                continue
            if source.is_running or not source.is_initialized:
                continue
            if source.needs_frames and self.frame_source is None:
                continue
            try:
                await source.start(self.frame_source)
            except InitializationError as exc:
                logger.error("[FUSION] failed to start %s: %s", name, exc)
                errors.append(exc)
        logger.info("[FUSION] started")
        if errors:
            raise errors[0]

    def stop(self) -> None:
        for source in self.sources.values():
            if source is not None:
                source.stop()

    def dispose(self) -> None:
        self.stop()
        for name, source in self.sources.items():
            if source is not None:
                source.dispose()
                self.sources[name] = None
        self._current = None
        self.smoother.reset()

    def get_current_pose(self) -> Optional[Pose]:
        return self._current

    def get_performance_stats(self) -> dict:
        visual = self.sources[SOURCE_VISUAL]
        if isinstance(visual, VisualPoseSource):
            return visual.stats()
        return {"fps": 0.0, "frame_time_ms": 0.0}

    def _on_source_pose(self, name: str, pose: Optional[Pose]) -> None:
        if not self.config.enabled(name):
            return

        if pose is None:
            self.smoother.reset()
            self._current = None
            self._deliver(None)
            return

        smoothed = self.smoother.smooth(pose)
        self._current = smoothed
        self._deliver(smoothed)

    def _deliver(self, pose: Optional[Pose]) -> None:
        try:
            self.on_pose(pose)
        except Exception:
            logger.exception("[FUSION] pose consumer raised")
