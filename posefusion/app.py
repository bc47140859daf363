"""
Pose fusion demo:
- OpenCV webcam frame source
- ArUco fiducial-marker pose source (bundled detector)
- Fusion engine with loss-recovery holding and EMA smoothing
- Fused poses logged at --log-hz

Visual and geolocation sources need an injected estimator / location feed
and are only available through the FusionEngine API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from .config import AppConfig, parse_args, tracker_config_from_app
from .control.engine import FusionEngine
from .control.pose import SOURCE_MARKER, Pose
from .detectors.aruco import ArucoMarkerDetector
from .sources.frame_source import VideoCaptureFrameSource

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class PoseLogConsumer:
    """Consumer callback that logs fused poses at a bounded rate."""

    def __init__(self, log_hz: float = 2.0, clock=time.monotonic):
        self.interval = (1.0 / log_hz) if log_hz > 0.0 else 0.0
        self._clock = clock
        self._last_t: Optional[float] = None
        self.tracking = False
        self.count = 0

    def __call__(self, pose: Optional[Pose]) -> None:
        self.count += 1
        if pose is None:
            if self.tracking:
                logger.info("[POSE] lost")
            self.tracking = False
            return
        if not self.tracking:
            logger.info("[POSE] tracking via %s", pose.source)
        self.tracking = True

        if self.interval <= 0.0:
            return
        now = self._clock()
        if self._last_t is not None and now - self._last_t < self.interval:
            return
        self._last_t = now
        p = pose.position
        q = pose.quaternion
        logger.info(
            "[POSE] %s xyz=[%.3f, %.3f, %.3f] q=[w,x,y,z]=[%.4f, %.4f, %.4f, %.4f]",
            pose.source,
            p[0],
            p[1],
            p[2],
            q[0],
            q[1],
            q[2],
            q[3],
        )


def build_engine(cfg: AppConfig, frame_source, on_pose) -> FusionEngine:
    def make_detector():
        return ArucoMarkerDetector(
            dictionary=cfg.marker_dictionary,
            marker_size=cfg.marker_size,
            marker_id=cfg.marker_id,
        )

    return FusionEngine(
        frame_source,
        on_pose,
        marker_detector_factory=make_detector,
        smoothing_alpha=cfg.smoothing_alpha,
        source_options={
            SOURCE_MARKER: {
                "frame_interval_s": cfg.marker_interval_ms / 1000.0,
                "max_lost_frames": cfg.max_lost_frames,
                "hold_timeout_s": cfg.marker_hold_timeout_ms / 1000.0,
            }
        },
    )


async def run(cfg: AppConfig) -> None:
    frame_source = VideoCaptureFrameSource(
        cfg.camera_index, width=cfg.camera_width, height=cfg.camera_height
    )
    consumer = PoseLogConsumer(cfg.log_hz)
    engine = build_engine(cfg, frame_source, consumer)
    try:
        await engine.update_config(tracker_config_from_app(cfg))
        await engine.start(frame_source)
        if cfg.duration_s > 0.0:
            await asyncio.sleep(cfg.duration_s)
        else:
            await asyncio.Event().wait()
    finally:
        try:
            engine.dispose()
        finally:
            frame_source.close()
        logger.info("[APP] %d pose updates delivered", consumer.count)


def main(argv=None):
    cfg = parse_args(argv)
    configure_logging(cfg.log_level)
    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        logger.info("[APP] interrupted")


if __name__ == "__main__":
    main()
