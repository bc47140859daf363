"""Adaptive frame scheduler for the visual source.

Paces frame processing at a fixed delay, measures throughput over a rolling
window, scales the processing resolution to keep up, and runs the
backlog/recovery state machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerSettings:
    frame_interval_s: float = 0.03
    fps_window_s: float = 1.0
    low_fps: float = 20.0
    high_fps: float = 30.0
    scale_step: float = 0.1
    min_scale: float = 0.5
    max_scale: float = 1.0
    initial_scale: float = 1.0
    max_backlog: int = 3
    recovery_duration_s: float = 1.0
    recovery_min_frames: int = 5

    def validate(self) -> None:
        if self.frame_interval_s <= 0.0:
            raise ValueError(f"frame_interval_s must be > 0, got {self.frame_interval_s}")
        if self.fps_window_s <= 0.0:
            raise ValueError(f"fps_window_s must be > 0, got {self.fps_window_s}")
        if self.low_fps > self.high_fps:
            raise ValueError(
                f"low_fps must be <= high_fps, got {self.low_fps} > {self.high_fps}"
            )
        if not (0.0 < self.min_scale <= self.max_scale <= 1.0):
            raise ValueError(
                f"scale bounds must satisfy 0 < min <= max <= 1, got [{self.min_scale}, {self.max_scale}]"
            )
        if not (self.min_scale <= self.initial_scale <= self.max_scale):
            raise ValueError(f"initial_scale out of bounds: {self.initial_scale}")
        if self.scale_step <= 0.0:
            raise ValueError(f"scale_step must be > 0, got {self.scale_step}")
        if self.max_backlog < 0:
            raise ValueError(f"max_backlog must be >= 0, got {self.max_backlog}")


@dataclass(slots=True)
class SchedulerState:
    scale: float = 1.0
    fps: float = 0.0
    frame_count: int = 0
    window_start: Optional[float] = None
    backlog: int = 0
    recovery: bool = False
    recovery_started: Optional[float] = None
    frames_since_recovery: int = 0
    frame_time_ms: float = 0.0


class AdaptiveScheduler:
    def __init__(self, settings: SchedulerSettings | None = None):
        self.settings = settings or SchedulerSettings()
        self.settings.validate()
        self.state = SchedulerState(scale=self.settings.initial_scale)

    def reset(self) -> None:
        self.state = SchedulerState(scale=self.settings.initial_scale)

    @property
    def scale(self) -> float:
        return self.state.scale

    @property
    def in_recovery(self) -> bool:
        return self.state.recovery

    def next_delay(self) -> float:
        """Delay before the next frame; doubled while recovering."""
        if self.state.recovery:
            return 2.0 * self.settings.frame_interval_s
        return self.settings.frame_interval_s

    def processing_size(self, nominal_width: int, nominal_height: int) -> tuple[int, int]:
        w = max(1, int(nominal_width * self.state.scale))
        h = max(1, int(nominal_height * self.state.scale))
        return w, h

    def record_frame(self, now: float, frame_time_ms: float = 0.0) -> bool:
        """Count a completed frame. Returns True when the scale changed."""
        st = self.state
        st.frame_time_ms = float(frame_time_ms)
        self._update_recovery(now)

        if st.window_start is None:
            st.window_start = now
            st.frame_count = 0
            return False

        st.frame_count += 1
        elapsed = now - st.window_start
        if elapsed < self.settings.fps_window_s:
            return False

        st.fps = st.frame_count / elapsed
        st.frame_count = 0
        st.window_start = now
        if st.recovery:
            return False
        return self._adjust_scale()

    def record_hit(self, now: float) -> None:
        """A fresh pose was accepted this frame."""
        st = self.state
        st.backlog = 0
        if st.recovery:
            st.frames_since_recovery += 1
            self._update_recovery(now)

    def record_miss(self, now: float) -> None:
        """No pose this frame (estimator returned nothing or failed)."""
        st = self.state
        if st.recovery:
            return
        st.backlog += 1
        if st.backlog > self.settings.max_backlog:
            st.recovery = True
            st.recovery_started = now
            st.frames_since_recovery = 0
            st.backlog = 0
            logger.info("[SCHED] entering recovery (backlog cap %d)", self.settings.max_backlog)

    def _update_recovery(self, now: float) -> None:
        st = self.state
        if not st.recovery:
            return
        timed_out = (
            st.recovery_started is not None
            and now - st.recovery_started >= self.settings.recovery_duration_s
        )
        if timed_out or st.frames_since_recovery >= self.settings.recovery_min_frames:
            st.recovery = False
            st.recovery_started = None
            st.frames_since_recovery = 0
            st.backlog = 0
            logger.info("[SCHED] recovery cleared")

    def _adjust_scale(self) -> bool:
        st = self.state
        s = self.settings
        old = st.scale
        if st.fps < s.low_fps:
            st.scale = round(max(s.min_scale, st.scale - s.scale_step), 6)
        elif st.fps > s.high_fps and st.scale < s.max_scale:
            st.scale = round(min(s.max_scale, st.scale + s.scale_step), 6)
        if st.scale == old:
            return False
        logger.info(
            "[SCHED] %s resolution to %.0f%% (fps=%.1f)",
            "reducing" if st.scale < old else "increasing",
            st.scale * 100.0,
            st.fps,
        )
        return True
