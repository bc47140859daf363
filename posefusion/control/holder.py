"""Loss-recovery holder bridging short tracking gaps."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .pose import Pose, PoseCallback

logger = logging.getLogger(__name__)

STATE_TRACKING = "tracking"
STATE_HOLDING = "holding"
STATE_LOST = "lost"


class LossRecoveryHolder:
    """Re-emit the last good pose across momentary dropouts.

    tracking(pose) -> holding(pose, loss_count, timer) -> lost(None)
    holding -> tracking on any new accepted pose.

    Consecutive losses below ``max_lost_frames`` re-emit the held pose; from
    then on nothing is emitted until the timer fires or a fresh pose arrives.
    The timeout runs on the event loop via ``call_later``; when it fires the
    held pose is cleared and ``None`` is emitted once.
    """

    def __init__(
        self,
        emit: PoseCallback,
        max_lost_frames: int = 5,
        timeout_s: float = 1.0,
        on_lost: Optional[Callable[[], None]] = None,
        name: str = "holder",
    ):
        if timeout_s <= 0.0:
            raise ValueError(f"timeout_s must be > 0, got {timeout_s}")
        self._emit = emit
        self.max_lost_frames = max(0, int(max_lost_frames))
        self.timeout_s = float(timeout_s)
        self._on_lost = on_lost
        self.name = name

        self._held: Optional[Pose] = None
        self._loss_count = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._state = STATE_LOST

    @property
    def state(self) -> str:
        return self._state

    @property
    def loss_count(self) -> int:
        return self._loss_count

    @property
    def held_pose(self) -> Optional[Pose]:
        return self._held

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def report_pose(self, pose: Pose) -> None:
        self._disarm()
        self._loss_count = 0
        self._held = pose
        self._state = STATE_TRACKING
        self._emit(pose)

    def report_lost(self) -> None:
        if self._held is None:
            return
        self._loss_count += 1
        self._state = STATE_HOLDING
        if self._loss_count < self.max_lost_frames:
            self._emit(self._held)
            self._arm()
        elif self._timer is None:
            self._arm()

    def cancel(self) -> None:
        """Disarm the timer and forget the held pose without emitting."""
        self._disarm()
        self._held = None
        self._loss_count = 0
        self._state = STATE_LOST

    def _arm(self) -> None:
        self._disarm()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.timeout_s, self._expire)

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self._timer = None
        logger.info(
            "[%s] tracking lost after %.2fs hold (%d frames)",
            self.name.upper(),
            self.timeout_s,
            self._loss_count,
        )
        self._held = None
        self._loss_count = 0
        self._state = STATE_LOST
        self._emit(None)
        if self._on_lost is not None:
            self._on_lost()
