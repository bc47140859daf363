"""Stability gate rejecting implausible single-frame pose jumps."""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from ..math3d.quaternion import q_angle_between
from .pose import Pose

logger = logging.getLogger(__name__)


class StabilityGate:
    """Accept/reject poses relative to the last accepted pose.

    A pose is rejected when its translation from the last accepted pose
    exceeds ``max_translation`` or its relative rotation angle
    ``2*acos(|dot(q_prev, q_new)|)`` exceeds ``max_rotation_deg``.
    After ``max_consecutive_rejections`` rejections in a row the next pose
    re-seeds the gate, so a relocalized tracker is not locked out forever.
    """

    def __init__(
        self,
        max_translation: float = 0.5,
        max_rotation_deg: float = 45.0,
        max_consecutive_rejections: int = 10,
    ):
        if max_translation <= 0.0:
            raise ValueError(f"max_translation must be > 0, got {max_translation}")
        if not (0.0 < max_rotation_deg <= 180.0):
            raise ValueError(f"max_rotation_deg must be in (0,180], got {max_rotation_deg}")
        self.max_translation = float(max_translation)
        self.max_rotation_rad = math.radians(float(max_rotation_deg))
        self.max_consecutive_rejections = max(0, int(max_consecutive_rejections))

        self._last: Optional[Pose] = None
        self._rejections = 0

    @property
    def last_accepted(self) -> Optional[Pose]:
        return self._last

    @property
    def consecutive_rejections(self) -> int:
        return self._rejections

    def accept(self, pose: Pose) -> bool:
        if self._last is None:
            self._take(pose)
            return True

        if self.max_consecutive_rejections and self._rejections >= self.max_consecutive_rejections:
            logger.info(
                "[GATE] re-seeding after %d consecutive rejections", self._rejections
            )
            self._take(pose)
            return True

        dp = float(np.linalg.norm(pose.position - self._last.position))
        dq = q_angle_between(self._last.quaternion, pose.quaternion)
        if dp > self.max_translation or dq > self.max_rotation_rad:
            self._rejections += 1
            logger.debug(
                "[GATE] rejected jump (translation=%.3f, rotation=%.1f deg)",
                dp,
                math.degrees(dq),
            )
            return False

        self._take(pose)
        return True

    def reset(self) -> None:
        self._last = None
        self._rejections = 0

    def _take(self, pose: Pose) -> None:
        self._last = pose.copy()
        self._rejections = 0
