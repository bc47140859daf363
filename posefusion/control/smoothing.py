"""Exponential pose smoothing applied by the fusion engine."""

from __future__ import annotations

from typing import Optional

import numpy as np

from ..math3d.quaternion import q_normalize
from .pose import Pose


class PoseSmoother:
    """Per-axis EMA on position, sign-corrected EMA on the quaternion.

    smoothed = smoothed + alpha * (new - smoothed)

    The first pose after construction or reset() seeds the state directly.
    """

    def __init__(self, alpha: float = 0.3):
        if not (0.0 < alpha <= 1.0):
            raise ValueError(f"alpha must be in (0,1], got {alpha}")
        self.alpha = float(alpha)
        self._p: Optional[np.ndarray] = None
        self._q: Optional[np.ndarray] = None

    @property
    def is_seeded(self) -> bool:
        return self._p is not None

    def reset(self) -> None:
        self._p = None
        self._q = None

    def smooth(self, pose: Pose) -> Pose:
        if self._p is None or self._q is None:
            self._p = pose.position.astype(np.float64, copy=True)
            self._q = q_normalize(pose.quaternion)
        else:
            a = self.alpha
            self._p = self._p + a * (pose.position - self._p)
            q_new = pose.quaternion
            # Shorter arc.
            if float(np.dot(self._q, q_new)) < 0.0:
                q_new = -q_new
            self._q = q_normalize(self._q + a * (q_new - self._q))

        return Pose(
            position=self._p.copy(),
            quaternion=self._q.copy(),
            source=pose.source,
            timestamp_ms=pose.timestamp_ms,
        )
