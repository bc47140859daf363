"""Pose data structures shared by every pose source."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from ..math3d.quaternion import q_normalize, q_to_euler_xyz

SOURCE_VISUAL = "visual"
SOURCE_GEOLOCATION = "geolocation"
SOURCE_MARKER = "marker"
SOURCE_NAMES = (SOURCE_VISUAL, SOURCE_GEOLOCATION, SOURCE_MARKER)


@dataclass(slots=True)
class Pose:
    """6DoF pose in the consumer's right-handed frame.

    position:
      3D translation [x, y, z], units defined by the reporting source.
    quaternion:
      Orientation quaternion [w, x, y, z], unit length.
    source:
      Tag of the source that produced the pose.
    """

    position: np.ndarray
    quaternion: np.ndarray
    source: str
    timestamp_ms: Optional[float] = None

    @property
    def euler(self) -> np.ndarray:
        """XYZ Euler angles in radians, for display only."""
        return q_to_euler_xyz(self.quaternion)

    def copy(self) -> "Pose":
        return Pose(
            position=self.position.copy(),
            quaternion=self.quaternion.copy(),
            source=self.source,
            timestamp_ms=self.timestamp_ms,
        )


PoseCallback = Callable[[Optional[Pose]], None]


def make_pose(
    position,
    quaternion,
    source: str,
    timestamp_ms: Optional[float] = None,
) -> Optional[Pose]:
    """Build a validated pose, or None when the input is not finite.

    A partial or corrupt pose is never produced.
    """
    p = np.asarray(position, dtype=np.float64).reshape(-1)
    q = np.asarray(quaternion, dtype=np.float64).reshape(-1)
    if p.size != 3 or q.size != 4:
        return None
    if not np.isfinite(p).all() or not np.isfinite(q).all():
        return None
    if float(np.linalg.norm(q)) < 1e-12:
        return None
    return Pose(
        position=p.copy(),
        quaternion=q_normalize(q),
        source=source,
        timestamp_ms=timestamp_ms,
    )
