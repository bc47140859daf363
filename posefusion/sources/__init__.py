"""Pose source implementations."""

from .geolocation import GeolocationPoseSource
from .marker import MarkerPoseSource
from .visual import VisualPoseSource

__all__ = [
    "GeolocationPoseSource",
    "MarkerPoseSource",
    "VisualPoseSource",
]
