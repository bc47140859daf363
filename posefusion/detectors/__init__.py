"""Marker detector implementations."""

from .aruco import ArucoMarkerDetector

__all__ = ["ArucoMarkerDetector"]
