"""OpenCV ArUco marker detector for the marker pose source."""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from ..sources.marker import MarkerDetector

logger = logging.getLogger(__name__)


class ArucoMarkerDetector(MarkerDetector):
    """Detect a square ArUco marker and report the camera pose in marker space.

    The marker frame is x right, y up, z out of the marker towards the camera.
    The reported camera orientation uses the same convention as the consumer
    (camera looks down its local -z, y up), so OpenCV's camera basis
    (x right, y down, z forward) is flipped on y and z.
    """

    # Convert from OpenCV camera basis (x right, y down, z forward)
    # to consumer camera basis (x right, y up, z backward).
    _CV_TO_APP = np.diag(np.array([1.0, -1.0, -1.0], dtype=np.float64))

    def __init__(
        self,
        dictionary: str = "DICT_4X4_50",
        marker_size: float = 0.06,
        marker_id: int = -1,
        camera_matrix: Optional[np.ndarray] = None,
        dist_coeffs: Optional[np.ndarray] = None,
    ):
        super().__init__()
        self.dictionary_name = str(dictionary)
        self.marker_size = float(marker_size)
        self.marker_id = int(marker_id)
        self.camera_matrix = (
            None if camera_matrix is None else np.asarray(camera_matrix, dtype=np.float64)
        )
        self.dist_coeffs = (
            np.zeros((4, 1), dtype=np.float64)
            if dist_coeffs is None
            else np.asarray(dist_coeffs, dtype=np.float64)
        )
        self.last_id: Optional[int] = None
        self._detector = None
        self._object_points = self._square_points(self.marker_size)

    @staticmethod
    def _square_points(size: float) -> np.ndarray:
        half = size * 0.5
        return np.array(
            [
                (-half, half, 0.0),
                (half, half, 0.0),
                (half, -half, 0.0),
                (-half, -half, 0.0),
            ],
            dtype=np.float64,
        )

    @staticmethod
    def _dictionary_id(name: str) -> int:
        dict_id = getattr(cv2.aruco, name, None)
        if dict_id is None or not name.startswith("DICT_"):
            raise ValueError(f"unknown ArUco dictionary: {name}")
        return dict_id

    def _build_detector(self, name: str):
        dictionary = cv2.aruco.getPredefinedDictionary(self._dictionary_id(name))
        params = cv2.aruco.DetectorParameters()
        params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_SUBPIX
        return cv2.aruco.ArucoDetector(dictionary, params)

    def initialize(self) -> None:
        self._detector = self._build_detector(self.dictionary_name)
        logger.info(
            "[MARKER] aruco detector (dict=%s, size=%.3fm, id=%s)",
            self.dictionary_name,
            self.marker_size,
            "any" if self.marker_id < 0 else self.marker_id,
        )

    def update_config(
        self,
        marker_size: Optional[float] = None,
        marker_id: Optional[int] = None,
        dictionary: Optional[str] = None,
    ) -> None:
        """Change marker parameters at runtime. Invalid values leave the detector unchanged."""
        size = self.marker_size if marker_size is None else float(marker_size)
        if not size > 0.0:
            raise ValueError(f"marker_size must be > 0, got {marker_size}")
        new_id = self.marker_id if marker_id is None else int(marker_id)
        if new_id < -1:
            raise ValueError(f"marker_id must be >= -1, got {marker_id}")
        name = self.dictionary_name if dictionary is None else str(dictionary)
        detector = self._detector
        if name != self.dictionary_name:
            self._dictionary_id(name)
            if detector is not None:
                detector = self._build_detector(name)

        self.marker_size = size
        self.marker_id = new_id
        self.dictionary_name = name
        self._detector = detector
        self._object_points = self._square_points(size)
        logger.info(
            "[MARKER] aruco parameters updated (dict=%s, size=%.3fm, id=%s)",
            name,
            size,
            "any" if new_id < 0 else new_id,
        )

    def _camera_matrix(self, w: int, h: int) -> np.ndarray:
        if self.camera_matrix is not None:
            return self.camera_matrix
        f = float(max(w, h))
        return np.array(
            [[f, 0.0, w * 0.5], [0.0, f, h * 0.5], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def update(self, frame: np.ndarray) -> None:
        if self._detector is None:
            raise RuntimeError("ArucoMarkerDetector.update() called before initialize()")
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        corners, ids, _ = self._detector.detectMarkers(gray)

        index = self._select(ids)
        if index is None:
            self.pose_matrix = None
            self._set_visible(False)
            return

        h, w = gray.shape[:2]
        image_points = np.asarray(corners[index], dtype=np.float64).reshape(4, 2)
        ok, rvec, tvec = cv2.solvePnP(
            self._object_points,
            image_points,
            self._camera_matrix(w, h),
            self.dist_coeffs,
            flags=cv2.SOLVEPNP_IPPE_SQUARE,
        )
        if not ok:
            self.pose_matrix = None
            self._set_visible(False)
            return

        R_mc, _ = cv2.Rodrigues(rvec)
        t_mc = np.asarray(tvec, dtype=np.float64).reshape(3)
        # Invert marker-in-camera to camera-in-marker.
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = R_mc.T @ self._CV_TO_APP
        T[:3, 3] = -R_mc.T @ t_mc
        self.last_id = int(ids[index][0])
        self.pose_matrix = T
        self._set_visible(True)

    def _select(self, ids) -> Optional[int]:
        if ids is None or len(ids) == 0:
            return None
        flat = [int(i) for i in np.asarray(ids).reshape(-1)]
        if self.marker_id < 0:
            return 0
        if self.marker_id in flat:
            return flat.index(self.marker_id)
        return None

    def dispose(self) -> None:
        super().dispose()
        self._detector = None
