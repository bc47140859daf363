"""Frame sources supplying raw image buffers on demand."""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class FrameSource:
    """Anything that can hand out its current image at native dimensions."""

    def dimensions(self) -> tuple[int, int]:
        """Return (width, height); (0, 0) until the source is ready."""
        raise NotImplementedError

    def read(self) -> Optional[np.ndarray]:
        """Return the current frame (H x W x C, BGR) or None if unavailable."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class VideoCaptureFrameSource(FrameSource):
    """OpenCV ``VideoCapture`` wrapper (webcam index or video path)."""

    def __init__(self, device: int | str = 0, width: int = 0, height: int = 0):
        self.device = device
        self.cap = cv2.VideoCapture(device)
        if not self.cap.isOpened():
            self.cap.release()
            raise RuntimeError(f"Cannot open video device {device!r}")

        if width > 0:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height > 0:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._last: Optional[np.ndarray] = None
        self._closed = False

        logger.info(
            "[FRAMES] capture opened (device=%s, %dx%d)",
            device,
            *self.dimensions(),
        )

    def dimensions(self) -> tuple[int, int]:
        if self._last is not None:
            h, w = self._last.shape[:2]
            return int(w), int(h)
        w = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        h = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        return w, h

    def read(self) -> Optional[np.ndarray]:
        if self._closed:
            return None
        ok, frame = self.cap.read()
        if not ok:
            return None
        self._last = frame
        return frame

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.cap.release()
        except cv2.error:
            pass
