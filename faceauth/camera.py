"""
Camera frame source.

Wraps cv2.VideoCapture as a frame source for FrameScheduler: any object
with a read() method returning a frame (or None) can drive a session, so
tests and offline tools can substitute their own.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cv2
import numpy as np

from faceauth.exceptions import PermissionDenied, StreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Configuration for webcam capture."""
    width: int = 640
    height: int = 480
    fps: int = 30
    device_id: int = 0

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "CaptureConfig":
        config = config or {}
        return cls(
            width=int(config.get("width", cls.width)),
            height=int(config.get("height", cls.height)),
            fps=int(config.get("fps", cls.fps)),
            device_id=int(config.get("device_id", cls.device_id)),
        )


class CameraStream:
    """
    Manages webcam access for a session.

    read() never raises for a dropped frame; it returns None, which the
    controllers treat like a frame without a face.
    """

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._cap: Optional[cv2.VideoCapture] = None

    def open(self) -> None:
        """
        Open the webcam device.

        Raises:
            PermissionDenied: If the device exists but cannot be accessed.
            StreamUnavailable: If the device cannot be opened.
        """
        if self._cap is not None:
            self.close()

        device_id = self.config.device_id
        device_node = f"/dev/video{device_id}"
        if os.path.exists(device_node) and not os.access(device_node, os.R_OK):
            raise PermissionDenied(f"Permission denied for camera {device_node}")

        cap = cv2.VideoCapture(device_id)
        if not cap.isOpened():
            cap.release()
            logger.error(f"Failed to open camera {device_id}")
            raise StreamUnavailable(f"Camera {device_id} could not be opened")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        cap.set(cv2.CAP_PROP_FPS, self.config.fps)

        self._cap = cap
        logger.info(f"Opened camera {device_id} at {self.config.width}x{self.config.height}")

    def close(self) -> None:
        """Release the webcam device."""
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera closed")

    def read(self) -> Optional[np.ndarray]:
        """Read one BGR frame, or None if the stream is closed or the read failed."""
        if self._cap is None:
            return None

        ret, frame = self._cap.read()
        if not ret:
            logger.debug("Dropped camera frame")
            return None
        return frame

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
