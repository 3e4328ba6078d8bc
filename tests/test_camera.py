"""
Tests for the OpenCV camera frame source.

cv2.VideoCapture is mocked; no camera device is needed.

Run with: pytest tests/test_camera.py -v
"""

import os
import sys
from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceauth.camera import CameraStream, CaptureConfig
from faceauth.exceptions import PermissionDenied, StreamUnavailable


@pytest.fixture
def capture():
    """Mock VideoCapture that opens and returns one blank frame per read."""
    cap = MagicMock()
    cap.isOpened.return_value = True
    cap.read.return_value = (True, np.zeros((480, 640, 3), dtype=np.uint8))
    with patch("faceauth.camera.cv2.VideoCapture", return_value=cap) as factory:
        factory.instance = cap
        yield factory


class TestCaptureConfig:
    def test_defaults(self):
        config = CaptureConfig.from_config({})
        assert (config.width, config.height, config.fps, config.device_id) == (640, 480, 30, 0)

    def test_from_config(self):
        config = CaptureConfig.from_config({"device_id": 2, "width": 1280, "height": 720})
        assert config.device_id == 2
        assert config.width == 1280
        assert config.fps == 30


class TestCameraStream:
    """Tests for CameraStream."""

    def test_open_sets_resolution(self, capture):
        stream = CameraStream(CaptureConfig(width=320, height=240, fps=15, device_id=99))
        with patch("faceauth.camera.os.path.exists", return_value=False):
            stream.open()

        capture.assert_called_once_with(99)
        capture.instance.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 320)
        capture.instance.set.assert_any_call(cv2.CAP_PROP_FRAME_HEIGHT, 240)
        capture.instance.set.assert_any_call(cv2.CAP_PROP_FPS, 15)
        assert stream.is_open

    def test_open_failure(self, capture):
        capture.instance.isOpened.return_value = False
        stream = CameraStream(CaptureConfig(device_id=99))

        with patch("faceauth.camera.os.path.exists", return_value=False):
            with pytest.raises(StreamUnavailable):
                stream.open()
        capture.instance.release.assert_called_once()
        assert not stream.is_open

    def test_permission_denied(self, capture):
        stream = CameraStream(CaptureConfig(device_id=0))

        with patch("faceauth.camera.os.path.exists", return_value=True), \
                patch("faceauth.camera.os.access", return_value=False):
            with pytest.raises(PermissionDenied):
                stream.open()
        capture.assert_not_called()

    def test_permission_denied_is_stream_unavailable(self):
        assert issubclass(PermissionDenied, StreamUnavailable)

    def test_read_frame(self, capture):
        with patch("faceauth.camera.os.path.exists", return_value=False):
            with CameraStream() as stream:
                frame = stream.read()

        assert frame.shape == (480, 640, 3)
        capture.instance.release.assert_called_once()

    def test_dropped_frame_returns_none(self, capture):
        capture.instance.read.return_value = (False, None)
        with patch("faceauth.camera.os.path.exists", return_value=False):
            with CameraStream() as stream:
                assert stream.read() is None

    def test_read_when_closed(self):
        assert CameraStream().read() is None

    def test_close_is_idempotent(self, capture):
        stream = CameraStream()
        with patch("faceauth.camera.os.path.exists", return_value=False):
            stream.open()
        stream.close()
        stream.close()

        capture.instance.release.assert_called_once()
        assert not stream.is_open
