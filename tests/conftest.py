"""
Shared fixtures for the engine tests.

Sessions are driven with a fake monotonic clock that advances a fixed
amount on every reading, so 45 s and 20 s timeouts run instantly and
deterministically.
"""

import os
import sys
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceauth.config import set_config
from faceauth.face_detector import FaceDetection, StubFaceDetector


class FakeClock:
    """Monotonic clock returning t, then t + step, then t + 2*step, ..."""

    def __init__(self, step: float = 0.125, start: float = 1000.0):
        self.step = step
        self.now = start
        self.calls = 0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        self.calls += 1
        return value


class FrameSource:
    """Frame source yielding blank frames; counts reads."""

    def __init__(self):
        self.reads = 0
        self._frame = np.zeros((48, 64, 3), dtype=np.uint8)

    def read(self):
        self.reads += 1
        return self._frame


@pytest.fixture
def clock():
    """Fake clock advancing 125 ms per reading (exact in binary floating point)."""
    return FakeClock(step=0.125)


@pytest.fixture
def frames():
    return FrameSource()


@pytest.fixture
def descriptor():
    """A realistic-looking 128-D descriptor (values around +-0.1)."""
    rng = np.random.default_rng(42)
    return rng.normal(0.0, 0.1, 128)


@pytest.fixture
def make_detector():
    """Factory for a stub detector returning the same detection on every frame."""

    def _make(quality, descriptor=None):
        if descriptor is None:
            descriptor = np.full(128, 0.05)
        return StubFaceDetector(lambda index: FaceDetection(descriptor=descriptor, quality=quality))

    return _make


@pytest.fixture
def config_override():
    """Install an in-memory configuration; the real one is restored afterwards."""
    yield set_config
    set_config(None)


def offset_descriptor(descriptor, dist):
    """Return a copy of descriptor moved by exactly dist along the first axis."""
    moved = np.array(descriptor, dtype=np.float64)
    moved[0] += dist
    return moved


@pytest.fixture
def at_distance():
    return offset_descriptor


@pytest.fixture
def fake_fr():
    """Mock face_recognition module installed in sys.modules."""
    fake = MagicMock()
    fake.face_locations.return_value = [(20, 120, 120, 20)]
    fake.face_encodings.return_value = [np.full(128, 0.1)]
    with patch.dict(sys.modules, {"face_recognition": fake}):
        yield fake
