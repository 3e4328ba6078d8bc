"""
Face Detection Module

The engine treats face detection as an external capability with a single
operation: given one frame, return at most one detection carrying a 128-D
descriptor and a 0-100 quality score. Any backend that implements
FaceDetector.detect() can be swapped in without touching the controllers.

Backends:
    - FaceRecognitionDetector: dlib ResNet encodings via the face_recognition
      library, quality estimated from face size, border margin and sharpness.
    - StubFaceDetector: replays scripted detections (tests, offline demos).

DetectorService wraps a backend factory and loads it exactly once, exposing
an explicit state (UNINITIALIZED, LOADING, READY, FAILED) and an awaitable
readiness check.

Usage:
    from faceauth.face_detector import get_detector_service

    detector = get_detector_service()
    detector.ensure_ready()
    detection = detector.detect(frame)
    if detection:
        print(detection.quality, detection.descriptor.shape)
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import cv2
import numpy as np

from faceauth.exceptions import DetectorError, DetectorUnavailable

logger = logging.getLogger(__name__)


@dataclass
class FaceDetection:
    """
    Data class to hold one detection result.

    Attributes:
        descriptor: Face descriptor, float64 vector (128 components for
                    the face_recognition backend). Read-only.
        quality: Detection quality score, clamped to [0, 100].
        bbox: Optional bounding box (x1, y1, x2, y2) in pixels.
    """

    descriptor: np.ndarray
    quality: float
    bbox: Optional[Tuple[int, int, int, int]] = None

    def __post_init__(self):
        descriptor = np.array(self.descriptor, dtype=np.float64).ravel()
        descriptor.setflags(write=False)
        self.descriptor = descriptor
        self.quality = float(max(0.0, min(100.0, self.quality)))


class FaceDetector(ABC):
    """
    Abstract face detection capability.

    Implementations must be safe to call repeatedly on consecutive frames
    and return None whenever no usable face is present.
    """

    @abstractmethod
    def detect(self, frame: Any) -> Optional[FaceDetection]:
        """
        Detect a single face in a frame.

        Args:
            frame: BGR image as numpy array (H, W, 3), or any frame object
                   the backend understands. None means the source
                   dropped the frame.

        Returns:
            FaceDetection, or None if no face was found (including dropped
            or empty frames).

        Raises:
            DetectorError: If the backend itself failed.
        """
        pass

    def ensure_ready(self, timeout: Optional[float] = None) -> None:
        """Block until the detector can be used. Plain backends are always ready."""
        return None


class StubFaceDetector(FaceDetector):
    """
    Replays scripted detections.

    Args:
        script: Either a callable taking the zero-based call index and
                returning Optional[FaceDetection], or an iterable of
                Optional[FaceDetection] consumed one per call.
        default: Returned once an iterable script is exhausted.
    """

    def __init__(
        self,
        script: Union[Callable[[int], Optional[FaceDetection]], Iterable[Optional[FaceDetection]]],
        default: Optional[FaceDetection] = None,
    ):
        if callable(script):
            self._func = script
            self._iter = None
        else:
            self._func = None
            self._iter = iter(script)
        self.default = default
        self.calls = 0

    def detect(self, frame: Any) -> Optional[FaceDetection]:
        index = self.calls
        self.calls += 1

        if self._func is not None:
            return self._func(index)
        return next(self._iter, self.default)


class FaceRecognitionDetector(FaceDetector):
    """
    Face detection and 128-D encoding with the face_recognition library.

    The library (and its dlib models) is imported on load(), so a missing
    installation surfaces as DetectorUnavailable rather than ImportError
    at module import time.

    Args:
        config: Dictionary with optional keys:
            - descriptor_dim: Expected encoding length (default 128)
            - model: Location model, "hog" or "cnn" (default "hog")
            - upsample: number_of_times_to_upsample (default 1)
            - num_jitters: Encoding re-samples (default 1)
            - edge_margin: Border margin in pixels (default 5)
            - sharpness_reference: Laplacian variance treated as sharp (default 500)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}

        self.descriptor_dim = config.get("descriptor_dim", 128)
        self.model = config.get("model", "hog")
        self.upsample = config.get("upsample", 1)
        self.num_jitters = config.get("num_jitters", 1)
        self.edge_margin = config.get("edge_margin", 5)
        self.sharpness_reference = float(config.get("sharpness_reference", 500.0))

        self._fr = None

    @property
    def is_loaded(self) -> bool:
        return self._fr is not None

    def load(self) -> None:
        """Import the face_recognition library and its models."""
        if self._fr is not None:
            return

        try:
            import face_recognition
        except ImportError as e:
            raise DetectorUnavailable(
                "face_recognition is not installed. Run: pip install face_recognition"
            ) from e

        self._fr = face_recognition
        logger.info(f"FaceRecognitionDetector loaded (model={self.model}, upsample={self.upsample})")

    def detect(self, frame: Optional[np.ndarray]) -> Optional[FaceDetection]:
        if self._fr is None:
            self.load()

        # Dropped or empty frames count as frames without a face
        if frame is None or np.size(frame) == 0:
            return None

        frame = np.asarray(frame)
        if frame.ndim != 3 or frame.shape[2] != 3:
            raise DetectorError(f"Expected a BGR frame of shape (H, W, 3), got {frame.shape}")

        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            locations = self._fr.face_locations(
                rgb, number_of_times_to_upsample=self.upsample, model=self.model
            )
            if not locations:
                return None

            # Keep only the largest face; locations are (top, right, bottom, left)
            top, right, bottom, left = max(
                locations, key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3])
            )
            encodings = self._fr.face_encodings(
                rgb, [(top, right, bottom, left)], num_jitters=self.num_jitters
            )
        except cv2.error as e:
            raise DetectorError(f"Frame could not be processed: {e}") from e

        if not encodings:
            return None

        encoding = np.asarray(encodings[0], dtype=np.float64)
        if encoding.shape[0] != self.descriptor_dim:
            raise DetectorError(
                f"Backend produced {encoding.shape[0]}-D descriptor, expected {self.descriptor_dim}"
            )

        bbox = (int(left), int(top), int(right), int(bottom))
        quality = self.estimate_quality(frame, bbox)

        return FaceDetection(descriptor=encoding, quality=quality, bbox=bbox)

    def estimate_quality(self, frame: np.ndarray, bbox: Tuple[int, int, int, int]) -> float:
        """
        Estimate a 0-100 quality score for a detected face.

        Combines three signals:
        1. Whether the face box stays clear of the image border
        2. Face size relative to the image (small faces score lower)
        3. Sharpness of the face region (Laplacian variance)

        Args:
            frame: Original BGR image.
            bbox: Face box (x1, y1, x2, y2).

        Returns:
            Quality score rounded to an integer value in [0, 100].
        """
        h, w = frame.shape[:2]
        x1, y1, x2, y2 = bbox
        margin = self.edge_margin

        in_bounds = x1 >= margin and y1 >= margin and x2 <= w - margin and y2 <= h - margin
        confidence = 0.95 if in_bounds else 0.7

        size_ratio = ((x2 - x1) * (y2 - y1)) / float(w * h)
        if size_ratio < 0.01:
            confidence *= 0.5
        elif size_ratio < 0.05:
            confidence *= 0.8

        face = frame[max(0, y1):min(h, y2), max(0, x1):min(w, x2)]
        sharpness = min(1.0, self._compute_blur_score(face) / self.sharpness_reference)

        quality = 100.0 * confidence * (0.5 + 0.5 * sharpness)
        return float(round(max(0.0, min(100.0, quality))))

    @staticmethod
    def _compute_blur_score(image: np.ndarray) -> float:
        """Laplacian variance of an image region (higher = sharper)."""
        if image.size == 0:
            return 0.0
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        return float(cv2.Laplacian(gray, cv2.CV_64F).var())


class DetectorState(Enum):
    """Lifecycle of a DetectorService."""

    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class DetectorService(FaceDetector):
    """
    Initialize-once wrapper around a detector backend.

    The factory is called at most once per initialization attempt. Loading
    may happen synchronously (initialize) or on a background thread
    (initialize_async); either way callers wait with wait_until_ready() or
    ensure_ready().

    Args:
        factory: Zero-argument callable returning a ready FaceDetector.
                 Any exception it raises moves the service to FAILED.
    """

    def __init__(self, factory: Callable[[], FaceDetector]):
        self._factory = factory
        self._detector: Optional[FaceDetector] = None
        self._state = DetectorState.UNINITIALIZED
        self._error: Optional[str] = None
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        """Failure message when state is FAILED."""
        return self._error

    def _claim_loading(self) -> bool:
        with self._lock:
            if self._state != DetectorState.UNINITIALIZED:
                return False
            self._state = DetectorState.LOADING
            self._done.clear()
            return True

    def _load(self) -> None:
        logger.info("Loading face detector...")
        try:
            detector = self._factory()
        except Exception as e:
            logger.error(f"Face detector failed to initialize: {e}")
            with self._lock:
                self._error = str(e) or e.__class__.__name__
                self._state = DetectorState.FAILED
        else:
            with self._lock:
                self._detector = detector
                self._state = DetectorState.READY
            logger.info("Face detector ready")
        finally:
            self._done.set()

    def initialize(self) -> DetectorState:
        """Load the backend on the calling thread (no-op after the first call)."""
        if self._claim_loading():
            self._load()
        else:
            self._done.wait()
        return self._state

    def initialize_async(self) -> DetectorState:
        """Start loading on a background thread and return immediately."""
        if self._claim_loading():
            thread = threading.Thread(target=self._load, name="detector-loader", daemon=True)
            thread.start()
        return self._state

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for loading to finish.

        Returns:
            True if the detector is READY, False on failure or timeout.
        """
        if self._state == DetectorState.UNINITIALIZED:
            return False
        self._done.wait(timeout)
        return self._state == DetectorState.READY

    def ensure_ready(self, timeout: Optional[float] = None) -> None:
        """
        Initialize if needed and wait until the detector is usable.

        Raises:
            DetectorUnavailable: If loading failed or did not finish in time.
        """
        if self._state == DetectorState.UNINITIALIZED:
            self.initialize()

        if not self.wait_until_ready(timeout):
            if self._state == DetectorState.FAILED:
                raise DetectorUnavailable(f"Face detector failed to initialize: {self._error}")
            raise DetectorUnavailable("Face detector is still loading")

    def reset(self) -> None:
        """Forget a failed initialization so the next ensure_ready() retries."""
        with self._lock:
            if self._state == DetectorState.LOADING:
                return
            self._detector = None
            self._error = None
            self._state = DetectorState.UNINITIALIZED
            self._done.clear()

    def detect(self, frame: Any) -> Optional[FaceDetection]:
        if self._state != DetectorState.READY or self._detector is None:
            raise DetectorUnavailable(f"Face detector is not ready (state={self._state.value})")
        return self._detector.detect(frame)


def create_detector(config: Optional[Dict[str, Any]] = None) -> FaceDetector:
    """
    Build and load the detector backend named in the config.

    Raises:
        DetectorUnavailable: For unknown backends or load failures.
    """
    if config is None:
        config = {}

    backend = config.get("backend", "face_recognition")

    if backend == "face_recognition":
        detector = FaceRecognitionDetector(config)
        detector.load()
        return detector
    if backend == "stub":
        logger.warning("Using stub face detector; no real detection will happen")
        return StubFaceDetector([])

    raise DetectorUnavailable(f"Unknown detector backend: {backend}")


# Singleton instance for the service
_service_instance: Optional[DetectorService] = None


def get_detector_service(config: Optional[Dict[str, Any]] = None) -> DetectorService:
    """
    Get or create the process-wide DetectorService.

    Args:
        config: Detector configuration. If None, uses the "detector"
                section from config.yaml.

    Returns:
        The shared DetectorService (not yet initialized on first call).
    """
    global _service_instance

    if _service_instance is None:
        if config is None:
            from faceauth.config import get_detector_config
            config = get_detector_config()

        _service_instance = DetectorService(lambda: create_detector(config))

    return _service_instance
