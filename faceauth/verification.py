"""
Verification Controller

Compares live descriptors against one stored template until a sustained
pass, a reject, or a timeout. A single matching frame is never enough:
the similarity must stay at or above the threshold for a run of
consecutive frames.

State machine:

    IDLE -> VERIFYING -> ACCEPTED | REJECTED
    CANCELLED from VERIFYING, FAILED on a detector error mid-run.

A timeout is never an error. It resolves to ACCEPTED when the best
similarity seen reached the threshold, otherwise REJECTED.

Usage:
    controller = VerificationController.for_employee(
        detector, get_template_manager(), "emp_001",
        on_complete=lambda result: print(result.accepted),
    )
    with CameraStream() as camera:
        result = controller.run(camera)
"""

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from faceauth.config import get_threshold
from faceauth.exceptions import InvalidSessionState, TemplateNotFound
from faceauth.face_detector import FaceDetector
from faceauth.scheduler import CancellationToken, FrameScheduler
from faceauth.similarity import SimilarityCalibration, compare
from faceauth.stability import Sample, StabilityAccumulator, StabilityConfig
from faceauth.template_store import DESCRIPTOR_DIM, deserialize

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_FRAMES = 10
DEFAULT_TIMEOUT_MS = 20000
DEFAULT_TIMEOUT_MIN_RUN = 1


class VerificationState(Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (
    VerificationState.ACCEPTED,
    VerificationState.REJECTED,
    VerificationState.CANCELLED,
    VerificationState.FAILED,
)


@dataclass
class VerificationResult:
    """
    Outcome of a verification session.

    Attributes:
        accepted: Final decision.
        best_similarity: Highest similarity seen (0-100).
        best_confidence: Detector quality on the best-similarity frame.
        threshold: Threshold the session ran with.
        frames_processed: Frames measured before the decision.
        resolved_by_timeout: True if the decision was made at the timeout.
        elapsed_ms: Time from start to decision.
    """

    accepted: bool
    best_similarity: int
    best_confidence: float
    threshold: int
    frames_processed: int
    resolved_by_timeout: bool
    elapsed_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VerificationController:
    """
    Drives one verification session against a stored template.

    Args:
        detector: Face detection capability.
        stored_template: Serialized template (any supported format).
        threshold: Similarity threshold. If None, read from configuration
                   when the session starts.
        required_stable_frames: Consecutive passing frames for acceptance.
        timeout_ms: Session time budget.
        timeout_min_run: Longest passing run needed to accept at timeout.
        calibration: Distance-to-similarity mapping; default curve if None.
        employee_id: Used for logging and the audit trail.
        template_manager: If given, the outcome is written via log_verification().
        on_progress: Called per frame with (confidence, similarity); (0, 0)
                     when no face is found.
        on_complete: Called with the VerificationResult on ACCEPTED/REJECTED.
        on_error: Called with a message on a detector failure.
        on_cancel: Called once when the session is cancelled.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        detector: FaceDetector,
        stored_template: str,
        threshold: Optional[int] = None,
        required_stable_frames: int = DEFAULT_REQUIRED_FRAMES,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        timeout_min_run: int = DEFAULT_TIMEOUT_MIN_RUN,
        calibration: Optional[SimilarityCalibration] = None,
        descriptor_dim: int = DESCRIPTOR_DIM,
        employee_id: Optional[str] = None,
        template_manager: Any = None,
        on_progress: Optional[Callable[[float, int], None]] = None,
        on_complete: Optional[Callable[[VerificationResult], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.detector = detector
        self.stored_template = stored_template
        self.threshold = threshold
        self.required_stable_frames = required_stable_frames
        self.timeout_ms = timeout_ms
        self.timeout_min_run = timeout_min_run
        self.calibration = calibration
        self.descriptor_dim = descriptor_dim
        self.employee_id = employee_id
        self.template_manager = template_manager

        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._clock = clock

        self.token = CancellationToken()
        self.result: Optional[VerificationResult] = None
        self.last_error: Optional[str] = None
        self.history: List[VerificationState] = []

        self._state = VerificationState.IDLE
        self._reference: Optional[np.ndarray] = None
        self._accumulator: Optional[StabilityAccumulator] = None

    @classmethod
    def for_employee(
        cls,
        detector: FaceDetector,
        template_manager: Any,
        employee_id: str,
        config: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> "VerificationController":
        """
        Build a controller for an enrolled employee.

        Args:
            config: "verification" config section supplying the frame count,
                    timeout and minimum run. Keyword arguments win.

        Raises:
            TemplateNotFound: If the employee has no stored template.
        """
        stored = template_manager.get_template(employee_id)
        if stored is None:
            raise TemplateNotFound(f"No face template stored for employee {employee_id}")

        config = config or {}
        options = {
            "required_stable_frames": int(config.get("required_stable_frames", DEFAULT_REQUIRED_FRAMES)),
            "timeout_ms": int(config.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            "timeout_min_run": int(config.get("timeout_min_run", DEFAULT_TIMEOUT_MIN_RUN)),
        }
        options.update(kwargs)

        return cls(
            detector,
            stored,
            employee_id=employee_id,
            template_manager=template_manager,
            **options,
        )

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state in TERMINAL_STATES

    def _set_state(self, state: VerificationState) -> None:
        self._state = state
        self.history.append(state)
        logger.debug(f"Verification state -> {state.value}")

    def start(self) -> None:
        """
        Decode the stored template, read the threshold and begin verifying.

        Raises:
            InvalidSessionState: If the controller was already started.
            MalformedStoredTemplate: If the stored template cannot be decoded.
            DetectorUnavailable: If the detector cannot be initialized.
        """
        if self._state != VerificationState.IDLE:
            raise InvalidSessionState(f"Verification already started (state={self._state.value})")

        self._reference = deserialize(self.stored_template, self.descriptor_dim)

        # Read once; a config change mid-session does not apply
        if self.threshold is None:
            self.threshold = get_threshold()

        self.detector.ensure_ready()

        config = StabilityConfig(
            required_stable_frames=self.required_stable_frames,
            quality_target=float(self.threshold),
            fallback_floor=float(self.threshold),
            timeout_ms=self.timeout_ms,
            fallback_min_run=self.timeout_min_run,
        )
        self._accumulator = StabilityAccumulator(
            measure=self._measure,
            config=config,
            on_progress=self._handle_progress,
            on_success=self._handle_success,
            on_error=self._handle_error,
            clock=self._clock,
            token=self.token,
            label="verify",
        )

        self._set_state(VerificationState.VERIFYING)
        logger.info(
            f"Verification started for {self.employee_id or 'anonymous'} "
            f"(threshold {self.threshold}%, {self.required_stable_frames} frames)"
        )
        self._accumulator.start()

    def cancel(self) -> None:
        """Abort the session. No-op once a terminal state is reached."""
        if self.done:
            return

        if self._accumulator is not None:
            self._accumulator.cancel()
        self.token.cancel()

        self._set_state(VerificationState.CANCELLED)
        logger.info("Verification cancelled")

        if self._on_cancel is not None:
            self._on_cancel()

    def process_frame(self, frame: Any) -> bool:
        """
        Feed one frame to the session.

        Returns:
            True once a terminal state is reached.
        """
        if self.token.cancelled and not self.done:
            self.cancel()
            return True

        if self._state == VerificationState.VERIFYING:
            self._accumulator.process_frame(frame)

        return self.done

    def run(self, frame_source: Any, frame_interval_ms: int = 0) -> Optional[VerificationResult]:
        """
        Pull frames until a decision is made or the session is cancelled.

        Starts the session first if it is still IDLE.

        Returns:
            The VerificationResult, or None if cancelled or failed.
        """
        if self._state == VerificationState.IDLE:
            self.start()

        FrameScheduler(frame_source, self.token, frame_interval_ms).run(self)

        if self.token.cancelled and not self.done:
            self.cancel()

        return self.result

    def _measure(self, frame: Any) -> Optional[Sample]:
        detection = self.detector.detect(frame)
        if detection is None:
            return None

        match = compare(detection.descriptor, self._reference, self.calibration)
        return Sample(
            score=match.score,
            descriptor=detection.descriptor,
            confidence=detection.quality,
        )

    def _handle_progress(self, sample: Optional[Sample]) -> None:
        if self._on_progress is None:
            return
        if sample is None:
            self._on_progress(0.0, 0)
        else:
            self._on_progress(sample.confidence, int(sample.score))

    def _handle_success(self, best: Sample) -> None:
        self._finish(accepted=True)

    def _handle_error(self, message: str, best: Optional[Sample]) -> None:
        if self._accumulator.resolved_by_timeout:
            self._finish(accepted=False)
            return

        self.last_error = message
        self._set_state(VerificationState.FAILED)
        logger.error(f"Verification failed: {message}")

        if self._on_error is not None:
            self._on_error(message)

    def _finish(self, accepted: bool) -> None:
        accumulator = self._accumulator
        best = accumulator.best

        self.result = VerificationResult(
            accepted=accepted,
            best_similarity=int(best.score) if best is not None else 0,
            best_confidence=float(best.confidence) if best is not None else 0.0,
            threshold=self.threshold,
            frames_processed=accumulator.frames_processed,
            resolved_by_timeout=accumulator.resolved_by_timeout,
            elapsed_ms=accumulator.elapsed_ms,
        )
        self._set_state(VerificationState.ACCEPTED if accepted else VerificationState.REJECTED)

        logger.info(
            f"Verification {'accepted' if accepted else 'rejected'} for "
            f"{self.employee_id or 'anonymous'}: similarity {self.result.best_similarity}% "
            f"(threshold {self.threshold}%, {self.result.frames_processed} frames"
            f"{', timeout' if self.result.resolved_by_timeout else ''})"
        )

        if self.template_manager is not None and self.employee_id is not None:
            self.template_manager.log_verification(self.employee_id, self.result)

        if self._on_complete is not None:
            self._on_complete(self.result)
