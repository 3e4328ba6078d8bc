"""
Enrollment Controller

Guides an employee through a fixed sequence of six pose-capture steps.
Each step runs one StabilityAccumulator over detector quality; the best
descriptor of every step is kept, and when all steps are complete the six
descriptors are averaged into a single template.

State machine:

    IDLE -> STEP_ACTIVE(i) -> STEP_COMPLETED(i) -> STEP_ACTIVE(i+1) ...
                 |                                  -> ALL_COMPLETE
                 v                                  -> FINALIZING -> DONE
           STEP_FAILED(i) --retry_step()--> STEP_ACTIVE(i)

    CANCELLED is reachable from every non-terminal state.
    FAILED is entered only if finalization or persistence fails.

A failed step is never retried automatically and never skipped; the caller
decides whether to call retry_step().

Usage:
    controller = EnrollmentController(
        detector,
        employee_id="emp_001",
        template_manager=get_template_manager(),
        on_complete=lambda template, score: print(score),
        on_error=print,
    )
    controller.start()
    with CameraStream() as camera:
        controller.run(camera)
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from faceauth.exceptions import InvalidSessionState
from faceauth.face_detector import FaceDetector
from faceauth.scheduler import CancellationToken, FrameScheduler
from faceauth.stability import Sample, StabilityAccumulator, StabilityConfig
from faceauth.template_store import average, serialize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingStep:
    """One pose-capture step of the enrollment sequence."""

    index: int
    instruction: str
    completed: bool = False
    captured_score: Optional[float] = None


TRAINING_STEPS: Tuple[TrainingStep, ...] = (
    TrainingStep(0, "Look straight at the camera"),
    TrainingStep(1, "Tilt your head up"),
    TrainingStep(2, "Tilt your head down"),
    TrainingStep(3, "Turn your head to the left"),
    TrainingStep(4, "Turn your head to the right"),
    TrainingStep(5, "Smile"),
)


class EnrollmentState(Enum):
    IDLE = "idle"
    STEP_ACTIVE = "step_active"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    ALL_COMPLETE = "all_complete"
    FINALIZING = "finalizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (EnrollmentState.DONE, EnrollmentState.CANCELLED, EnrollmentState.FAILED)


@dataclass
class EnrollmentSession:
    """Ephemeral per-attempt state. Never persisted."""

    steps: List[TrainingStep]
    current_step_index: int = 0
    step_descriptors: List[np.ndarray] = field(default_factory=list)
    step_scores: List[float] = field(default_factory=list)


@dataclass
class EnrollmentResult:
    """Outcome of a completed enrollment."""

    template: str
    training_score: float
    step_scores: List[float]


class EnrollmentController:
    """
    Drives the multi-step enrollment state machine.

    Args:
        detector: Face detection capability.
        config: Stability parameters per step. Defaults to 15 frames at
                quality >= 85, fallback floor 70, 45 s timeout.
        steps: Ordered training steps (configuration).
        employee_id: Key for the stored template.
        template_manager: Persistence collaborator with put_template().
                          If None the template is only reported, not stored.
        on_progress: Called per frame with the detector quality (0 if no face).
        on_step_complete: Called with the completed TrainingStep.
        on_complete: Called with (serialized_template, training_score).
        on_error: Called with a message when a step fails.
        on_cancel: Called once when the session is cancelled.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        detector: FaceDetector,
        config: Optional[StabilityConfig] = None,
        steps: Sequence[TrainingStep] = TRAINING_STEPS,
        employee_id: Optional[str] = None,
        template_manager: Any = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_step_complete: Optional[Callable[[TrainingStep], None]] = None,
        on_complete: Optional[Callable[[str, float], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if len(steps) == 0:
            raise ValueError("Enrollment needs at least one training step")

        self.detector = detector
        self.config = config or StabilityConfig()
        self.steps = tuple(steps)
        self.employee_id = employee_id
        self.template_manager = template_manager

        self._on_progress = on_progress
        self._on_step_complete = on_step_complete
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._clock = clock

        self.token = CancellationToken()
        self.session: Optional[EnrollmentSession] = None
        self.result: Optional[EnrollmentResult] = None
        self.last_error: Optional[str] = None
        self.history: List[Tuple[EnrollmentState, Optional[int]]] = []

        self._state = EnrollmentState.IDLE
        self._step_index: Optional[int] = None
        self._accumulator: Optional[StabilityAccumulator] = None

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def current_step(self) -> Optional[TrainingStep]:
        """The step being captured (or last captured), from the live session."""
        if self.session is None or self._step_index is None:
            return None
        return self.session.steps[self._step_index]

    @property
    def done(self) -> bool:
        """True when no more frames are needed without caller action."""
        return self._state in TERMINAL_STATES or self._state == EnrollmentState.STEP_FAILED

    def _set_state(self, state: EnrollmentState, step_index: Optional[int] = None) -> None:
        self._state = state
        self.history.append((state, step_index))
        logger.debug(f"Enrollment state -> {state.value}" + (f"({step_index})" if step_index is not None else ""))

    def start(self) -> None:
        """
        Begin enrollment at the first step.

        Raises:
            InvalidSessionState: If the controller was already started.
            DetectorUnavailable: If the detector cannot be initialized.
        """
        if self._state != EnrollmentState.IDLE:
            raise InvalidSessionState(f"Enrollment already started (state={self._state.value})")

        self.detector.ensure_ready()

        self.session = EnrollmentSession(steps=[replace(step) for step in self.steps])
        logger.info(
            f"Enrollment started for {self.employee_id or 'anonymous'} "
            f"({len(self.steps)} steps)"
        )
        self._activate_step(0)

    def retry_step(self) -> None:
        """
        Restart the step that failed. Earlier steps are kept.

        Raises:
            InvalidSessionState: If no step is currently failed.
        """
        if self._state != EnrollmentState.STEP_FAILED:
            raise InvalidSessionState(f"No failed step to retry (state={self._state.value})")

        logger.info(f"Retrying enrollment step {self._step_index + 1}/{len(self.steps)}")
        self._activate_step(self._step_index)

    def cancel(self) -> None:
        """Abort the session. No-op once a terminal state is reached."""
        if self._state in TERMINAL_STATES:
            return

        if self._accumulator is not None:
            self._accumulator.cancel()
        self.token.cancel()

        self.session = None
        self._set_state(EnrollmentState.CANCELLED, self._step_index)
        logger.info("Enrollment cancelled")

        if self._on_cancel is not None:
            self._on_cancel()

    def process_frame(self, frame: Any) -> bool:
        """
        Feed one frame to the active step.

        Returns:
            True when the controller needs no more frames for now.
        """
        if self.token.cancelled and self._state not in TERMINAL_STATES:
            self.cancel()
            return True

        if self._state == EnrollmentState.STEP_ACTIVE:
            self._accumulator.process_frame(frame)

        return self.done

    def run(self, frame_source: Any, frame_interval_ms: int = 0) -> EnrollmentState:
        """
        Pull frames until the session finishes, a step fails, or it is cancelled.

        Starts the session first if it is still IDLE.

        Returns:
            The state reached.
        """
        if self._state == EnrollmentState.IDLE:
            self.start()

        FrameScheduler(frame_source, self.token, frame_interval_ms).run(self)

        if self.token.cancelled and self._state not in TERMINAL_STATES:
            self.cancel()

        return self._state

    def _activate_step(self, index: int) -> None:
        self._step_index = index
        self.session.current_step_index = index
        step = self.session.steps[index]

        self._accumulator = StabilityAccumulator(
            measure=self._measure,
            config=self.config,
            on_progress=self._handle_progress,
            on_success=self._handle_step_success,
            on_error=self._handle_step_error,
            clock=self._clock,
            token=self.token,
            label=f"enroll step {index + 1}",
        )
        self._set_state(EnrollmentState.STEP_ACTIVE, index)
        logger.info(f"Step {index + 1}/{len(self.steps)}: {step.instruction}")
        self._accumulator.start()

    def _measure(self, frame: Any) -> Optional[Sample]:
        detection = self.detector.detect(frame)
        if detection is None:
            return None
        return Sample(
            score=detection.quality,
            descriptor=detection.descriptor,
            confidence=detection.quality,
        )

    def _handle_progress(self, sample: Optional[Sample]) -> None:
        if self._on_progress is not None:
            self._on_progress(sample.score if sample is not None else 0.0)

    def _handle_step_success(self, best: Sample) -> None:
        index = self._step_index
        session = self.session

        session.step_descriptors.append(best.descriptor)
        session.step_scores.append(best.score)
        session.steps[index] = replace(session.steps[index], completed=True, captured_score=best.score)

        self._set_state(EnrollmentState.STEP_COMPLETED, index)
        logger.info(f"Step {index + 1}/{len(self.steps)} completed with score {best.score:.0f}")

        if self._on_step_complete is not None:
            self._on_step_complete(session.steps[index])

        # The step callback may have cancelled the session
        if self._state != EnrollmentState.STEP_COMPLETED:
            return

        if index + 1 < len(self.steps):
            self._activate_step(index + 1)
        else:
            self._finalize()

    def _handle_step_error(self, message: str, best: Optional[Sample]) -> None:
        self.last_error = message
        self._set_state(EnrollmentState.STEP_FAILED, self._step_index)
        logger.error(f"Step {self._step_index + 1}/{len(self.steps)} failed: {message}")

        if self._on_error is not None:
            self._on_error(message)

    def _finalize(self) -> None:
        session = self.session
        self._set_state(EnrollmentState.ALL_COMPLETE)
        self._set_state(EnrollmentState.FINALIZING)

        try:
            template = average(session.step_descriptors)
            mean_score = sum(session.step_scores) / len(session.step_scores)
            # Two decimals, halves rounded up
            training_score = math.floor(mean_score * 100 + 0.5) / 100
            serialized = serialize(template)

            if self.template_manager is not None and self.employee_id is not None:
                self.template_manager.put_template(self.employee_id, serialized, training_score)
        except Exception as e:
            logger.exception(f"Enrollment finalization failed: {e}")
            self.last_error = f"Failed to process face data: {e}"
            self._set_state(EnrollmentState.FAILED)
            if self._on_error is not None:
                self._on_error(self.last_error)
            return

        self.result = EnrollmentResult(
            template=serialized,
            training_score=training_score,
            step_scores=list(session.step_scores),
        )
        self.session = None
        self._set_state(EnrollmentState.DONE)
        logger.info(
            f"Enrollment complete: {len(session.step_scores)} steps, "
            f"training score {training_score}"
        )

        if self._on_complete is not None:
            self._on_complete(serialized, training_score)
