"""
Stability Accumulation Module

A single detection is never trusted on its own. The StabilityAccumulator
waits until N consecutive frames score at or above a target, and keeps the
best-scoring sample seen along the way. If the target run never completes
before the timeout, the best sample is still accepted when it reaches a
softer fallback floor.

Both controllers use it:
    - enrollment scores frames by detector quality
    - verification scores frames by similarity to the stored template

Per frame (until a terminal outcome):
    1. cancelled?        -> stop silently
    2. timeout elapsed?  -> success(best) if best >= floor, else error
    3. measure the frame, remember the best sample
    4. score >= target   -> consecutive += 1, success(best) once it reaches N
       otherwise         -> consecutive = 0 (best is kept)

Usage:
    accumulator = StabilityAccumulator(
        measure=lambda frame: ...,
        config=StabilityConfig.from_config(get_enrollment_config()),
        on_success=lambda best: print(best.score),
        on_error=lambda message, best: print(message),
    )
    FrameScheduler(camera, accumulator.token).run(accumulator)
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import numpy as np

from faceauth.exceptions import DetectorError
from faceauth.scheduler import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class Sample:
    """
    One scored frame.

    Attributes:
        score: Value compared against the target (0-100).
        descriptor: Descriptor captured on this frame.
        confidence: Detector quality for this frame (0-100).
    """

    score: float
    descriptor: Optional[np.ndarray] = None
    confidence: float = 0.0


@dataclass
class StabilityConfig:
    """
    Parameters of one accumulation run.

    Attributes:
        required_stable_frames: Consecutive passing frames needed.
        quality_target: Minimum score for a frame to count as passing.
        fallback_floor: Minimum best score accepted at timeout.
        timeout_ms: Wall-clock budget for the run.
        fallback_min_run: Longest passing run required for a timeout
                          success (0 = any best sample above the floor).
    """

    required_stable_frames: int = 15
    quality_target: float = 85.0
    fallback_floor: float = 70.0
    timeout_ms: int = 45000
    fallback_min_run: int = 0

    def __post_init__(self):
        if self.required_stable_frames < 1:
            raise ValueError(f"required_stable_frames must be >= 1, got {self.required_stable_frames}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.fallback_min_run < 0:
            raise ValueError(f"fallback_min_run must be >= 0, got {self.fallback_min_run}")

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **overrides) -> "StabilityConfig":
        """Build from a config section; keyword overrides win."""
        if config is None:
            config = {}

        values = {
            "required_stable_frames": int(config.get("required_stable_frames", cls.required_stable_frames)),
            "quality_target": float(config.get("quality_target", cls.quality_target)),
            "fallback_floor": float(config.get("fallback_floor", cls.fallback_floor)),
            "timeout_ms": int(config.get("timeout_ms", cls.timeout_ms)),
            "fallback_min_run": int(config.get("fallback_min_run", cls.fallback_min_run)),
        }
        values.update(overrides)
        return cls(**values)


class AccumulatorStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (AccumulatorStatus.SUCCEEDED, AccumulatorStatus.FAILED, AccumulatorStatus.CANCELLED)


class StabilityAccumulator:
    """
    Waits for a stable run of good frames.

    Args:
        measure: Turns a frame into a Sample, or None when there is nothing
                 to score (no face). May raise DetectorError.
        config: StabilityConfig for this run.
        on_progress: Called every processed frame with the Sample or None.
        on_success: Called once with the best Sample.
        on_error: Called once with a message and the best Sample (or None).
        clock: Monotonic clock in seconds, injectable for tests.
        token: Cancellation token; a fresh one is created if omitted.
        label: Name used in log messages.
    """

    def __init__(
        self,
        measure: Callable[[Any], Optional[Sample]],
        config: StabilityConfig,
        on_progress: Optional[Callable[[Optional[Sample]], None]] = None,
        on_success: Optional[Callable[[Sample], None]] = None,
        on_error: Optional[Callable[[str, Optional[Sample]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        token: Optional[CancellationToken] = None,
        label: str = "accumulator",
    ):
        self._measure = measure
        self.config = config
        self._on_progress = on_progress
        self._on_success = on_success
        self._on_error = on_error
        self._clock = clock
        self.token = token or CancellationToken()
        self.label = label

        self._status = AccumulatorStatus.PENDING
        self._started_at: Optional[float] = None
        self._elapsed_ms = 0.0

        self.best: Optional[Sample] = None
        self.consecutive = 0
        self.longest_run = 0
        self.frames_processed = 0
        self.resolved_by_timeout = False
        self.error_message: Optional[str] = None

    @property
    def status(self) -> AccumulatorStatus:
        return self._status

    @property
    def done(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def elapsed_ms(self) -> float:
        return self._elapsed_ms

    def start(self) -> None:
        """Start the timeout clock. Called implicitly by the first frame."""
        if self._status != AccumulatorStatus.PENDING:
            return
        self._status = AccumulatorStatus.RUNNING
        self._started_at = self._clock()
        logger.debug(
            f"[{self.label}] started: need {self.config.required_stable_frames} frames "
            f">= {self.config.quality_target}, floor {self.config.fallback_floor}, "
            f"timeout {self.config.timeout_ms}ms"
        )

    def cancel(self) -> None:
        """Stop immediately; no further callbacks fire."""
        self.token.cancel()
        if not self.done:
            self._status = AccumulatorStatus.CANCELLED
            logger.info(f"[{self.label}] cancelled after {self.frames_processed} frames")

    def process_frame(self, frame: Any) -> bool:
        """
        Process one frame.

        Returns:
            True once the run has reached a terminal status.
        """
        if self.done:
            return True
        if self.token.cancelled:
            self._status = AccumulatorStatus.CANCELLED
            return True

        self.start()
        self._elapsed_ms = (self._clock() - self._started_at) * 1000.0

        if self._elapsed_ms >= self.config.timeout_ms:
            self._resolve_timeout()
            return True

        try:
            sample = self._measure(frame)
        except DetectorError as e:
            logger.error(f"[{self.label}] detector failed: {e}")
            self._fail(f"Face detector error: {e}")
            return True

        self.frames_processed += 1

        if sample is not None:
            sample.score = float(max(0.0, min(100.0, sample.score)))
            if self.best is None or sample.score > self.best.score:
                self.best = sample

        if sample is not None and sample.score >= self.config.quality_target:
            self.consecutive += 1
            self.longest_run = max(self.longest_run, self.consecutive)
        else:
            self.consecutive = 0

        if self._on_progress is not None:
            self._on_progress(sample)

        # A progress callback may have cancelled the run
        if self.token.cancelled:
            self._status = AccumulatorStatus.CANCELLED
            return True

        if self.consecutive >= self.config.required_stable_frames:
            logger.info(
                f"[{self.label}] {self.consecutive} stable frames reached, "
                f"best score {self.best.score:.0f}"
            )
            self._succeed()
            return True

        return False

    def _resolve_timeout(self) -> None:
        self.resolved_by_timeout = True
        best = self.best

        if (
            best is not None
            and best.score >= self.config.fallback_floor
            and self.longest_run >= self.config.fallback_min_run
        ):
            logger.warning(
                f"[{self.label}] timeout after {self._elapsed_ms:.0f}ms, "
                f"using best result {best.score:.0f}"
            )
            self._succeed()
            return

        if best is None:
            message = "No face detected before the timeout"
        elif best.score >= self.config.fallback_floor:
            message = (
                f"Best score {best.score:.0f} was not held for "
                f"{self.config.fallback_min_run} consecutive frames before the timeout"
            )
        else:
            message = (
                f"Best score {best.score:.0f} below the minimum of "
                f"{self.config.fallback_floor:.0f} before the timeout"
            )
        logger.warning(f"[{self.label}] {message}")
        self._fail(message)

    def _succeed(self) -> None:
        self._status = AccumulatorStatus.SUCCEEDED
        if self._on_success is not None:
            self._on_success(self.best)

    def _fail(self, message: str) -> None:
        self._status = AccumulatorStatus.FAILED
        self.error_message = message
        if self._on_error is not None:
            self._on_error(message, self.best)
