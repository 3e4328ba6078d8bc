"""
Tests for the VerificationController.

This test suite verifies:
- Acceptance after exactly N stable frames at full similarity
- Rejection at the timeout with the best similarity reported
- Timeout acceptance when the best similarity reached the threshold
- Threshold read once from configuration at start
- Malformed/missing templates, detector failures and cancellation
- The end-to-end enroll-then-verify scenario

Run with: pytest tests/test_verification.py -v
"""

import json
import os
import sys
from unittest.mock import MagicMock

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceauth.enrollment import EnrollmentController, EnrollmentState
from faceauth.exceptions import (
    DetectorError,
    InvalidSessionState,
    MalformedStoredTemplate,
    TemplateNotFound,
)
from faceauth.face_detector import FaceDetection, FaceRecognitionDetector, StubFaceDetector
from faceauth.similarity import SimilarityCalibration
from faceauth.template_manager import TemplateManager
from faceauth.template_store import serialize
from faceauth.verification import (
    VerificationController,
    VerificationResult,
    VerificationState,
)


class Events:
    """Collects controller callbacks."""

    def __init__(self):
        self.progress = []
        self.results = []
        self.errors = []
        self.cancels = 0

    def callbacks(self):
        return {
            "on_progress": lambda confidence, similarity: self.progress.append((confidence, similarity)),
            "on_complete": self.results.append,
            "on_error": self.errors.append,
            "on_cancel": self._cancel,
        }

    def _cancel(self):
        self.cancels += 1


@pytest.fixture
def events():
    return Events()


@pytest.fixture
def stored(descriptor):
    return serialize(descriptor)


@pytest.fixture
def manager(tmp_path):
    manager = TemplateManager(str(tmp_path / "templates.sqlite"))
    yield manager
    manager.close()


# ============================================================
# Decisions
# ============================================================

class TestAcceptance:
    """Sustained matches are accepted."""

    def test_identical_descriptor_accepted_after_10_frames(
        self, make_detector, descriptor, stored, clock, frames, events
    ):
        detector = make_detector(95, descriptor)
        controller = VerificationController(
            detector, stored, threshold=80, clock=clock, **events.callbacks()
        )

        result = controller.run(frames)

        assert controller.state == VerificationState.ACCEPTED
        assert result.accepted
        assert result.best_similarity == 100
        assert result.best_confidence == 95
        assert result.frames_processed == 10
        assert result.threshold == 80
        assert not result.resolved_by_timeout
        assert detector.calls == 10
        assert events.results == [result]
        assert events.progress[0] == (95.0, 100)

    def test_threshold_is_inclusive(self, make_detector, descriptor, stored, at_distance, clock, frames):
        # 2/3 maps to similarity 60
        controller = VerificationController(
            make_detector(95, at_distance(descriptor, 2.0 / 3.0)), stored, threshold=60, clock=clock
        )
        result = controller.run(frames)

        assert result.accepted
        assert result.best_similarity == 60
        assert result.frames_processed == 10

    def test_no_face_resets_run(self, descriptor, stored, clock, frames):
        match = FaceDetection(descriptor, 95)
        script = [match] * 9 + [None] + [match] * 10
        controller = VerificationController(StubFaceDetector(script), stored, threshold=80, clock=clock)

        result = controller.run(frames)

        assert result.accepted
        assert result.frames_processed == 20

    def test_timeout_accepts_best_above_threshold(self, descriptor, stored, at_distance, clock, frames):
        # Similarity 95 on every other frame never forms a run of 10
        near = FaceDetection(at_distance(descriptor, 0.2), 90)
        detector = StubFaceDetector(lambda index: near if index % 2 == 0 else None)
        controller = VerificationController(detector, stored, threshold=80, clock=clock)

        result = controller.run(frames)

        assert result.accepted
        assert result.resolved_by_timeout
        assert result.best_similarity == 95
        assert result.elapsed_ms >= 20000


class TestRejection:
    """Timeouts below the threshold are rejected, never errors."""

    def test_similarity_60_rejected(
        self, make_detector, descriptor, stored, at_distance, clock, frames, events
    ):
        detector = make_detector(95, at_distance(descriptor, 2.0 / 3.0))
        controller = VerificationController(
            detector, stored, threshold=80, clock=clock, **events.callbacks()
        )

        result = controller.run(frames)

        assert controller.state == VerificationState.REJECTED
        assert not result.accepted
        assert result.best_similarity == 60
        assert result.resolved_by_timeout
        assert result.elapsed_ms >= 20000
        assert events.errors == []
        assert events.results == [result]

    def test_oscillating_similarity_rejected(self, descriptor, stored, at_distance, clock, frames):
        low = FaceDetection(at_distance(descriptor, 2.0 / 3.0), 95)
        lower = FaceDetection(at_distance(descriptor, 0.8), 95)
        detector = StubFaceDetector(lambda index: low if index % 2 else lower)
        controller = VerificationController(detector, stored, threshold=80, clock=clock)

        result = controller.run(frames)

        assert not result.accepted
        assert result.best_similarity == 60

    def test_no_face_at_all_rejected(self, stored, clock, frames, events):
        controller = VerificationController(
            StubFaceDetector([]), stored, threshold=80, clock=clock, **events.callbacks()
        )
        result = controller.run(frames)

        assert not result.accepted
        assert result.best_similarity == 0
        assert result.best_confidence == 0.0
        assert events.progress[0] == (0.0, 0)

    def test_timeout_min_run_enforced(self, descriptor, stored, clock, frames):
        match = FaceDetection(descriptor, 95)
        detector = StubFaceDetector(lambda index: match if index % 2 == 0 else None)
        controller = VerificationController(
            detector, stored, threshold=80, timeout_min_run=2, clock=clock
        )

        result = controller.run(frames)

        assert not result.accepted
        assert result.best_similarity == 100


# ============================================================
# Setup and configuration
# ============================================================

class TestStart:
    """Session start."""

    def test_threshold_read_from_config(self, config_override, make_detector, descriptor, stored, clock):
        config_override({"verification": {"threshold": 90}})
        controller = VerificationController(make_detector(95, descriptor), stored, clock=clock)

        controller.start()
        assert controller.threshold == 90

        # Later changes do not affect the running session
        config_override({"verification": {"threshold": 55}})
        assert controller.threshold == 90

    def test_invalid_config_threshold_uses_default(self, config_override, make_detector, stored, clock):
        config_override({"verification": {"threshold": "high"}})
        controller = VerificationController(make_detector(95), stored, clock=clock)
        controller.start()

        assert controller.threshold == 80

    def test_malformed_template_raises(self, make_detector, clock):
        controller = VerificationController(make_detector(95), "{not json", threshold=80, clock=clock)

        with pytest.raises(MalformedStoredTemplate):
            controller.start()
        assert controller.state == VerificationState.IDLE

    def test_legacy_template_accepted(self, make_detector, descriptor, clock, frames):
        legacy = json.dumps(descriptor.tolist())
        controller = VerificationController(make_detector(95, descriptor), legacy, threshold=80, clock=clock)

        assert controller.run(frames).accepted

    def test_second_start_rejected(self, make_detector, stored, clock):
        controller = VerificationController(make_detector(95), stored, threshold=80, clock=clock)
        controller.start()

        with pytest.raises(InvalidSessionState):
            controller.start()

    def test_custom_calibration(self, make_detector, descriptor, stored, at_distance, clock, frames):
        strict = SimilarityCalibration(distances=[0.0, 0.3], scores=[100, 0])
        controller = VerificationController(
            make_detector(95, at_distance(descriptor, 0.2)),
            stored,
            threshold=80,
            calibration=strict,
            clock=clock,
        )
        result = controller.run(frames)

        assert not result.accepted
        assert result.best_similarity == 33


class TestForEmployee:
    """Controllers built from the template store."""

    def test_missing_template(self, make_detector, manager):
        with pytest.raises(TemplateNotFound):
            VerificationController.for_employee(make_detector(95), manager, "nobody")

    def test_config_section_applied(self, make_detector, manager, stored):
        manager.put_template("emp_001", stored, 90)
        controller = VerificationController.for_employee(
            make_detector(95),
            manager,
            "emp_001",
            config={"required_stable_frames": 5, "timeout_ms": 1000, "timeout_min_run": 3},
            threshold=85,
        )

        assert controller.required_stable_frames == 5
        assert controller.timeout_ms == 1000
        assert controller.timeout_min_run == 3
        assert controller.threshold == 85
        assert controller.stored_template == stored

    def test_outcome_logged(self, make_detector, manager, descriptor, stored, clock, frames):
        manager.put_template("emp_001", stored, 90)
        controller = VerificationController.for_employee(
            make_detector(95, descriptor), manager, "emp_001", threshold=80, clock=clock
        )
        controller.run(frames)

        logs = manager.get_verification_logs("emp_001")
        assert len(logs) == 1
        assert logs[0]["accepted"] is True
        assert logs[0]["best_similarity"] == 100
        assert logs[0]["threshold"] == 80


# ============================================================
# Failures and cancellation
# ============================================================

class TestFailureAndCancel:
    """Detector errors and cancellation."""

    def test_detector_error_fails_session(self, descriptor, stored, clock, frames, events):
        def script(index):
            if index == 4:
                raise DetectorError("backend crashed")
            return FaceDetection(descriptor, 95)

        manager = MagicMock()
        controller = VerificationController(
            StubFaceDetector(script),
            stored,
            threshold=80,
            clock=clock,
            employee_id="emp_001",
            template_manager=manager,
            **events.callbacks(),
        )
        result = controller.run(frames)

        assert result is None
        assert controller.state == VerificationState.FAILED
        assert "backend crashed" in events.errors[0]
        assert events.results == []
        manager.log_verification.assert_not_called()

    def test_dropped_frames_do_not_fail_session(self, fake_fr, clock, events):
        stored = serialize(np.full(128, 0.1))
        controller = VerificationController(
            FaceRecognitionDetector(), stored, threshold=80, clock=clock, **events.callbacks()
        )
        controller.start()

        for _ in range(3):
            controller.process_frame(None)

        assert controller.state == VerificationState.VERIFYING
        assert events.errors == []
        assert events.progress == [(0.0, 0)] * 3

        frame = np.full((240, 320, 3), 128, dtype=np.uint8)
        for _ in range(10):
            controller.process_frame(frame)

        assert controller.state == VerificationState.ACCEPTED
        assert events.results[0].best_similarity == 100
        assert events.results[0].frames_processed == 13

    def test_cancel_from_progress(self, make_detector, descriptor, stored, clock, frames, events):
        detector = make_detector(95, descriptor)
        callbacks = events.callbacks()

        def on_progress(confidence, similarity):
            events.progress.append((confidence, similarity))
            if len(events.progress) == 3:
                controller.cancel()

        callbacks["on_progress"] = on_progress
        controller = VerificationController(detector, stored, threshold=80, clock=clock, **callbacks)

        result = controller.run(frames)

        assert result is None
        assert controller.state == VerificationState.CANCELLED
        assert detector.calls == 3
        assert events.cancels == 1
        assert events.results == []

    def test_cancel_after_decision_is_noop(self, make_detector, descriptor, stored, clock, frames, events):
        controller = VerificationController(
            make_detector(95, descriptor), stored, threshold=80, clock=clock, **events.callbacks()
        )
        controller.run(frames)
        controller.cancel()

        assert controller.state == VerificationState.ACCEPTED
        assert events.cancels == 0


class TestResult:
    def test_to_dict(self):
        result = VerificationResult(
            accepted=True,
            best_similarity=97,
            best_confidence=92.0,
            threshold=80,
            frames_processed=10,
            resolved_by_timeout=False,
            elapsed_ms=1250.0,
        )
        assert result.to_dict()["best_similarity"] == 97


# ============================================================
# End to end
# ============================================================

class TestEnrollThenVerify:
    """Averaged template of identical captures verifies at full similarity."""

    def test_enroll_then_verify(self, make_detector, descriptor, manager, clock, frames):
        enrollment = EnrollmentController(
            make_detector(90, descriptor),
            clock=clock,
            employee_id="emp_042",
            template_manager=manager,
        )
        assert enrollment.run(frames) == EnrollmentState.DONE

        detector = make_detector(95, descriptor)
        verification = VerificationController.for_employee(
            detector, manager, "emp_042", threshold=80, clock=clock
        )
        result = verification.run(frames)

        assert result.accepted
        assert result.best_similarity == 100
        assert result.frames_processed == 10
        assert detector.calls == 10
