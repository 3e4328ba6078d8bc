"""
Face Attendance Biometric Engine

This package turns a stream of camera frames into a durable face template
(enrollment) and into an accept/reject decision against that template
(verification).

Main components:
    - config: Configuration loading and the verification threshold
    - face_detector: Detector interface, face_recognition backend, DetectorService
    - similarity: Distance and calibrated similarity scoring
    - template_store: Template serialization, legacy upgrade, averaging
    - stability: Consecutive-frame stability accumulator
    - enrollment: Six-step enrollment state machine
    - verification: Verification state machine
    - template_manager: SQLite template storage and audit trail
    - camera: OpenCV webcam frame source

Usage:
    from faceauth.face_detector import get_detector_service
    from faceauth.enrollment import EnrollmentController
    from faceauth.verification import VerificationController
    from faceauth.template_manager import get_template_manager
"""

from faceauth.config import (
    get_config,
    get_section,
    get_detector_config,
    get_similarity_config,
    get_enrollment_config,
    get_verification_config,
    get_storage_config,
    get_camera_config,
    get_threshold,
)

from faceauth.exceptions import (
    FaceAuthError,
    DetectorUnavailable,
    DetectorError,
    StreamUnavailable,
    PermissionDenied,
    MalformedStoredTemplate,
    TemplateNotFound,
    InvalidSessionState,
)

from faceauth.face_detector import (
    FaceDetector,
    FaceDetection,
    StubFaceDetector,
    FaceRecognitionDetector,
    DetectorService,
    DetectorState,
    get_detector_service,
)

from faceauth.similarity import (
    MatchResult,
    SimilarityCalibration,
    distance,
    similarity,
    compare,
)

from faceauth.template_store import serialize, deserialize, average

from faceauth.stability import (
    Sample,
    StabilityConfig,
    StabilityAccumulator,
)

from faceauth.scheduler import CancellationToken, FrameScheduler

from faceauth.enrollment import (
    EnrollmentController,
    EnrollmentState,
    TrainingStep,
    TRAINING_STEPS,
)

from faceauth.verification import (
    VerificationController,
    VerificationState,
    VerificationResult,
)

from faceauth.template_manager import TemplateManager, get_template_manager

from faceauth.camera import CameraStream, CaptureConfig

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_detector_config",
    "get_similarity_config",
    "get_enrollment_config",
    "get_verification_config",
    "get_storage_config",
    "get_camera_config",
    "get_threshold",
    # Errors
    "FaceAuthError",
    "DetectorUnavailable",
    "DetectorError",
    "StreamUnavailable",
    "PermissionDenied",
    "MalformedStoredTemplate",
    "TemplateNotFound",
    "InvalidSessionState",
    # Face Detection
    "FaceDetector",
    "FaceDetection",
    "StubFaceDetector",
    "FaceRecognitionDetector",
    "DetectorService",
    "DetectorState",
    "get_detector_service",
    # Scoring and Templates
    "MatchResult",
    "SimilarityCalibration",
    "distance",
    "similarity",
    "compare",
    "serialize",
    "deserialize",
    "average",
    # Sessions
    "Sample",
    "StabilityConfig",
    "StabilityAccumulator",
    "CancellationToken",
    "FrameScheduler",
    "EnrollmentController",
    "EnrollmentState",
    "TrainingStep",
    "TRAINING_STEPS",
    "VerificationController",
    "VerificationState",
    "VerificationResult",
    # Storage and Camera
    "TemplateManager",
    "get_template_manager",
    "CameraStream",
    "CaptureConfig",
]
