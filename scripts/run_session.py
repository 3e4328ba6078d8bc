"""
Session Runner - enroll or verify an employee against the webcam

Runs one enrollment or verification session with the configured detector
backend and the SQLite template store, printing progress to the terminal.

Usage:
    python scripts/run_session.py enroll --employee-id emp_001
    python scripts/run_session.py verify --employee-id emp_001

    # Options
    python scripts/run_session.py verify --employee-id emp_001 --threshold 85
    python scripts/run_session.py enroll --employee-id emp_001 --db storage/test.sqlite

Exit codes:
    0 - enrollment completed / verification accepted
    1 - enrollment failed / verification rejected
    2 - session could not start (camera, detector, missing template)

Press Ctrl+C to cancel a running session.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faceauth.camera import CameraStream, CaptureConfig
from faceauth.config import (
    get_camera_config,
    get_enrollment_config,
    get_logging_config,
    get_similarity_config,
    get_verification_config,
)
from faceauth.enrollment import EnrollmentController, EnrollmentState
from faceauth.exceptions import FaceAuthError
from faceauth.face_detector import get_detector_service
from faceauth.similarity import SimilarityCalibration
from faceauth.stability import StabilityConfig
from faceauth.template_manager import get_template_manager
from faceauth.verification import VerificationController

logger = logging.getLogger(__name__)

MAX_STEP_RETRIES = 2


def run_enrollment(args, detector, manager, camera) -> int:
    enrollment_config = get_enrollment_config()

    def on_progress(quality):
        step = controller.current_step
        if step is not None:
            print(f"\r  [{step.index + 1}/{len(controller.steps)}] {step.instruction:<32} quality {quality:5.1f}", end="", flush=True)

    def on_step_complete(step):
        print(f"\n  Step {step.index + 1} done (score {step.captured_score:.0f})")

    def on_complete(template, score):
        print(f"\nEnrollment complete for {args.employee_id}: training score {score:.2f}")

    def on_error(message):
        print(f"\n  ERROR: {message}")

    controller = EnrollmentController(
        detector,
        config=StabilityConfig.from_config(enrollment_config),
        employee_id=args.employee_id,
        template_manager=manager,
        on_progress=on_progress,
        on_step_complete=on_step_complete,
        on_complete=on_complete,
        on_error=on_error,
    )

    interval = int(enrollment_config.get("frame_interval_ms", 0))
    state = controller.run(camera, interval)

    retries = 0
    while state == EnrollmentState.STEP_FAILED and retries < MAX_STEP_RETRIES:
        retries += 1
        print(f"  Retrying step ({retries}/{MAX_STEP_RETRIES})...")
        controller.retry_step()
        state = controller.run(camera, interval)

    return 0 if state == EnrollmentState.DONE else 1


def run_verification(args, detector, manager, camera) -> int:
    verification_config = get_verification_config()

    def on_progress(confidence, similarity):
        print(f"\r  similarity {similarity:3d}%  confidence {confidence:5.1f}", end="", flush=True)

    kwargs = {}
    if args.threshold is not None:
        kwargs["threshold"] = args.threshold

    controller = VerificationController.for_employee(
        detector,
        manager,
        args.employee_id,
        config=verification_config,
        calibration=SimilarityCalibration.from_config(get_similarity_config()),
        on_progress=on_progress,
        **kwargs,
    )

    result = controller.run(camera, int(verification_config.get("frame_interval_ms", 0)))
    print()

    if result is None:
        print(f"Verification did not finish ({controller.state.value})")
        return 1

    verdict = "ACCEPTED" if result.accepted else "REJECTED"
    print(f"{verdict}: similarity {result.best_similarity}% "
          f"(threshold {result.threshold}%, {result.frames_processed} frames"
          f"{', timeout' if result.resolved_by_timeout else ''})")
    return 0 if result.accepted else 1


def main():
    parser = argparse.ArgumentParser(
        description="Run a face enrollment or verification session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("mode", choices=["enroll", "verify"], help="Session type")
    parser.add_argument("--employee-id", required=True, help="Employee identifier")
    parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    parser.add_argument("--camera", type=int, default=None, help="Camera device ID")
    parser.add_argument(
        "--threshold", type=int, default=None,
        help="Override the configured verification threshold (50-100)",
    )
    args = parser.parse_args()

    logging_config = get_logging_config()
    logging.basicConfig(
        level=getattr(logging, str(logging_config.get("level", "INFO")).upper(), logging.INFO),
        format=logging_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
    )

    capture_config = CaptureConfig.from_config(get_camera_config())
    if args.camera is not None:
        capture_config.device_id = args.camera

    print("Loading face detector...")
    detector = get_detector_service()
    detector.initialize_async()

    manager = get_template_manager(args.db)
    try:
        with CameraStream(capture_config) as camera:
            if args.mode == "enroll":
                return run_enrollment(args, detector, manager, camera)
            return run_verification(args, detector, manager, camera)
    except FaceAuthError as e:
        logger.error(f"Session could not run: {e}")
        print(f"ERROR: {e}")
        return 2
    except KeyboardInterrupt:
        print("\nCancelled")
        return 1
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
