"""
Cooperative frame scheduling.

A session is a unit of work that is fed one frame at a time until it is
done. FrameScheduler pulls frames from a source and hands them to the unit,
checking a CancellationToken before every iteration. Nothing here runs in
parallel; cancel() may be called from a callback or from another thread.

Usage:
    token = CancellationToken()
    with CameraStream() as camera:
        FrameScheduler(camera, token).run(controller)
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot stop signal shared by a scheduler and the work it drives."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class FrameScheduler:
    """
    Feed frames to a unit of work until it reports done or is cancelled.

    The unit must expose a ``done`` property and ``process_frame(frame)``.
    The frame source must expose ``read()`` returning a frame, or None when
    a frame could not be read (treated as a frame without a face).

    Args:
        frame_source: Object with a read() method.
        token: Cancellation token checked before each iteration.
        frame_interval_ms: Pause between frames (0 = as fast as frames come).
        sleep: Sleep function, injectable for tests.
    """

    def __init__(
        self,
        frame_source: Any,
        token: Optional[CancellationToken] = None,
        frame_interval_ms: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.frame_source = frame_source
        self.token = token or CancellationToken()
        self.frame_interval_ms = frame_interval_ms
        self._sleep = sleep

    def run(self, unit: Any) -> int:
        """
        Drive the unit until it is done or the token is cancelled.

        Returns:
            Number of frames handed to the unit.
        """
        frames = 0

        while not self.token.cancelled and not unit.done:
            frame = self.frame_source.read()
            unit.process_frame(frame)
            frames += 1

            if self.frame_interval_ms > 0 and not unit.done:
                self._sleep(self.frame_interval_ms / 1000.0)

        if self.token.cancelled:
            logger.debug(f"Scheduler stopped by cancellation after {frames} frames")

        return frames
