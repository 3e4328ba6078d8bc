"""
Exceptions raised by the biometric engine.

Per-frame conditions (no face, low quality) are never exceptions; they only
reset the stability counter. Everything here is terminal for a session or
for a single enrollment step.
"""


class FaceAuthError(Exception):
    """Base class for all engine errors."""


class DetectorUnavailable(FaceAuthError):
    """The face detection capability could not be initialized."""


class DetectorError(FaceAuthError):
    """The detection backend failed while processing a frame."""


class StreamUnavailable(FaceAuthError):
    """The camera stream could not be opened."""


class PermissionDenied(StreamUnavailable):
    """Access to the camera was refused."""


class MalformedStoredTemplate(FaceAuthError):
    """A stored template could not be decoded. Re-enrollment is required."""


class TemplateNotFound(FaceAuthError):
    """No template is stored for the requested employee."""


class InvalidSessionState(FaceAuthError):
    """A controller operation was called in a state that does not allow it."""
