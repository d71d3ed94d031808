class LiveVisionError(Exception):
    """Base exception for the live vision system."""


class CaptureError(LiveVisionError):
    """Raised when the camera is unavailable, denied, or disconnected."""


class ModelUnavailable(LiveVisionError):
    """Raised when an inference model failed to initialize or is still loading."""


class InferenceError(LiveVisionError):
    """Raised when a model call fails at runtime."""


class DetectorError(InferenceError):
    """Raised when object detection initialization or inference fails."""


class FaceEngineError(InferenceError):
    """Raised when face detection or embedding generation fails."""


class EnrollmentError(LiveVisionError):
    """Raised when an enrollment request cannot be accepted."""


class NoFaceDetected(EnrollmentError):
    """Raised when an enrollment image contains no face."""


class AmbiguousFace(EnrollmentError):
    """Raised when an enrollment image contains more than one face."""


class MatchUnavailable(LiveVisionError):
    """Matcher queried with an empty gallery. Reported as an unknown match, never raised."""


class StorageError(LiveVisionError):
    """Raised when the gallery store cannot be read or written."""


class StorageCorrupt(StorageError):
    """Raised when the persisted gallery cannot be decoded."""
