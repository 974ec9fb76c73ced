"""Error taxonomy shared by the model gateway, capture source and controller."""

from __future__ import annotations

from enum import StrEnum


class SnapLabelError(Exception):
    """Base class for all SnapLabel errors."""


class ModelLoadError(SnapLabelError):
    """The classifier could not be fetched, parsed or initialized."""


class ModelNotLoadedError(ModelLoadError):
    """A classification was requested before the classifier was loaded."""


class InferenceError(SnapLabelError):
    """A classification call failed (bad input, runtime failure, or timeout)."""


class CaptureFailure(StrEnum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    UNKNOWN = "unknown"


class CaptureDeviceError(SnapLabelError):
    """Raised by a camera device when a single open attempt fails."""

    def __init__(self, failure: CaptureFailure, message: str) -> None:
        super().__init__(message)
        self.failure = failure
        self.message = message


class CaptureUnavailableError(SnapLabelError):
    """Both the preferred and the default camera could not be started."""

    def __init__(self, failure: CaptureFailure, message: str) -> None:
        super().__init__(message)
        self.failure = failure
        self.message = message
