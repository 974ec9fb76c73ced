"""Presentation state: panel/button visibility, prediction text, notices.

The state machine never shows anything to the user directly. It records
structured notices here and the HTTP layer (or the browser page polling it)
decides how to surface them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict

from snaplabel.errors import CaptureFailure
from snaplabel.ml.image_classifier import best_prediction, format_prediction

if TYPE_CHECKING:
    from collections.abc import Sequence

    from snaplabel.errors import CaptureUnavailableError
    from snaplabel.ml.image_classifier import ClassificationResult

PREDICTION_FAILED_TEXT = "Prediction failed (see logs)."
MODEL_LOAD_FAILED_TEXT = "Failed to load the model. Check logs for details."

_CAPTURE_MESSAGES: dict[CaptureFailure, str] = {
    CaptureFailure.PERMISSION_DENIED: (
        "Camera access was denied. Check that this process is allowed to open the camera device."
    ),
    CaptureFailure.DEVICE_NOT_FOUND: "No camera found on this device.",
}


class Notice(BaseModel):
    """A blocking, user-facing notification."""

    kind: Literal["model_load", "capture"]
    category: str | None = None
    message: str


def capture_notice(error: CaptureUnavailableError) -> Notice:
    """Map a capture failure to the notice shown to the user."""
    message = _CAPTURE_MESSAGES.get(error.failure, f"Could not start camera: {error.message}")
    return Notice(kind="capture", category=error.failure.value, message=message)


def model_load_notice() -> Notice:
    return Notice(kind="model_load", message=MODEL_LOAD_FAILED_TEXT)


class UIState(BaseModel):
    """Everything the front-end needs to render itself."""

    model_config = ConfigDict(protected_namespaces=())

    loading_visible: bool = False
    webcam_panel_visible: bool = True
    upload_panel_visible: bool = False
    start_button_visible: bool = True
    stop_button_visible: bool = False
    prediction_text: str | None = None
    model_ready: bool = False
    notice: Notice | None = None

    def show_webcam_panel(self) -> None:
        self.upload_panel_visible = False
        self.webcam_panel_visible = True

    def show_capture_running(self) -> None:
        self.start_button_visible = False
        self.stop_button_visible = True

    def show_capture_stopped(self) -> None:
        self.start_button_visible = True
        self.stop_button_visible = False

    def show_upload(self) -> None:
        self.upload_panel_visible = True
        self.webcam_panel_visible = False

    def set_loading(self, visible: bool) -> None:
        self.loading_visible = visible

    def set_prediction(self, results: Sequence[ClassificationResult]) -> None:
        self.prediction_text = format_prediction(best_prediction(results))

    def set_prediction_failed(self) -> None:
        self.prediction_text = PREDICTION_FAILED_TEXT

    def notify(self, notice: Notice | None) -> None:
        self.notice = notice
