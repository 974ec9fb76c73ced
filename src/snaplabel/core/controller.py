"""Application controller: owns the UI state and wires inputs to the classifier.

Exactly one input source is active at a time. Starting the camera hides the
uploaded image; uploading always stops the camera first.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from snaplabel.core.loop import InferenceLoop, Predictor
from snaplabel.core.state import Notice, UIState, capture_notice, model_load_notice
from snaplabel.errors import CaptureUnavailableError, ModelLoadError
from snaplabel.ml.preprocessing import decode_image, encode_jpeg

if TYPE_CHECKING:
    from snaplabel.capture.source import CaptureSession, CaptureSource
    from snaplabel.config import Settings
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.model_gateway import ModelGateway

logger = logging.getLogger(__name__)


class AppController:
    """Single owner of all mutable front-end state."""

    def __init__(
        self,
        settings: Settings,
        gateway: ModelGateway,
        capture: CaptureSource,
        pool: InferencePool,
    ) -> None:
        self.state = UIState()
        self._gateway = gateway
        self._capture = capture
        self._pool = pool
        self._predictor = Predictor(gateway, self.state)
        self._loop = InferenceLoop(self._predictor, settings.tick_interval)
        self._loop_task: asyncio.Task[int] | None = None
        self._loop_session: CaptureSession | None = None
        self._upload_jpeg: bytes | None = None

    @property
    def capture(self) -> CaptureSource:
        return self._capture

    @property
    def upload_jpeg(self) -> bytes | None:
        """The last uploaded image, re-encoded as JPEG."""
        return self._upload_jpeg

    def frame_jpeg(self) -> bytes | None:
        """The current camera frame as JPEG, or None when the camera is off."""
        frame = self._capture.frame
        return encode_jpeg(frame) if frame is not None else None

    async def load_model(self) -> Notice | None:
        """Load the classifier, showing the loading indicator meanwhile."""
        self.state.set_loading(True)
        try:
            await self._gateway.load()
        except ModelLoadError:
            logger.exception("Model load error")
            notice = model_load_notice()
            self.state.notify(notice)
            return notice
        finally:
            self.state.set_loading(False)

        self.state.model_ready = True
        return None

    async def start_capture(self) -> Notice | None:
        """Start the camera and its inference loop; returns a notice on failure."""
        self.state.show_webcam_panel()
        try:
            session = await self._capture.start()
        except CaptureUnavailableError as exc:
            notice = capture_notice(exc)
            self.state.notify(notice)
            self.state.show_capture_stopped()
            return notice

        if session is None:
            return None

        if self._notice_kind() == "capture":
            self.state.notify(None)
        self.state.show_capture_running()
        if session is not self._loop_session:
            self._loop_session = session
            self._loop_task = asyncio.create_task(self._loop.run(session), name="inference-loop")
        return None

    def stop_capture(self) -> None:
        """Stop the camera. Idempotent; an in-flight classification still lands."""
        self._capture.stop()
        self.state.show_capture_stopped()

    async def handle_upload(self, data: bytes | None) -> None:
        """Classify an uploaded image once, replacing any camera input."""
        self.stop_capture()
        if not data:
            return

        self.state.show_upload()
        self._upload_jpeg = None
        try:
            image = await self._pool.run(decode_image, data)
            self._upload_jpeg = await self._pool.run(encode_jpeg, image)
        except (ValueError, TimeoutError):
            logger.exception("Upload decode error")
            self.state.set_prediction_failed()
            return

        await self._predictor.predict(image)

    async def shutdown(self) -> None:
        """Stop the camera and wait for the inference loop to wind down."""
        self.stop_capture()
        task, self._loop_task = self._loop_task, None
        self._loop_session = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _notice_kind(self) -> str | None:
        return self.state.notice.kind if self.state.notice is not None else None
