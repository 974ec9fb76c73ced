"""Capture source: camera lifecycle with preferred-then-default negotiation.

State machine::

    IDLE --start()--> NEGOTIATING --ok--> RUNNING --stop()--> IDLE
                           |
                           +--both attempts failed--> IDLE (CaptureUnavailableError)

Exactly two open attempts are made per start: the preferred (rear-facing)
camera, then the default one. There is no automatic retry after that.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from snaplabel.capture.webcam import Webcam
from snaplabel.errors import CaptureDeviceError, CaptureFailure, CaptureUnavailableError

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from snaplabel.capture.webcam import FrameDevice
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)


class CaptureState(StrEnum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    RUNNING = "running"


class CaptureMode(StrEnum):
    PREFERRED = "preferred"
    FALLBACK = "fallback"


@dataclass
class CaptureSession:
    """An acquired camera. ``running`` is cleared exactly once, by stop()."""

    device: FrameDevice
    mode: CaptureMode
    running: bool = True


def webcam_opener(settings: Settings) -> Callable[[CaptureMode], FrameDevice]:
    """Build an opener that maps capture modes to configured OpenCV camera indices."""

    def open_webcam(mode: CaptureMode) -> FrameDevice:
        index = settings.preferred_camera if mode is CaptureMode.PREFERRED else settings.default_camera
        webcam = Webcam(settings.capture_width, settings.capture_height, flip=settings.capture_flip)
        webcam.setup(index)
        webcam.play()
        return webcam

    return open_webcam


class CaptureSource:
    """Owns at most one CaptureSession at a time."""

    def __init__(self, opener: Callable[[CaptureMode], FrameDevice]) -> None:
        self._opener = opener
        self._state = CaptureState.IDLE
        self._session: CaptureSession | None = None
        self._abort_negotiation = False

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None and self._session.running

    @property
    def frame(self) -> NDArray[np.uint8] | None:
        if not self.is_running:
            return None
        return self._session.device.frame  # type: ignore[union-attr]

    async def start(self) -> CaptureSession | None:
        """Acquire a camera and start streaming.

        Calling start() while negotiating or running is a no-op that returns
        the current session (None while still negotiating). A start() during
        negotiation also cancels an earlier stop(), so the pending camera
        still comes up. Returns None when negotiation was stopped.

        Raises:
            CaptureUnavailableError: Both the preferred and default cameras failed
                and nobody stopped the negotiation meanwhile.
        """
        if self._state is CaptureState.NEGOTIATING:
            self._abort_negotiation = False
            logger.info("Capture already negotiating; ignoring start")
            return None
        if self._state is not CaptureState.IDLE:
            logger.info("Capture already %s; ignoring start", self._state)
            return self._session

        self._state = CaptureState.NEGOTIATING
        self._abort_negotiation = False
        try:
            device, mode = await self._negotiate()
        except CaptureUnavailableError:
            self._state = CaptureState.IDLE
            if self._abort_negotiation:
                logger.info("Capture stopped during negotiation; dropping start failure")
                return None
            raise

        if self._abort_negotiation:
            logger.info("Capture stopped during negotiation; releasing camera")
            self._state = CaptureState.IDLE
            self._release(device)
            return None

        self._session = CaptureSession(device=device, mode=mode)
        self._state = CaptureState.RUNNING
        logger.info("Camera started (%s mode)", mode)
        return self._session

    def update(self) -> None:
        """Refresh the current frame in place. Does nothing when not running."""
        if self.is_running:
            self._session.device.update()  # type: ignore[union-attr]

    def stop(self) -> None:
        """Release the camera. Safe to call in any state; never raises."""
        if self._state is CaptureState.NEGOTIATING:
            self._abort_negotiation = True
            return

        session, self._session = self._session, None
        self._state = CaptureState.IDLE
        if session is None:
            return
        session.running = False
        self._release(session.device)
        logger.info("Camera stopped")

    async def _negotiate(self) -> tuple[FrameDevice, CaptureMode]:
        try:
            return await self._attempt(CaptureMode.PREFERRED), CaptureMode.PREFERRED
        except CaptureDeviceError as exc:
            logger.warning("Preferred camera unavailable, trying default camera: %s", exc.message)

        try:
            return await self._attempt(CaptureMode.FALLBACK), CaptureMode.FALLBACK
        except CaptureDeviceError as exc:
            logger.error("Camera start failed (%s): %s", exc.failure, exc.message)
            raise CaptureUnavailableError(exc.failure, exc.message) from exc

    async def _attempt(self, mode: CaptureMode) -> FrameDevice:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._opener, mode)
        except CaptureDeviceError:
            raise
        except PermissionError as exc:
            raise CaptureDeviceError(CaptureFailure.PERMISSION_DENIED, str(exc)) from exc
        except Exception as exc:
            raise CaptureDeviceError(CaptureFailure.UNKNOWN, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _release(device: FrameDevice) -> None:
        try:
            device.stop()
        except Exception:
            logger.warning("Error stopping camera", exc_info=True)
