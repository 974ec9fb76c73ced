"""OpenCV webcam helper.

Wraps ``cv2.VideoCapture`` behind a setup/play/update/stop contract and
keeps the latest frame as a square, optionally mirrored RGB buffer.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from snaplabel.errors import CaptureDeviceError, CaptureFailure
from snaplabel.ml.preprocessing import crop_to_square, resize

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class FrameDevice(Protocol):
    """A started camera that can refresh and expose its latest frame."""

    @property
    def frame(self) -> NDArray[np.uint8] | None:
        """Latest HxWx3 RGB frame, or None before the first update."""
        ...

    def update(self) -> None:
        """Grab a new frame into :attr:`frame`."""
        ...

    def stop(self) -> None:
        """Release the underlying device."""
        ...


def _device_node(index: int) -> str | None:
    if sys.platform.startswith("linux"):
        return f"/dev/video{index}"
    return None


class Webcam:
    """A single camera opened through OpenCV."""

    def __init__(self, width: int = 320, height: int = 320, flip: bool = True) -> None:
        self.width = width
        self.height = height
        self.flip = flip
        self._capture: cv2.VideoCapture | None = None
        self._frame: NDArray[np.uint8] | None = None

    @property
    def frame(self) -> NDArray[np.uint8] | None:
        return self._frame

    def setup(self, device_index: int = 0) -> None:
        """Open the camera at ``device_index``.

        Raises:
            CaptureDeviceError: Classified as permission denied, not found, or unknown.
        """
        node = _device_node(device_index)
        if node is not None:
            if not os.path.exists(node):
                raise CaptureDeviceError(CaptureFailure.DEVICE_NOT_FOUND, f"No camera at {node}")
            if not os.access(node, os.R_OK | os.W_OK):
                raise CaptureDeviceError(CaptureFailure.PERMISSION_DENIED, f"Permission denied for {node}")

        try:
            capture = cv2.VideoCapture(device_index)
        except cv2.error as exc:
            raise CaptureDeviceError(CaptureFailure.UNKNOWN, str(exc)) from exc

        if not capture.isOpened():
            capture.release()
            raise CaptureDeviceError(CaptureFailure.DEVICE_NOT_FOUND, f"Camera {device_index} could not be opened")
        self._capture = capture

    def play(self) -> None:
        """Read a first frame so the device is known to be streaming."""
        if self._capture is None:
            raise CaptureDeviceError(CaptureFailure.UNKNOWN, "Camera was not set up")
        try:
            streaming = self._read()
        except Exception as exc:
            self.stop()
            raise CaptureDeviceError(CaptureFailure.UNKNOWN, f"Cannot read from camera: {exc}") from exc
        if not streaming:
            self.stop()
            raise CaptureDeviceError(CaptureFailure.UNKNOWN, "Camera opened but returned no frames")

    def update(self) -> None:
        if not self._read():
            logger.warning("Dropped a camera frame")

    def stop(self) -> None:
        capture, self._capture = self._capture, None
        self._frame = None
        if capture is not None:
            capture.release()

    def _read(self) -> bool:
        if self._capture is None:
            return False
        ok, bgr = self._capture.read()
        if not ok or bgr is None:
            return False
        rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        frame = resize(crop_to_square(rgb), self.width, self.height)
        if self.flip:
            frame = np.ascontiguousarray(frame[:, ::-1])
        self._frame = frame
        return True
