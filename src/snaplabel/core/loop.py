"""Inference loop: classify camera frames one at a time while capture runs."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from snaplabel.errors import InferenceError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from snaplabel.capture.source import CaptureSession
    from snaplabel.core.state import UIState
    from snaplabel.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)


class Predictor:
    """Runs a single classification and mirrors the outcome into the UI state."""

    def __init__(self, classifier: ImageClassifier, state: UIState) -> None:
        self._classifier = classifier
        self._state = state

    async def predict(self, image: NDArray[np.uint8]) -> None:
        # Without a model there is nothing to do; the load failure was already reported.
        if not self._classifier.is_loaded:
            return

        self._state.set_loading(True)
        try:
            results = await self._classifier.classify(image)
            self._state.set_prediction(results)
        except (InferenceError, ValueError):
            logger.exception("Prediction error")
            self._state.set_prediction_failed()
        finally:
            self._state.set_loading(False)


class InferenceLoop:
    """Drives predictions for one capture session until its running flag clears.

    Cycles never overlap: the next frame is only sampled after the previous
    classification finished, so a slow model throttles the sampling rate.
    """

    def __init__(self, predictor: Predictor, tick_interval: float) -> None:
        self._predictor = predictor
        self._tick_interval = tick_interval

    async def run(self, session: CaptureSession) -> int:
        """Loop until ``session.running`` is False; returns the number of cycles run."""
        cycles = 0
        while session.running:
            try:
                await self._cycle(session)
            except Exception:
                logger.exception("Inference cycle failed")
            cycles += 1
            await asyncio.sleep(self._tick_interval)
        logger.info("Inference loop finished after %d cycles", cycles)
        return cycles

    async def _cycle(self, session: CaptureSession) -> None:
        # Stays on the event loop: stop() releases the device from here too.
        session.device.update()
        frame = session.device.frame
        if frame is None:
            return
        await self._predictor.predict(frame)
