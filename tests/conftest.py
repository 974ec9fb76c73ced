"""Shared test doubles: a fake camera device and a fake classifier."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from snaplabel.config import Settings
from snaplabel.errors import CaptureDeviceError, CaptureFailure
from snaplabel.ml.image_classifier import ClassificationResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from snaplabel.capture.source import CaptureMode


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "model_dir": None,
        "models_cache_dir": "/tmp/snaplabel_test_models",
        "tick_interval": 0.0,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def png_bytes(width: int = 40, height: int = 30, color: tuple[int, int, int] = (200, 10, 10)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeDevice:
    """Camera stand-in that counts updates and stops."""

    def __init__(self, fail_on_stop: bool = False) -> None:
        self._frame: NDArray[np.uint8] | None = np.zeros((8, 8, 3), dtype=np.uint8)
        self.updates = 0
        self.stops = 0
        self.fail_on_stop = fail_on_stop

    @property
    def frame(self) -> NDArray[np.uint8] | None:
        return self._frame

    def update(self) -> None:
        self.updates += 1

    def stop(self) -> None:
        self.stops += 1
        if self.fail_on_stop:
            raise RuntimeError("device already gone")


class ScriptedOpener:
    """Opener that replays one outcome per attempt: a device or an exception."""

    def __init__(self, *outcomes: FakeDevice | Exception) -> None:
        self._outcomes = list(outcomes)
        self.modes: list[CaptureMode] = []

    def __call__(self, mode: CaptureMode) -> FakeDevice:
        self.modes.append(mode)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def denied(message: str = "denied") -> CaptureDeviceError:
    return CaptureDeviceError(CaptureFailure.PERMISSION_DENIED, message)


def not_found(message: str = "no camera") -> CaptureDeviceError:
    return CaptureDeviceError(CaptureFailure.DEVICE_NOT_FOUND, message)


class FakeClassifier:
    """Classifier stand-in with scripted results and call bookkeeping."""

    def __init__(
        self,
        results: list[ClassificationResult] | None = None,
        error: Exception | None = None,
        loaded: bool = True,
    ) -> None:
        self.results = results or [ClassificationResult("cat", 0.82), ClassificationResult("dog", 0.18)]
        self.error = error
        self.loaded = loaded
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call: Callable[[], None] | None = None
        self.load_error: Exception | None = None

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    @property
    def labels(self) -> list[str]:
        return [r.label for r in self.results]

    @property
    def model_name(self) -> str | None:
        return "fake-model" if self.loaded else None

    async def load(self) -> object:
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True
        return object()

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                self.on_call()
            await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
            return list(self.results)
        finally:
            self.in_flight -= 1


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier()
