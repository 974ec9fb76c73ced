"""Classification results and the helpers that turn them into display text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for anything that can classify an RGB image."""

    @property
    def is_loaded(self) -> bool:
        """Return True once the underlying model is ready."""
        ...

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            One result per model label, in the model's label order.
        """
        ...


def best_prediction(results: Sequence[ClassificationResult]) -> ClassificationResult:
    """Return the highest-confidence result; ties go to the earliest entry.

    Raises:
        ValueError: If ``results`` is empty.
    """
    if not results:
        raise ValueError("Cannot pick a best prediction from an empty result list")
    best = results[0]
    for result in results[1:]:
        if result.confidence > best.confidence:
            best = result
    return best


def format_prediction(result: ClassificationResult) -> str:
    """Render a result as ``"<label> — <percent>%"`` with one decimal place."""
    return f"{result.label} — {result.confidence * 100:.1f}%"
