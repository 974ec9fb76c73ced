"""Model gateway: fetch, load and run the image classifier.

The classifier is described by two files resolved relative to one base
location: the ONNX weights (``model.onnx``) and a Teachable-Machine style
descriptor (``metadata.json``) carrying the label list and input size. The
base location is a Hugging Face repo, or a local directory when
SNAPLABEL_MODEL_DIR is set.

The handle is created once by :meth:`ModelGateway.load` and never replaced.
Every failure while loading surfaces as :class:`ModelLoadError`; every
failure while classifying surfaces as :class:`InferenceError`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from snaplabel.errors import InferenceError, ModelLoadError, ModelNotLoadedError
from snaplabel.ml.image_classifier import ClassificationResult
from snaplabel.ml.preprocessing import TensorLayout, preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snaplabel.config import Settings
    from snaplabel.ml.inference import InferencePool

logger = logging.getLogger(__name__)

# Highest descriptor package major version this loader understands.
SUPPORTED_PACKAGE_MAJOR = 0


# ---------------------------------------------------------------------------
# Descriptor and handle
# ---------------------------------------------------------------------------


class ModelMetadata(BaseModel):
    """Parsed ``metadata.json`` descriptor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    labels: list[str] = Field(min_length=1)
    image_size: int = Field(default=224, alias="imageSize", ge=1)
    model_name: str = Field(default="classifier", alias="modelName")
    package_version: str | None = Field(default=None, alias="packageVersion")


@dataclass(frozen=True)
class ClassifierHandle:
    """A loaded classifier: ONNX session plus its descriptor."""

    session: InferenceSession
    metadata: ModelMetadata
    input_name: str
    layout: TensorLayout


@dataclass(frozen=True)
class _ModelFiles:
    weights: Path
    metadata: Path


def parse_metadata(raw: str | bytes) -> ModelMetadata:
    """Parse and validate a descriptor document.

    Raises:
        ModelLoadError: If the document is malformed or of an unsupported version.
    """
    try:
        metadata = ModelMetadata.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
        raise ModelLoadError(f"Malformed model descriptor: {exc}") from exc

    if metadata.package_version is not None:
        major_text = metadata.package_version.split(".", 1)[0]
        if not major_text.isdigit():
            raise ModelLoadError(f"Malformed descriptor version: {metadata.package_version!r}")
        if int(major_text) > SUPPORTED_PACKAGE_MAJOR:
            raise ModelLoadError(
                f"Unsupported descriptor version {metadata.package_version} "
                f"(supported: {SUPPORTED_PACKAGE_MAJOR}.x)"
            )
    return metadata


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return ``scores`` unchanged if already a distribution, else their softmax."""
    if np.all(scores >= 0.0) and np.isclose(float(scores.sum()), 1.0, atol=1e-3):
        return scores
    shifted = np.exp(scores - np.max(scores))
    return (shifted / shifted.sum()).astype(np.float32)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ModelGateway:
    """Loads the classifier once and runs classifications through the worker pool."""

    def __init__(self, settings: Settings, pool: InferencePool) -> None:
        self._settings = settings
        self._pool = pool
        self._handle: ClassifierHandle | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def labels(self) -> list[str]:
        return list(self._handle.metadata.labels) if self._handle is not None else []

    @property
    def model_name(self) -> str | None:
        return self._handle.metadata.model_name if self._handle is not None else None

    async def load(self) -> ClassifierHandle:
        """Fetch and initialize the classifier; a second call returns the same handle.

        Raises:
            ModelLoadError: On network, parse, or compatibility failures.
        """
        if self._handle is not None:
            return self._handle

        try:
            handle = await self._pool.run(self._load_sync)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Model load failed: {exc}") from exc

        self._handle = handle
        logger.info(
            "Loaded model %s (%d labels, input %dpx, layout=%s)",
            handle.metadata.model_name,
            len(handle.metadata.labels),
            handle.metadata.image_size,
            handle.layout,
        )
        return handle

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an RGB image; results follow the descriptor's label order.

        Raises:
            ModelNotLoadedError: If :meth:`load` has not succeeded.
            InferenceError: On malformed input, runtime failure, or pool timeout.
        """
        handle = self._handle
        if handle is None:
            raise ModelNotLoadedError("Classifier is not loaded")

        try:
            return await self._pool.run(self._classify_sync, handle, image)
        except InferenceError:
            raise
        except TimeoutError as exc:
            raise InferenceError("Timed out waiting for a free inference worker") from exc
        except Exception as exc:
            raise InferenceError(f"Classification failed: {exc}") from exc

    # -- Internal -----------------------------------------------------------

    def _load_sync(self) -> ClassifierHandle:
        files = self._resolve_files()
        metadata = parse_metadata(files.metadata.read_bytes())

        try:
            session = InferenceSession(
                str(files.weights),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Cannot initialize model {files.weights.name}: {exc}") from exc

        input_name, layout = self._inspect_input(session, metadata)
        self._check_output(session, metadata)
        return ClassifierHandle(session=session, metadata=metadata, input_name=input_name, layout=layout)

    def _resolve_files(self) -> _ModelFiles:
        settings = self._settings
        if settings.model_dir is not None:
            base = Path(settings.model_dir)
            files = _ModelFiles(
                weights=base / settings.model_filename,
                metadata=base / settings.metadata_filename,
            )
            for path in (files.weights, files.metadata):
                if not path.is_file():
                    raise ModelLoadError(f"Model file not found: {path}")
            return files

        try:
            weights = self._download(settings.model_filename)
            metadata = self._download(settings.metadata_filename)
        except Exception as exc:
            raise ModelLoadError(f"Cannot fetch model from {settings.model_repo}: {exc}") from exc

        logger.info("Fetched %s and %s from %s", weights.name, metadata.name, settings.model_repo)
        return _ModelFiles(weights=weights, metadata=metadata)

    def _download(self, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=self._settings.model_repo,
                filename=filename,
                revision=self._settings.model_revision,
                cache_dir=self._settings.models_cache_dir,
            )
        )

    @staticmethod
    def _inspect_input(session: InferenceSession, metadata: ModelMetadata) -> tuple[str, TensorLayout]:
        model_input = session.get_inputs()[0]
        shape = list(model_input.shape)
        if len(shape) != 4:
            raise ModelLoadError(f"Expected a 4-D image input, got shape {shape}")

        layout: TensorLayout = "nchw" if shape[1] == 3 and shape[3] != 3 else "nhwc"
        spatial = shape[2:4] if layout == "nchw" else shape[1:3]
        for dim in spatial:
            if isinstance(dim, int) and dim != metadata.image_size:
                raise ModelLoadError(
                    f"Descriptor image size {metadata.image_size} does not match model input {shape}"
                )
        return model_input.name, layout

    @staticmethod
    def _check_output(session: InferenceSession, metadata: ModelMetadata) -> None:
        width = session.get_outputs()[0].shape[-1]
        if isinstance(width, int) and width != len(metadata.labels):
            raise ModelLoadError(
                f"Descriptor lists {len(metadata.labels)} labels but model outputs {width} classes"
            )

    @staticmethod
    def _classify_sync(handle: ClassifierHandle, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        try:
            tensor = preprocess_for_classification(image, handle.metadata.image_size, handle.layout)
        except ValueError as exc:
            raise InferenceError(str(exc)) from exc

        outputs = handle.session.run(None, {handle.input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        labels = handle.metadata.labels
        if scores.shape[0] != len(labels):
            raise InferenceError(f"Model returned {scores.shape[0]} scores for {len(labels)} labels")

        probabilities = to_probabilities(scores)
        return [
            ClassificationResult(label=label, confidence=float(prob))
            for label, prob in zip(labels, probabilities, strict=True)
        ]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [("CUDAExecutionProvider", {"device_id": 0}), "CPUExecutionProvider"]
        if device == "openvino":
            return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        return opts
