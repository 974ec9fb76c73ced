"""Tests for the ONNX model gateway."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, call, patch

import numpy as np
import pytest

from conftest import make_settings
from snaplabel.errors import InferenceError, ModelLoadError, ModelNotLoadedError
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_gateway import ModelGateway, parse_metadata, to_probabilities

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_METADATA = {
    "tfjsVersion": "1.3.1",
    "tmVersion": "2.4.7",
    "packageVersion": "0.8.4",
    "packageName": "@teachablemachine/image",
    "modelName": "tm-my-image-model",
    "labels": ["cat", "dog"],
    "imageSize": 224,
}


def _write_model_dir(path: Path, metadata: dict[str, object] | None = None) -> Path:
    (path / "model.onnx").write_bytes(b"onnx")
    (path / "metadata.json").write_text(json.dumps(metadata or _METADATA))
    return path


def _fake_session(
    input_shape: list[object] | None = None,
    output_shape: list[object] | None = None,
    scores: list[float] | None = None,
) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input_1", shape=input_shape or [None, 224, 224, 3])]
    session.get_outputs.return_value = [SimpleNamespace(name="output", shape=output_shape or [None, 2])]
    session.run.return_value = [np.array([scores or [0.3, 0.7]], dtype=np.float32)]
    return session


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(make_settings())
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    return _write_model_dir(tmp_path)


def _image() -> np.ndarray:
    return np.zeros((48, 64, 3), dtype=np.uint8)


# ---------------------------------------------------------------------------
# Descriptor parsing
# ---------------------------------------------------------------------------


class TestParseMetadata:
    def test_teachable_machine_descriptor(self) -> None:
        metadata = parse_metadata(json.dumps(_METADATA))
        assert metadata.labels == ["cat", "dog"]
        assert metadata.image_size == 224
        assert metadata.model_name == "tm-my-image-model"

    def test_image_size_defaults_to_224(self) -> None:
        assert parse_metadata('{"labels": ["a"]}').image_size == 224

    def test_malformed_json_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="Malformed"):
            parse_metadata("{not json")

    def test_missing_labels_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="Malformed"):
            parse_metadata('{"imageSize": 224}')

    def test_empty_labels_raises(self) -> None:
        with pytest.raises(ModelLoadError):
            parse_metadata('{"labels": []}')

    def test_unsupported_version_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="Unsupported descriptor version"):
            parse_metadata('{"labels": ["a"], "packageVersion": "1.0.0"}')

    def test_garbled_version_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="Malformed descriptor version"):
            parse_metadata('{"labels": ["a"], "packageVersion": "v-next"}')


class TestToProbabilities:
    def test_distribution_passes_through(self) -> None:
        scores = np.array([0.25, 0.75], dtype=np.float32)
        assert to_probabilities(scores) is scores

    def test_logits_are_softmaxed(self) -> None:
        probs = to_probabilities(np.array([2.0, 0.0, -1.0], dtype=np.float32))
        assert np.isclose(probs.sum(), 1.0)
        assert int(np.argmax(probs)) == 0


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_load_from_local_dir(self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool) -> None:
        mock_session_cls.return_value = _fake_session()
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        assert gateway.is_loaded is False

        handle = await gateway.load()

        assert gateway.is_loaded is True
        assert gateway.labels == ["cat", "dog"]
        assert gateway.model_name == "tm-my-image-model"
        assert handle.layout == "nhwc"
        assert handle.input_name == "input_1"
        assert mock_session_cls.call_args.args[0] == str(model_dir / "model.onnx")

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_load_detects_nchw_input(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=["batch", 3, 224, 224])
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        handle = await gateway.load()
        assert handle.layout == "nchw"

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_second_load_returns_same_handle(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session()
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)

        first = await gateway.load()
        second = await gateway.load()

        assert first is second
        mock_session_cls.assert_called_once()

    async def test_missing_local_file_raises(self, tmp_path: Path, pool: InferencePool) -> None:
        gateway = ModelGateway(make_settings(model_dir=str(tmp_path)), pool)
        with pytest.raises(ModelLoadError, match="not found"):
            await gateway.load()
        assert gateway.is_loaded is False
        assert gateway.labels == []

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_label_count_mismatch_raises(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session(output_shape=[None, 5])
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        with pytest.raises(ModelLoadError, match="2 labels but model outputs 5"):
            await gateway.load()
        assert gateway.is_loaded is False

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_image_size_mismatch_raises(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=[None, 96, 96, 3])
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        with pytest.raises(ModelLoadError, match="image size"):
            await gateway.load()

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_runtime_init_failure_raises(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.side_effect = RuntimeError("invalid protobuf")
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        with pytest.raises(ModelLoadError, match="invalid protobuf"):
            await gateway.load()

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    @patch("snaplabel.ml.model_gateway.hf_hub_download")
    async def test_load_from_hub(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path, pool: InferencePool
    ) -> None:
        _write_model_dir(tmp_path)
        mock_download.side_effect = lambda **kwargs: str(tmp_path / kwargs["filename"])
        mock_session_cls.return_value = _fake_session()
        settings = make_settings(model_repo="someone/classifier", model_revision="main")
        gateway = ModelGateway(settings, pool)

        await gateway.load()

        assert mock_download.call_args_list == [
            call(
                repo_id="someone/classifier",
                filename="model.onnx",
                revision="main",
                cache_dir="/tmp/snaplabel_test_models",
            ),
            call(
                repo_id="someone/classifier",
                filename="metadata.json",
                revision="main",
                cache_dir="/tmp/snaplabel_test_models",
            ),
        ]
        assert gateway.is_loaded is True

    @patch("snaplabel.ml.model_gateway.hf_hub_download")
    async def test_network_failure_raises(self, mock_download: MagicMock, pool: InferencePool) -> None:
        mock_download.side_effect = ConnectionError("network unreachable")
        gateway = ModelGateway(make_settings(), pool)
        with pytest.raises(ModelLoadError, match="network unreachable"):
            await gateway.load()
        assert gateway.is_loaded is False


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    async def test_classify_before_load_raises(self, pool: InferencePool) -> None:
        gateway = ModelGateway(make_settings(), pool)
        with pytest.raises(ModelNotLoadedError):
            await gateway.classify(_image())

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_results_follow_label_order(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        session = _fake_session(scores=[0.3, 0.7])
        mock_session_cls.return_value = session
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        await gateway.load()

        results = await gateway.classify(_image())

        assert [r.label for r in results] == ["cat", "dog"]
        assert results[1].confidence == pytest.approx(0.7)
        feed = session.run.call_args.args[1]
        assert feed["input_1"].shape == (1, 224, 224, 3)

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_logit_output_is_normalized(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session(scores=[4.0, -2.0])
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        await gateway.load()

        results = await gateway.classify(_image())

        assert sum(r.confidence for r in results) == pytest.approx(1.0, abs=1e-5)
        assert results[0].confidence > results[1].confidence

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_runtime_failure_becomes_inference_error(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        session = _fake_session()
        session.run.side_effect = RuntimeError("backend exploded")
        mock_session_cls.return_value = session
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        await gateway.load()

        with pytest.raises(InferenceError, match="backend exploded"):
            await gateway.classify(_image())

    @patch("snaplabel.ml.model_gateway.InferenceSession")
    async def test_malformed_image_becomes_inference_error(
        self, mock_session_cls: MagicMock, model_dir: Path, pool: InferencePool
    ) -> None:
        mock_session_cls.return_value = _fake_session()
        gateway = ModelGateway(make_settings(model_dir=str(model_dir)), pool)
        await gateway.load()

        with pytest.raises(InferenceError, match="HxWx3"):
            await gateway.classify(np.zeros((10, 10), dtype=np.uint8))


# ---------------------------------------------------------------------------
# Execution providers
# ---------------------------------------------------------------------------


class TestProviders:
    def test_provider_building_cpu(self, pool: InferencePool) -> None:
        gateway = ModelGateway(make_settings(device="cpu"), pool)
        assert gateway._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, pool: InferencePool) -> None:
        gateway = ModelGateway(make_settings(device="cuda"), pool)
        provider_name, provider_opts = gateway._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert gateway._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, pool: InferencePool) -> None:
        gateway = ModelGateway(make_settings(device="openvino"), pool)
        provider_name, _provider_opts = gateway._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
