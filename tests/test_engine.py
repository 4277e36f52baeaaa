"""Tests for the ONNX engine wrapper and classifier bootstrap."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from conftest import FakeEngine, FakeExtractor
from mediaclassify.config import Settings
from mediaclassify.errors import InvalidInputError, ModelLoadError
from mediaclassify.ml.engine import OnnxInferenceEngine, build_providers, build_session_options
from mediaclassify.pipeline.classifier import MediaClassifier


def _mock_session(input_shape: list[object], output_shape: list[object]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [MagicMock(shape=input_shape)]
    output = MagicMock(shape=output_shape)
    output.name = "scores"
    session.get_outputs.return_value = [output]
    session.get_providers.return_value = ["CPUExecutionProvider"]
    return session


class TestProviders:
    def test_cpu(self) -> None:
        assert build_providers("cpu", 0) == ["CPUExecutionProvider"]

    def test_cuda(self) -> None:
        providers = build_providers("cuda", 1024)
        assert len(providers) == 2
        provider_name, provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert provider_opts["gpu_mem_limit"] == 1024
        assert providers[1] == "CPUExecutionProvider"

    def test_openvino(self) -> None:
        providers = build_providers("openvino", 0)
        provider_name, _provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert providers[1] == "CPUExecutionProvider"

    def test_session_options_threads(self) -> None:
        opts = build_session_options(Settings(intra_op_threads=3, inter_op_threads=2))
        assert opts.intra_op_num_threads == 3
        assert opts.inter_op_num_threads == 2


class TestOnnxInferenceEngine:
    def test_shapes_and_backend(self) -> None:
        engine = OnnxInferenceEngine(_mock_session(["batch", 224, 224, 3], ["batch", 5]))
        assert engine.backend == "CPUExecutionProvider"
        assert engine.input_shape == ("batch", 224, 224, 3)
        assert engine.output_width == 5

    def test_dynamic_output_width(self) -> None:
        engine = OnnxInferenceEngine(_mock_session([1, 224, 224, 3], ["batch", "classes"]))
        assert engine.output_width is None

    def test_predict_feeds_first_input(self) -> None:
        session = _mock_session([None, 2, 2, 3], [None, 2])
        session.get_inputs.return_value[0].name = "pixels"
        session.run.return_value = [np.array([[0.9, 0.1]])]
        engine = OnnxInferenceEngine(session)
        batch = np.zeros((1, 2, 2, 3), dtype=np.float32)

        scores = engine.predict(batch)

        session.run.assert_called_once_with(["scores"], {"pixels": batch})
        assert scores.dtype == np.float32

    @patch("mediaclassify.ml.engine.InferenceSession")
    def test_from_bytes_uses_configured_providers(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _mock_session([None, 8, 8, 3], [None, 2])

        OnnxInferenceEngine.from_bytes(b"model", Settings(device="cuda"))

        _, kwargs = mock_session_cls.call_args
        assert kwargs["providers"][0][0] == "CUDAExecutionProvider"


class TestClassifierCreate:
    async def test_create_from_directory(self, tmp_path: Path) -> None:
        model_dir = tmp_path / "model"
        model_dir.mkdir()
        (model_dir / "model.onnx").write_bytes(b"onnx")
        (model_dir / "metadata.json").write_text(json.dumps({"labels": ["cat", "dog", "bird"]}))
        engine = FakeEngine()

        with patch.object(OnnxInferenceEngine, "from_bytes", return_value=engine) as from_bytes:
            classifier = await MediaClassifier.create(
                Settings(model_source=str(model_dir), warmup=True), extractor=FakeExtractor()
            )
        try:
            from_bytes.assert_called_once()
            assert classifier.labels == ("cat", "dog", "bird")
            assert classifier.source == str(model_dir)
            assert engine.batch_sizes == [1]
        finally:
            await classifier.aclose()

    async def test_create_requires_source(self) -> None:
        with pytest.raises(InvalidInputError, match="model source"):
            await MediaClassifier.create(Settings(model_source=None))

    async def test_create_reports_missing_model(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError):
            await MediaClassifier.create(Settings(model_source=str(tmp_path / "missing")))
