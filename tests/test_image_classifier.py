"""Tests for the end-to-end local classification pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import FakeSession, image_bytes, make_importer, make_runtime
from pydantic import ValidationError

from plantscan.config import Settings
from plantscan.ml.image_classifier import MODEL_NOT_LOADED, ClassificationPipeline, InferenceResult
from plantscan.ml.inference import InferencePool
from plantscan.ml.model_manager import ModelSessionManager
from plantscan.ml.preprocessing import RawImage
from plantscan.ml.runtime import RuntimeLoader

PipelineFactory = Callable[..., ClassificationPipeline]


@pytest.fixture()
async def build_pipeline(make_settings: Callable[..., Settings]) -> AsyncIterator[PipelineFactory]:
    pools: list[InferencePool] = []

    def _build(importer: MagicMock | None = None, **overrides: Any) -> ClassificationPipeline:
        settings = make_settings(**overrides)
        pool = InferencePool(settings)
        pools.append(pool)
        loader = RuntimeLoader(settings, importer=importer if importer is not None else make_importer())
        return ClassificationPipeline(settings, ModelSessionManager(settings, loader), pool)

    yield _build
    for pool in pools:
        pool.shutdown()


def _image() -> RawImage:
    return RawImage(image_bytes(), mime_type="image/png")


class TestPredictSuccess:
    async def test_ranked_predictions(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline(make_importer(make_runtime(FakeSession(logits=[2.0, 1.0, 0.1]))))

        result = await pipeline.predict(_image())

        assert result.success is True
        assert result.error is None
        assert [p.class_name for p in result.predictions] == ["Healthy", "Early Blight", "Late Blight"]
        np.testing.assert_allclose([p.confidence for p in result.predictions], [0.659, 0.242, 0.099], atol=1e-3)

    async def test_input_binding_shape_and_name(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        session = FakeSession(input_name="pixel_values")
        pipeline = build_pipeline(make_importer(make_runtime(session)))

        await pipeline.predict(_image())

        feed = session.feeds[0]
        assert list(feed) == ["pixel_values"]
        assert feed["pixel_values"].shape == (1, 3, 224, 224)
        assert feed["pixel_values"].dtype == np.float32

    async def test_truncates_to_top_three(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        logits = [0.1, 0.2, 0.3, 0.4, 3.0, 0.6, 0.7, 0.8, 0.9, 1.0]
        pipeline = build_pipeline(make_importer(make_runtime(FakeSession(logits=logits))))

        result = await pipeline.predict(_image())

        assert len(result.predictions) == 3
        assert result.predictions[0].class_name == "Powdery Mildew"
        confidences = [p.confidence for p in result.predictions]
        assert confidences == sorted(confidences, reverse=True)

    def test_top_k_above_three_rejected(self, make_settings: Callable[..., Settings]) -> None:
        with pytest.raises(ValidationError, match="top_k"):
            make_settings(top_k=4)

    async def test_two_element_output(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline(make_importer(make_runtime(FakeSession(logits=[0.0, 1.0]))))

        result = await pipeline.predict(_image())

        assert result.success is True
        assert [p.class_name for p in result.predictions] == ["Early Blight", "Healthy"]

    async def test_unknown_output_name_uses_first_output(
        self, build_pipeline: PipelineFactory, model_file: Path
    ) -> None:
        session = FakeSession(logits=[0.0, 5.0], output_names=("dense_1", "aux"))
        pipeline = build_pipeline(make_importer(make_runtime(session)))

        result = await pipeline.predict(_image())

        assert result.predictions[0].class_name == "Early Blight"

    async def test_concurrent_predictions_load_once(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        runtime = make_runtime()
        importer = make_importer(runtime)
        pipeline = build_pipeline(importer)

        results = await asyncio.gather(pipeline.predict(_image()), pipeline.predict(_image()))

        assert all(r.success for r in results)
        assert importer.call_count == 1
        runtime.InferenceSession.assert_called_once()


class TestPredictNeverRaises:
    async def test_runtime_import_failure(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline(make_importer(side_effect=ImportError("no onnxruntime")))

        result = await pipeline.predict(_image())

        assert result == InferenceResult(success=False, predictions=[], error=MODEL_NOT_LOADED)

    async def test_runtime_without_entry_point(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline(make_importer(SimpleNamespace()))

        result = await pipeline.predict(_image())

        assert result.success is False
        assert result.error == MODEL_NOT_LOADED

    async def test_model_load_failure(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        runtime = make_runtime(side_effect=RuntimeError("INVALID_PROTOBUF"))
        pipeline = build_pipeline(make_importer(runtime))

        result = await pipeline.predict(_image())

        assert result.success is False
        assert result.error == MODEL_NOT_LOADED
        assert result.predictions == []

    async def test_missing_model_asset(self, build_pipeline: PipelineFactory) -> None:
        pipeline = build_pipeline()

        result = await pipeline.predict(_image())

        assert result.error == MODEL_NOT_LOADED

    async def test_malformed_image(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline()

        result = await pipeline.predict(RawImage(b"\x89PNG not really"))

        assert result.success is False
        assert result.error is not None
        assert "decode" in result.error

    async def test_no_declared_outputs(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        pipeline = build_pipeline(make_importer(make_runtime(FakeSession(output_names=()))))

        result = await pipeline.predict(_image())

        assert result == InferenceResult(success=False, predictions=[], error="Invalid model output")

    async def test_nan_logits(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        session = FakeSession(logits=[float("nan"), 1.0, 2.0])
        pipeline = build_pipeline(make_importer(make_runtime(session)))

        result = await pipeline.predict(_image())

        assert result.success is False
        assert result.predictions == []

    async def test_session_run_error(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        session = FakeSession(error=RuntimeError("Got invalid dimensions for input"))
        pipeline = build_pipeline(make_importer(make_runtime(session)))

        result = await pipeline.predict(_image())

        assert result.success is False
        assert result.error is not None
        assert result.error.startswith("Inference failed")

    async def test_inference_timeout(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        session = FakeSession(delay=0.5)
        pipeline = build_pipeline(make_importer(make_runtime(session)), inference_timeout=0.05)

        result = await pipeline.predict(_image())

        assert result == InferenceResult(success=False, predictions=[], error="Inference timed out")

    async def test_recovers_after_failed_load(self, build_pipeline: PipelineFactory, model_file: Path) -> None:
        importer = make_importer(side_effect=[ImportError("flaky"), make_runtime()])
        pipeline = build_pipeline(importer)

        first = await pipeline.predict(_image())
        second = await pipeline.predict(_image())

        assert first.success is False
        assert second.success is True


def test_inference_result_to_dict() -> None:
    ok = InferenceResult(success=True)
    assert ok.to_dict() == {"success": True, "predictions": []}
    failed = InferenceResult.failure("Model not loaded")
    assert failed.to_dict() == {"success": False, "predictions": [], "error": "Model not loaded"}
