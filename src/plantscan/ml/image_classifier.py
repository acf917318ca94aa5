"""Local plant-disease classification pipeline.

``ClassificationPipeline.predict`` never raises: every failure (runtime or
model load, undecodable image, unusable output, timeouts) is reported through
``InferenceResult.success`` so the caller can fall back to a remote service.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from plantscan.errors import InferenceError
from plantscan.ml.postprocessing import (
    CLASS_NAMES,
    ClassPrediction,
    rank_predictions,
    select_output,
    softmax,
)
from plantscan.ml.preprocessing import INPUT_SHAPE, RawImage, preprocess

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from plantscan.config import Settings
    from plantscan.ml.inference import InferencePool
    from plantscan.ml.model_manager import ModelSession, ModelSessionManager

logger = logging.getLogger(__name__)

MODEL_NOT_LOADED = "Model not loaded"
DEFAULT_INPUT_NAME = "input"


@dataclass(frozen=True)
class InferenceResult:
    """Outcome of one classification attempt."""

    success: bool
    predictions: list[ClassPrediction] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> InferenceResult:
        return cls(success=False, predictions=[], error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "predictions": [{"class_name": p.class_name, "confidence": p.confidence} for p in self.predictions],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class ClassificationPipeline:
    """Preprocess -> ONNX session -> softmax -> top-k, behind a non-throwing contract."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelSessionManager,
        pool: InferencePool,
        class_names: Sequence[str] = CLASS_NAMES,
    ) -> None:
        self._settings = settings
        self._model_manager = model_manager
        self._pool = pool
        self._class_names = tuple(class_names)

    @property
    def class_names(self) -> tuple[str, ...]:
        return self._class_names

    async def predict(self, image: RawImage) -> InferenceResult:
        """Classify one image. Never raises except on task cancellation."""
        try:
            session = await asyncio.wait_for(
                self._model_manager.ensure_model(),
                timeout=self._settings.model_load_timeout,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Local model unavailable: %s", str(exc) or type(exc).__name__)
            return InferenceResult.failure(MODEL_NOT_LOADED)

        try:
            logits = await self._pool.run(
                self._infer,
                session,
                image,
                timeout=self._settings.inference_timeout,
            )
            probabilities = softmax(logits)
            predictions = rank_predictions(probabilities, self._class_names, self._settings.top_k)
        except TimeoutError:
            logger.warning("Local inference timed out")
            return InferenceResult.failure("Inference timed out")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Local inference failed: %s", exc, exc_info=True)
            return InferenceResult.failure(str(exc) or type(exc).__name__)

        return InferenceResult(success=True, predictions=predictions)

    def _infer(self, session: ModelSession, image: RawImage) -> NDArray[np.float64]:
        """Runs on a pool thread: build the input binding, run, pick the logits."""
        tensor = preprocess(image, max_pixels=self._settings.max_image_pixels).reshape(INPUT_SHAPE)

        inputs = session.get_inputs()
        input_name = inputs[0].name if inputs else DEFAULT_INPUT_NAME
        output_names = [node.name for node in session.get_outputs()]

        try:
            values = session.run(output_names or None, {input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc
        # Declaration order is preserved so "first output" is well defined.
        outputs = dict(zip(output_names, values, strict=False))
        return select_output(outputs)
