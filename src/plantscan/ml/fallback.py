"""Local-then-remote classification.

Each stage is a strategy returning an ``InferenceResult``; the decision to fall
back is a plain inspection of that result. A failed or empty local result is
"no local answer", never "zero-confidence healthy".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from plantscan.errors import RemoteServiceError
from plantscan.ml.image_classifier import InferenceResult

if TYPE_CHECKING:
    from plantscan.ml.image_classifier import ClassificationPipeline
    from plantscan.ml.preprocessing import RawImage
    from plantscan.remote.gemini import GeminiClient

logger = logging.getLogger(__name__)

SERVICE_MISCONFIGURED = "Classification service is misconfigured. Please contact support."
SERVICE_UNAVAILABLE = "Classification service is temporarily unavailable. Please try again."


class ClassificationStrategy(Protocol):
    """One way of classifying an image."""

    @property
    def name(self) -> str: ...

    async def classify(self, image: RawImage) -> InferenceResult: ...


class LocalStrategy:
    """On-host ONNX pipeline."""

    name = "onnx"

    def __init__(self, pipeline: ClassificationPipeline) -> None:
        self._pipeline = pipeline

    async def classify(self, image: RawImage) -> InferenceResult:
        return await self._pipeline.predict(image)


class GeminiStrategy:
    """Remote vision model; converts service errors into failure results."""

    name = "gemini"

    def __init__(self, client: GeminiClient) -> None:
        self._client = client

    async def classify(self, image: RawImage) -> InferenceResult:
        try:
            return await self._client.classify_image(image)
        except RemoteServiceError as exc:
            logger.error("Remote classification failed: %s", exc)
            return InferenceResult.failure(SERVICE_MISCONFIGURED if exc.misconfigured else SERVICE_UNAVAILABLE)


@dataclass(frozen=True)
class ClassificationOutcome:
    """The final result and the strategy that produced it."""

    result: InferenceResult
    model_used: str


class FallbackClassifier:
    """Tries the local strategy first and the remote one when it has no answer."""

    def __init__(self, local: ClassificationStrategy, remote: ClassificationStrategy) -> None:
        self._local = local
        self._remote = remote

    async def classify(self, image: RawImage) -> ClassificationOutcome:
        local_result = await self._local.classify(image)
        if local_result.success and local_result.predictions:
            return ClassificationOutcome(result=local_result, model_used=self._local.name)

        logger.warning(
            "Local classification unavailable (%s), falling back to %s",
            local_result.error or "no predictions",
            self._remote.name,
        )
        remote_result = await self._remote.classify(image)
        return ClassificationOutcome(result=remote_result, model_used=self._remote.name)
