"""API route definitions."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from plantscan.api.middleware import verify_api_key
from plantscan.api.schemas import (
    ChatRequest,
    ChatResponse,
    ClassifyRequest,
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    Prediction,
)
from plantscan.errors import RemoteServiceError
from plantscan.ml.preprocessing import RawImage

if TYPE_CHECKING:
    from plantscan.config import Settings
    from plantscan.ml.fallback import ClassificationOutcome, FallbackClassifier
    from plantscan.ml.image_classifier import ClassificationPipeline
    from plantscan.ml.inference import InferencePool
    from plantscan.ml.model_manager import ModelSessionManager
    from plantscan.remote.gemini import GeminiClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_DATA_URL_RE = re.compile(r"^data:(image/[a-z0-9.+-]+);base64,", re.IGNORECASE)

CHAT_APOLOGY = "I apologize, but I encountered an error. Please try again or rephrase your question."


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelSessionManager:
    manager: ModelSessionManager = request.app.state.model_manager
    return manager


def _get_classifier(request: Request) -> FallbackClassifier:
    classifier: FallbackClassifier = request.app.state.classifier
    return classifier


def _get_gemini(request: Request) -> GeminiClient:
    gemini: GeminiClient = request.app.state.gemini
    return gemini


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _to_response(outcome: ClassificationOutcome) -> ClassifyResponse:
    result = outcome.result
    return ClassifyResponse(
        success=result.success,
        predictions=[Prediction(class_name=p.class_name, confidence=p.confidence) for p in result.predictions],
        model_used=outcome.model_used,  # type: ignore[arg-type]
        error=result.error,
    )


def decode_image_data(image_data: str) -> RawImage:
    """Decode a base64 payload, accepting an optional ``data:image/...;base64,`` prefix.

    Raises:
        ValueError: If the payload is not valid base64 or decodes to nothing.
    """
    mime_type = "image/jpeg"
    match = _DATA_URL_RE.match(image_data)
    if match:
        mime_type = match.group(1).lower()
        image_data = image_data[match.end() :]
    try:
        data = base64.b64decode(image_data, validate=True)
    except binascii.Error as exc:
        raise ValueError("Invalid base64 image data") from exc
    if not data:
        raise ValueError("Invalid base64 image data")
    return RawImage(data=data, mime_type=mime_type)


@router.post(
    "/classify-image",
    response_model=ClassifyResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Classify an uploaded plant photo",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyResponse | JSONResponse:
    """Classify an uploaded image, falling back to the remote model when needed."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if not data:
        return _error(status.HTTP_400_BAD_REQUEST, "No image data provided")
    if len(data) > settings.max_file_size:
        return _error(status.HTTP_413_CONTENT_TOO_LARGE, "File exceeds size limit")

    image = RawImage(data=data, mime_type=file.content_type or "image/jpeg")
    outcome = await _get_classifier(request).classify(image)
    return _to_response(outcome)


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
    summary="Classify a base64-encoded plant photo",
)
async def classify(request: Request, body: ClassifyRequest) -> ClassifyResponse | JSONResponse:
    """Classify a base64 image payload, falling back to the remote model when needed."""
    if not body.image_data:
        return _error(status.HTTP_400_BAD_REQUEST, "No image data provided")
    try:
        image = decode_image_data(body.image_data)
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    logger.info("Classifying image (%d bytes, model_version=%s)", len(image.data), body.model_version)
    outcome = await _get_classifier(request).classify(image)
    return _to_response(outcome)


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ChatResponse},
    },
    summary="Ask the plant-care assistant",
)
async def chat(request: Request, body: ChatRequest) -> ChatResponse | JSONResponse:
    """Answer a plant-care question in the context of the recent conversation."""
    if not body.message.strip():
        return _error(status.HTTP_400_BAD_REQUEST, "No message provided")

    gemini = _get_gemini(request)
    if not gemini.configured:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ChatResponse(success=False, response="", error="Gemini API key not configured").model_dump(),
        )

    history = [(msg.role, msg.content) for msg in body.conversation_history]
    try:
        reply = await gemini.chat(body.message, history)
    except RemoteServiceError as exc:
        logger.error("Chat failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ChatResponse(success=False, response=CHAT_APOLOGY, error="Failed to generate response").model_dump(),
        )
    return ChatResponse(success=True, response=reply)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        runtime_loaded=manager.runtime_loaded,
        models_loaded=manager.get_loaded_models(),
        remote_configured=_get_gemini(request).configured,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the classification model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the configured model, whether it is loaded, and its classes."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    pipeline: ClassificationPipeline = request.app.state.pipeline

    name = settings.model_file
    if name in manager.get_loaded_models():
        model_status = "active"
    elif settings.model_path.is_file() or settings.model_repo_id is not None:
        model_status = "available"
    else:
        model_status = "missing"

    return ModelsResponse(models=[ModelInfo(name=name, status=model_status, classes=list(pipeline.class_names))])
