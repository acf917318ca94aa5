"""Pydantic request/response schemas for the PlantScan API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class Prediction(BaseModel):
    """A single disease class with confidence."""

    class_name: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyRequest(BaseModel):
    """JSON classification request with a base64 (or data URL) image."""

    image_data: str | None = None
    model_version: str = "v1.0"


class ClassifyResponse(BaseModel):
    """Response for both classification endpoints."""

    success: bool
    predictions: list[Prediction]
    model_used: Literal["onnx", "gemini"] | None = None
    error: str | None = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str = ""
    conversation_history: list[ChatMessage] = Field(default_factory=list)


class ChatResponse(BaseModel):
    success: bool
    response: str
    error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    runtime_loaded: bool
    models_loaded: list[str]
    remote_configured: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about the configured classification model."""

    name: str
    status: str = Field(description="Model status: 'active', 'available', or 'missing'")
    classes: list[str]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
