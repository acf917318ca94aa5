"""Gemini REST client for remote image classification and plant-care chat."""

from __future__ import annotations

import base64
import logging
import re
from typing import TYPE_CHECKING, Any, Final

import httpx

from plantscan.errors import RemoteServiceError
from plantscan.ml.image_classifier import InferenceResult
from plantscan.ml.postprocessing import ClassPrediction

if TYPE_CHECKING:
    from collections.abc import Sequence

    from plantscan.config import Settings
    from plantscan.ml.preprocessing import RawImage

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT: Final[int] = 6

CLASSIFY_PROMPT: Final[str] = """Analyze this plant image and identify any diseases or health issues.

Please provide:
1. The most likely disease or condition (or "Healthy" if no issues detected)
2. Your confidence level as a decimal between 0 and 1
3. Brief explanation of visible symptoms

Focus on common plant diseases like:
- Early Blight
- Late Blight
- Bacterial Spot
- Powdery Mildew
- Mosaic Virus
- Leaf Scorch
- Rust
- Black Rot
- Anthracnose

Respond in this exact format:
Disease: [disease name or "Healthy"]
Confidence: [0.0-1.0]
Symptoms: [brief description]"""

CHAT_SYSTEM_PROMPT: Final[str] = """You are an expert plant health assistant specializing in plant disease \
identification, treatment, and care. You have extensive knowledge about:

- Plant diseases (fungal, bacterial, viral)
- Treatment methods (organic and chemical)
- Prevention strategies
- Plant care and maintenance
- Seasonal plant health management
- Soil health and nutrition
- Pest control
- Watering and fertilization schedules

Provide detailed, practical, and actionable advice. Be conversational and helpful. If asked about specific \
diseases, provide comprehensive information including symptoms, causes, treatment options, and prevention methods."""

CHAT_PRIMER_REPLY: Final[str] = (
    "I understand. I'm ready to help with plant health questions, disease identification, "
    "and care advice. What would you like to know?"
)

_CLASSIFY_GENERATION_CONFIG: Final[dict[str, float | int]] = {
    "temperature": 0.3,
    "topK": 32,
    "topP": 1,
    "maxOutputTokens": 512,
}

_CHAT_GENERATION_CONFIG: Final[dict[str, float | int]] = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1024,
}

_SAFETY_SETTINGS: Final[list[dict[str, str]]] = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

_DISEASE_RE = re.compile(r"Disease:\s*(.+)", re.IGNORECASE)
# Numeric prefix only, so "Confidence: 0.85." still reads as 0.85.
_CONFIDENCE_RE = re.compile(r"Confidence:\s*(\d+(?:\.\d+)?|\.\d+)", re.IGNORECASE)


def parse_classification(text: str) -> list[ClassPrediction]:
    """Parse the ``Disease:`` / ``Confidence:`` reply into three predictions.

    The model only names one condition; two alternatives are appended so the
    result has the same shape as the local pipeline's top-3, sorted by
    descending confidence.
    """
    disease_match = _DISEASE_RE.search(text)
    confidence_match = _CONFIDENCE_RE.search(text)

    disease = disease_match.group(1).strip() if disease_match else "Unknown Disease"
    confidence = float(confidence_match.group(1)) if confidence_match else 0.5

    predictions = [ClassPrediction(class_name=disease, confidence=min(max(confidence, 0.0), 1.0))]
    if disease != "Healthy":
        predictions.append(ClassPrediction("Healthy", max(0.0, 1 - confidence - 0.1)))
        predictions.append(ClassPrediction("Other Disease", 0.1))
    else:
        predictions.append(ClassPrediction("Early Blight", max(0.0, 1 - confidence - 0.05)))
        predictions.append(ClassPrediction("Bacterial Spot", 0.05))
    predictions.sort(key=lambda pred: pred.confidence, reverse=True)
    return predictions


class GeminiClient:
    """Thin async wrapper over the Gemini ``generateContent`` endpoint."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.gemini_base_url,
            timeout=settings.gemini_timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._settings.gemini_api_key)

    async def classify_image(self, image: RawImage) -> InferenceResult:
        """Ask the vision model for a diagnosis of ``image``.

        Raises:
            RemoteServiceError: On a missing key, HTTP or transport failure,
                or an empty answer.
        """
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": CLASSIFY_PROMPT},
                        {
                            "inline_data": {
                                "mime_type": image.mime_type or "image/jpeg",
                                "data": base64.b64encode(image.data).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": _CLASSIFY_GENERATION_CONFIG,
        }
        text = await self._generate(payload)
        return InferenceResult(success=True, predictions=parse_classification(text))

    async def chat(self, message: str, history: Sequence[tuple[str, str]] = ()) -> str:
        """Answer ``message`` given prior ``(role, content)`` turns.

        Only the last few turns are forwarded; ``assistant`` turns are sent
        with the ``model`` role.
        """
        contents: list[dict[str, Any]] = [
            {"role": "user", "parts": [{"text": CHAT_SYSTEM_PROMPT}]},
            {"role": "model", "parts": [{"text": CHAT_PRIMER_REPLY}]},
        ]
        for role, content in list(history)[-CHAT_HISTORY_LIMIT:]:
            contents.append({"role": "model" if role == "assistant" else "user", "parts": [{"text": content}]})
        contents.append({"role": "user", "parts": [{"text": message}]})

        payload = {
            "contents": contents,
            "generationConfig": _CHAT_GENERATION_CONFIG,
            "safetySettings": _SAFETY_SETTINGS,
        }
        text = await self._generate(payload)
        return text.strip()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _generate(self, payload: dict[str, Any]) -> str:
        api_key = self._settings.gemini_api_key
        if not api_key:
            raise RemoteServiceError("Gemini API key not configured", misconfigured=True)

        url = f"/models/{self._settings.gemini_model}:generateContent"
        try:
            response = await self._client.post(url, json=payload, headers={"x-goog-api-key": api_key})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("Gemini API error %s: %s", status_code, exc.response.text)
            raise RemoteServiceError(f"Gemini API error: {status_code}", status_code=status_code) from exc
        except httpx.HTTPError as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise RemoteServiceError(f"Gemini request failed: {exc}") from exc

        try:
            data = response.json()
            return str(data["candidates"][0]["content"]["parts"][0]["text"])
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise RemoteServiceError("No response generated from Gemini") from exc
