"""Turn raw model outputs into ranked class predictions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import numpy as np

from plantscan.errors import InvalidOutputError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import ArrayLike, NDArray

# Models exported from different toolchains name their output differently.
# These are tried in order; if none is present the first declared output wins.
OUTPUT_NAME_CANDIDATES: Final[tuple[str, ...]] = ("logits", "output")

CLASS_NAMES: Final[tuple[str, ...]] = (
    "Healthy",
    "Early Blight",
    "Late Blight",
    "Bacterial Spot",
    "Powdery Mildew",
    "Mosaic Virus",
    "Leaf Scorch",
    "Rust",
    "Black Rot",
    "Anthracnose",
)


@dataclass(frozen=True)
class ClassPrediction:
    """A single classification prediction."""

    class_name: str
    confidence: float


def select_output(
    outputs: Mapping[str, Any],
    candidates: Sequence[str] = OUTPUT_NAME_CANDIDATES,
) -> NDArray[np.float64]:
    """Pick the logit tensor from a name -> tensor mapping and flatten it.

    Raises:
        InvalidOutputError: If there is no output, or it holds no finite numeric data.
    """
    tensor = next((outputs[name] for name in candidates if name in outputs), None)
    if tensor is None:
        tensor = next(iter(outputs.values()), None)
    if tensor is None:
        raise InvalidOutputError("Invalid model output")

    try:
        logits = np.asarray(tensor, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise InvalidOutputError("Invalid model output") from exc
    if logits.size == 0:
        raise InvalidOutputError("Invalid model output")
    if not np.all(np.isfinite(logits)):
        raise InvalidOutputError("Model output contains non-finite values")
    return logits


def softmax(logits: ArrayLike) -> NDArray[np.float64]:
    """Numerically stable softmax over a flat logit vector."""
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    exps = np.exp(values - values.max())
    return exps / exps.sum()


def class_name_for(index: int, class_names: Sequence[str] = CLASS_NAMES) -> str:
    if 0 <= index < len(class_names):
        return class_names[index]
    return f"Disease {index}"


def rank_predictions(
    probabilities: ArrayLike,
    class_names: Sequence[str] = CLASS_NAMES,
    top_k: int = 3,
) -> list[ClassPrediction]:
    """Label, clamp, and sort probabilities; keep the ``top_k`` most confident."""
    clamped = np.clip(np.asarray(probabilities, dtype=np.float64).reshape(-1), 0.0, 1.0)
    predictions = [
        ClassPrediction(class_name=class_name_for(index, class_names), confidence=float(p))
        for index, p in enumerate(clamped)
    ]
    predictions.sort(key=lambda pred: pred.confidence, reverse=True)
    return predictions[:top_k]
