"""Image preprocessing: decode, stretch-resize, and normalize to a planar tensor.

The resize is a direct stretch to the model input size, not a letterbox or a
center crop, so non-square photos are distorted.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

import numpy as np
from numpy.typing import NDArray
from PIL import Image, UnidentifiedImageError

from plantscan.errors import PreprocessError

INPUT_WIDTH: Final[int] = 224
INPUT_HEIGHT: Final[int] = 224
INPUT_SHAPE: Final[tuple[int, int, int, int]] = (1, 3, INPUT_HEIGHT, INPUT_WIDTH)

IMAGENET_MEAN: Final[NDArray[np.float32]] = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD: Final[NDArray[np.float32]] = np.array([0.229, 0.224, 0.225], dtype=np.float32)


@dataclass(frozen=True)
class RawImage:
    """A user-supplied image blob."""

    data: bytes
    mime_type: str = "image/jpeg"


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    Any alpha channel is dropped.

    Raises:
        PreprocessError: If the image cannot be decoded or exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise PreprocessError("Empty image data")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise PreprocessError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            return img.convert("RGB")
    except PreprocessError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise PreprocessError(f"Failed to decode image: {exc}") from exc


def to_input_tensor(
    image: Image.Image,
    width: int = INPUT_WIDTH,
    height: int = INPUT_HEIGHT,
) -> NDArray[np.float32]:
    """Resize an RGB image and return a flat CHW float32 tensor of ``3 * width * height``."""
    resized = image.convert("RGB").resize((width, height), resample=Image.Resampling.BILINEAR)
    pixels = np.asarray(resized, dtype=np.float32) / np.float32(255.0)
    normalized = (pixels - IMAGENET_MEAN) / IMAGENET_STD
    # HWC -> CHW: plane 0 is every R in row-major order, then G, then B.
    planar = np.ascontiguousarray(normalized.transpose(2, 0, 1), dtype=np.float32)
    return planar.reshape(-1)


def preprocess(image: RawImage, max_pixels: int | None = None) -> NDArray[np.float32]:
    """Turn a raw image into the model input tensor (flat, planar, normalized)."""
    return to_input_tensor(decode_image(image.data, max_pixels=max_pixels))
