"""Shared fakes: an in-memory ONNX runtime module, sessions, and test images."""

from __future__ import annotations

import io
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from plantscan.config import Settings


class FakeSession:
    """Stands in for ``onnxruntime.InferenceSession``."""

    def __init__(
        self,
        logits: list[float] | None = None,
        output_names: tuple[str, ...] = ("logits",),
        input_name: str = "input",
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.logits = logits if logits is not None else [2.0, 1.0, 0.1]
        self.output_names = output_names
        self.input_name = input_name
        self.error = error
        self.delay = delay
        self.feeds: list[dict[str, Any]] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=self.input_name)]

    def get_outputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=name) for name in self.output_names]

    def run(self, output_names: list[str] | None, input_feed: dict[str, Any]) -> list[Any]:
        self.feeds.append(input_feed)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [np.array([self.logits], dtype=np.float32) for _ in self.output_names]


def make_runtime(session: FakeSession | None = None, **factory_kwargs: Any) -> SimpleNamespace:
    """Build a fake runtime module whose ``InferenceSession`` is a MagicMock factory."""
    factory = MagicMock(return_value=session if session is not None else FakeSession(), **factory_kwargs)
    return SimpleNamespace(
        InferenceSession=factory,
        SessionOptions=SimpleNamespace,
        ExecutionMode=SimpleNamespace(ORT_SEQUENTIAL="ORT_SEQUENTIAL"),
        GraphOptimizationLevel=SimpleNamespace(ORT_DISABLE_ALL="ORT_DISABLE_ALL"),
        set_default_logger_severity=MagicMock(),
    )


def make_importer(runtime: SimpleNamespace | None = None, **kwargs: Any) -> MagicMock:
    if "side_effect" in kwargs:
        return MagicMock(**kwargs)
    return MagicMock(return_value=runtime if runtime is not None else make_runtime())


def image_bytes(
    size: tuple[int, int] = (320, 240),
    color: int | tuple[int, ...] = (90, 160, 60),
    mode: str = "RGB",
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color=color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "plant-disease-model.onnx"
    path.write_bytes(b"onnx")
    return path


@pytest.fixture()
def make_settings(tmp_path: Path) -> Any:
    def _make(**overrides: Any) -> Settings:
        defaults: dict[str, Any] = {
            "models_dir": tmp_path,
            "model_file": "plant-disease-model.onnx",
            "device": "cpu",
            "api_key": None,
            "gemini_api_key": None,
            "model_repo_id": None,
            "max_concurrent": 2,
        }
        defaults.update(overrides)
        return Settings(**defaults)

    return _make
