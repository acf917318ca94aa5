"""Model session manager: resolve, load, and cache the classification model.

The model asset lives in the local models directory. When it is missing and a
Hugging Face repo id is configured, it is downloaded there first. The session
is created once per manager, lazily, and shared by every request.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from huggingface_hub import hf_hub_download

from plantscan.errors import ModelLoadError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from plantscan.config import Settings
    from plantscan.ml.runtime import RuntimeHandle, RuntimeLoader

logger = logging.getLogger(__name__)


class NodeArg(Protocol):
    @property
    def name(self) -> str: ...


class ModelSession(Protocol):
    """The subset of ``onnxruntime.InferenceSession`` the pipeline relies on."""

    def get_inputs(self) -> Sequence[NodeArg]: ...

    def get_outputs(self) -> Sequence[NodeArg]: ...

    def run(self, output_names: Sequence[str] | None, input_feed: Mapping[str, Any]) -> list[Any]: ...


class ModelSessionManager:
    """Loads one ONNX inference session on demand and keeps it for the process."""

    def __init__(self, settings: Settings, runtime_loader: RuntimeLoader) -> None:
        self._settings = settings
        self._runtime_loader = runtime_loader
        self._models_dir = Path(settings.models_dir)

        self._session: ModelSession | None = None
        self._session_path: Path | None = None
        self._pending: asyncio.Task[ModelSession] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def runtime_loaded(self) -> bool:
        return self._runtime_loader.loaded

    async def ensure_model(self, path: str | Path | None = None) -> ModelSession:
        """Return the cached session, loading it on first call.

        The cache is not keyed by path: once a session exists it is returned
        whatever ``path`` is passed.

        Raises:
            RuntimeLoadError: If the runtime could not be loaded.
            ModelLoadError: If the model asset is unreachable or malformed.
        """
        if self._session is not None:
            return self._session
        if self._pending is None:
            model_path = Path(path) if path is not None else self._settings.model_path
            self._pending = asyncio.ensure_future(self._load(model_path))
        return await asyncio.shield(self._pending)

    def ensure_downloaded(self, model_path: Path) -> Path:
        """Return a local path for the model, downloading it if configured to."""
        if model_path.is_file():
            return model_path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelLoadError(f"Model asset not found: {model_path}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=model_path.name,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to download {model_path.name} from {repo_id}: {exc}") from exc
        logger.info("Downloaded %s to %s", model_path.name, downloaded)
        return downloaded

    def get_loaded_models(self) -> list[str]:
        """Return the file names of loaded models."""
        if self._session is None or self._session_path is None:
            return []
        return [self._session_path.name]

    def shutdown(self) -> None:
        """Drop the cached session."""
        self._session = None
        self._session_path = None
        logger.info("Model session cleared")

    # -- Internal -----------------------------------------------------------

    async def _load(self, model_path: Path) -> ModelSession:
        try:
            runtime = await asyncio.wait_for(
                self._runtime_loader.ensure_runtime(),
                timeout=self._settings.runtime_load_timeout,
            )
            loop = asyncio.get_running_loop()
            resolved = await loop.run_in_executor(None, self.ensure_downloaded, model_path)
            session = await loop.run_in_executor(None, partial(self._create_session, runtime, resolved))
        except BaseException:
            self._pending = None
            raise

        self._session = session
        self._session_path = resolved
        self._pending = None
        logger.info("Loaded session for %s", resolved)
        return session

    @staticmethod
    def _create_session(runtime: RuntimeHandle, model_path: Path) -> ModelSession:
        try:
            session: ModelSession = runtime.module.InferenceSession(
                str(model_path),
                sess_options=runtime.session_options,
                providers=runtime.providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {model_path}: {exc}") from exc
        return session
