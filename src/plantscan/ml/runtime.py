"""Lazy, single-flight loading of the ONNX Runtime module.

The runtime is imported on first use rather than at module import time, so the
API can start (and serve the remote fallback) on hosts where the runtime is
missing or broken. Concurrent callers share one in-flight load.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from plantscan.errors import RuntimeLoadError

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import ModuleType

    from plantscan.config import Settings

logger = logging.getLogger(__name__)

# ORT log severity: 0=verbose ... 3=error, 4=fatal
_RUNTIME_LOG_SEVERITY: int = 3


@dataclass(frozen=True)
class RuntimeHandle:
    """A loaded runtime module with the fixed options every session uses."""

    module: ModuleType
    session_options: Any
    providers: list[str | tuple[str, dict[str, object]]]


class RuntimeLoader:
    """Imports and configures the inference runtime exactly once."""

    def __init__(
        self,
        settings: Settings,
        importer: Callable[[str], ModuleType] = importlib.import_module,
    ) -> None:
        self._settings = settings
        self._importer = importer
        self._handle: RuntimeHandle | None = None
        self._pending: asyncio.Task[RuntimeHandle] | None = None

    @property
    def loaded(self) -> bool:
        return self._handle is not None

    async def ensure_runtime(self) -> RuntimeHandle:
        """Return the runtime handle, loading it on first call.

        Late joiners await the same pending load. The shared load is shielded,
        so a waiter that is cancelled or times out does not abort it for the
        others.

        Raises:
            RuntimeLoadError: If the runtime cannot be imported or does not
                expose ``InferenceSession``.
        """
        if self._handle is not None:
            return self._handle
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._pending)

    async def _load(self) -> RuntimeHandle:
        name = self._settings.runtime_module
        try:
            loop = asyncio.get_running_loop()
            try:
                module = await loop.run_in_executor(None, self._importer, name)
            except ImportError as exc:
                raise RuntimeLoadError(f"Failed to load runtime '{name}': {exc}") from exc

            if not callable(getattr(module, "InferenceSession", None)):
                raise RuntimeLoadError(f"Runtime '{name}' loaded but does not expose InferenceSession")

            try:
                session_options = self._build_session_options(module)
            except (AttributeError, TypeError) as exc:
                raise RuntimeLoadError(f"Runtime '{name}' could not be configured: {exc}") from exc

            handle = RuntimeHandle(
                module=module,
                session_options=session_options,
                providers=self._build_providers(),
            )
        except BaseException:
            # Failed loads are not cached; the next caller retries.
            self._pending = None
            raise

        self._handle = handle
        self._pending = None
        logger.info("Loaded runtime %s (providers=%s)", name, handle.providers)
        return handle

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self, module: ModuleType) -> Any:
        set_severity = getattr(module, "set_default_logger_severity", None)
        if callable(set_severity):
            set_severity(_RUNTIME_LOG_SEVERITY)

        opts = module.SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = module.ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = module.GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
