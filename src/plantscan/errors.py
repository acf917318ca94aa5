"""Error taxonomy for the classification pipeline and remote fallback."""

from __future__ import annotations


class PlantScanError(Exception):
    """Base class for all PlantScan errors."""


class RuntimeLoadError(PlantScanError):
    """The inference runtime could not be imported or is unusable."""


class ModelLoadError(PlantScanError):
    """The model asset is unreachable or could not be turned into a session."""


class PreprocessError(PlantScanError):
    """The input image could not be decoded or exceeds size limits."""


class InvalidOutputError(PlantScanError):
    """The model produced no usable numeric output."""


class InferenceError(PlantScanError):
    """Session execution failed."""


class RemoteServiceError(PlantScanError):
    """A call to the remote generative-AI service failed.

    ``misconfigured`` is set for failures that retrying will not fix: a missing
    API key or a 5xx answer from the service. Everything else (network errors,
    timeouts, 4xx throttling) is treated as transient.
    """

    def __init__(self, message: str, *, status_code: int | None = None, misconfigured: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.misconfigured = misconfigured or (status_code is not None and status_code >= 500)
