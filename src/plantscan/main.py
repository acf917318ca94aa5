"""FastAPI application entry point."""

from __future__ import annotations

import importlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from types import ModuleType

    import httpx

    from plantscan.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plantscan.api.routes import router
from plantscan.config import get_settings
from plantscan.errors import PlantScanError
from plantscan.ml.fallback import FallbackClassifier, GeminiStrategy, LocalStrategy
from plantscan.ml.image_classifier import ClassificationPipeline
from plantscan.ml.inference import InferencePool
from plantscan.ml.model_manager import ModelSessionManager
from plantscan.ml.runtime import RuntimeLoader
from plantscan.remote.gemini import GeminiClient

logger = logging.getLogger(__name__)


def init_state(
    app: FastAPI,
    settings: Settings,
    *,
    importer: Callable[[str], ModuleType] = importlib.import_module,
    gemini_transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Build the service graph and attach it to ``app.state``."""
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = ModelSessionManager(settings, RuntimeLoader(settings, importer=importer))
    app.state.pipeline = ClassificationPipeline(settings, app.state.model_manager, app.state.inference_pool)
    app.state.gemini = GeminiClient(settings, transport=gemini_transport)
    app.state.classifier = FallbackClassifier(
        local=LocalStrategy(app.state.pipeline),
        remote=GeminiStrategy(app.state.gemini),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PlantScan (device=%s, max_concurrent=%s, model=%s, remote=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_path,
        "configured" if settings.gemini_api_key else "disabled",
    )

    init_state(app, settings)

    if settings.preload_model:
        try:
            await app.state.model_manager.ensure_model()
        except (PlantScanError, TimeoutError) as exc:
            logger.warning("Model preload failed, local inference will retry on demand: %s", exc)

    logger.info("PlantScan ready")
    yield

    logger.info("Shutting down PlantScan")
    await app.state.gemini.aclose()
    app.state.model_manager.shutdown()
    app.state.inference_pool.shutdown()
    logger.info("PlantScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PlantScan",
        description="Plant disease classification with ONNX inference and a generative-AI fallback",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("plantscan.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
