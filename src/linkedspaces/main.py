"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from linkedspaces.api.routes import router
from linkedspaces.config import Settings, get_settings
from linkedspaces.errors import ConfigurationError, ModelUnavailableError
from linkedspaces.ml.inference import InferencePool
from linkedspaces.ml.model_manager import OnnxModelManager
from linkedspaces.pipeline.orchestrator import AnalysisOrchestrator
from linkedspaces.store import MetadataStore

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, pool, model manager, store, and pipeline to ``app.state``.

    A missing credential or model leaves the pipeline unset and records why,
    so the service still starts and reports the problem on /health.
    """
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings.max_concurrent)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.store = MetadataStore(settings.store_path) if settings.store_path else None
    app.state.orchestrator = None
    app.state.startup_error = None

    try:
        app.state.orchestrator = AnalysisOrchestrator.from_settings(
            settings,
            pool=app.state.inference_pool,
            model_manager=app.state.model_manager,
        )
    except (ConfigurationError, ModelUnavailableError) as exc:
        logger.error("Analysis pipeline unavailable: %s", exc)
        app.state.startup_error = str(exc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LinkedSpaces (device=%s, max_concurrent=%s, model=%s, llm=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.openai_model,
    )

    init_state(app, settings)

    logger.info("LinkedSpaces ready")
    yield

    logger.info("Shutting down LinkedSpaces")
    if app.state.orchestrator is not None:
        await app.state.orchestrator.aclose()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("LinkedSpaces shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LinkedSpaces",
        description="Photo place classification: local image tagging plus LLM categorization",
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
    """Console entry point: serve the API with uvicorn."""
    settings = get_settings()
    uvicorn.run("linkedspaces.main:app", host=settings.host, port=settings.port)
