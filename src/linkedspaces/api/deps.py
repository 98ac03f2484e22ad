"""Request-scoped accessors for objects held on ``app.state``."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request, status

if TYPE_CHECKING:
    from linkedspaces.config import Settings
    from linkedspaces.ml.inference import InferencePool
    from linkedspaces.ml.model_manager import OnnxModelManager
    from linkedspaces.pipeline.orchestrator import AnalysisOrchestrator
    from linkedspaces.store import MetadataStore


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def get_store(request: Request) -> MetadataStore | None:
    store: MetadataStore | None = getattr(request.app.state, "store", None)
    return store


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    """Return the pipeline, or 503 if it failed to start (missing key or model)."""
    orchestrator: AnalysisOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        reason = getattr(request.app.state, "startup_error", None) or "Analysis pipeline is not initialized"
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=reason)
    return orchestrator
