"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status

from linkedspaces.api.deps import (
    get_inference_pool,
    get_model_manager,
    get_orchestrator,
    get_settings,
    get_store,
)
from linkedspaces.api.middleware import verify_api_key
from linkedspaces.api.schemas import (
    AnalysisResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from linkedspaces.errors import ImageDecodeError, InferenceError
from linkedspaces.ml.model_manager import MODEL_REGISTRY

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    limit = get_settings(request).max_file_size
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds the {limit} byte limit",
        )
    return data


@router.post(
    "/analyze",
    response_model=AnalysisResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a photo into place categories",
)
async def analyze(
    request: Request,
    file: UploadFile,
    photo_identifier: Annotated[str | None, Form()] = None,
) -> AnalysisResponse:
    """Tag an uploaded photo locally, categorize the tags remotely, and return the ranking."""
    orchestrator = get_orchestrator(request)
    data = await _read_upload(request, file)

    progress: list[str] = []
    result = await orchestrator.analyze(data, progress.append)
    if result is None:
        detail = progress[-1] if progress else "Analysis failed"
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=detail)

    record_id = None
    store = get_store(request)
    if store is not None:
        identifier = photo_identifier or file.filename or "upload"
        try:
            record = await asyncio.to_thread(store.append, identifier, [tag.label for tag in result.all_tags])
        except OSError as exc:
            logger.warning("Could not record analysis of %s in %s: %s", identifier, store.path, exc)
        else:
            record_id = record.id

    return AnalysisResponse.from_result(result, progress, record_id)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Tag an image with the local model only",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Return the thresholded tags for an uploaded image, best first."""
    orchestrator = get_orchestrator(request)
    data = await _read_upload(request, file)
    extractor = orchestrator.tag_extractor

    try:
        pool = get_inference_pool(request)
        pixels = await pool.run(orchestrator.preprocessor.decode_image, data)
        tags = await pool.run(extractor.extract_tags, pixels)
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except InferenceError as exc:
        logger.warning("Tagging failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ClassifyImageResponse(model=extractor.model_name, tags=[ImageTag.from_tag(tag) for tag in tags])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    ready = getattr(request.app.state, "orchestrator", None) is not None
    return HealthResponse(
        status="ok" if ready else "degraded",
        gpu=settings.device == "cuda",
        pipeline_ready=ready,
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        startup_error=getattr(request.app.state, "startup_error", None),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classification models and which one is configured."""
    active = get_settings(request).classification_model
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
