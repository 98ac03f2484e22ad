"""Pydantic request/response schemas for the LinkedSpaces API."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from linkedspaces.pipeline.types import AnalysisResult, CategoryPrediction, WeightedTag


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)

    @classmethod
    def from_tag(cls, tag: WeightedTag) -> ImageTag:
        return cls(label=tag.label, confidence=tag.confidence)


class ClassifyImageResponse(BaseModel):
    """Response for the tagging-only endpoint."""

    model: str
    tags: list[ImageTag]


class PlaceCategory(BaseModel):
    """A place category with the tags that support it."""

    category: str
    confidence: float = Field(ge=0.0, le=1.0)
    matched_tags: list[ImageTag]

    @classmethod
    def from_prediction(cls, prediction: CategoryPrediction) -> PlaceCategory:
        return cls(
            category=prediction.category,
            confidence=prediction.confidence,
            matched_tags=[ImageTag.from_tag(tag) for tag in prediction.contributing_tags],
        )


class AnalysisResponse(BaseModel):
    """Response for the full analysis endpoint."""

    top_categories: list[PlaceCategory] = Field(description="At most two categories, best first")
    all_tags: list[ImageTag] = Field(description="Up to ten raw model tags, best first")
    progress: list[str] = Field(description="Status messages emitted while analyzing")
    record_id: uuid.UUID | None = Field(default=None, description="Metadata store record, if stored")

    @classmethod
    def from_result(
        cls, result: AnalysisResult, progress: list[str], record_id: uuid.UUID | None = None
    ) -> AnalysisResponse:
        return cls(
            top_categories=[PlaceCategory.from_prediction(p) for p in result.top_categories],
            all_tags=[ImageTag.from_tag(tag) for tag in result.all_tags],
            progress=progress,
            record_id=record_id,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    pipeline_ready: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    startup_error: str | None = None


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
