"""Domain types shared by the tagging, categorization, and orchestration stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

PLACE_CATEGORIES: tuple[str, ...] = ("restaurant", "sightseeing", "shopping", "hotel", "park")


@dataclass(frozen=True)
class WeightedTag:
    """A label produced by local image classification with its confidence."""

    label: str
    confidence: float


@dataclass(frozen=True)
class CategoryPrediction:
    """A place category with its confidence and the tags cited as evidence."""

    category: str
    confidence: float
    contributing_tags: tuple[WeightedTag, ...]


@dataclass(frozen=True)
class AnalysisResult:
    """Terminal, caller-facing output of one successful analysis run."""

    top_categories: tuple[CategoryPrediction, ...]
    all_tags: tuple[WeightedTag, ...]


def rank_tags(tags: Iterable[WeightedTag], limit: int | None = None) -> list[WeightedTag]:
    """Order tags by confidence, highest first, keeping input order on ties."""
    ranked = sorted(tags, key=lambda tag: tag.confidence, reverse=True)
    if limit is not None:
        return ranked[:limit]
    return ranked


def tags_from_predictions(predictions: Mapping[str, float]) -> list[WeightedTag]:
    """Convert a label -> confidence map into tags, preserving its iteration order."""
    return [WeightedTag(label=label, confidence=confidence) for label, confidence in predictions.items()]
