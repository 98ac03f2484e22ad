"""Prompt construction for place categorization."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from linkedspaces.pipeline.types import WeightedTag

CONFIDENCE_DECIMALS = 2

SYSTEM_PROMPT = "You are a helpful assistant that classifies images based on their tags."

_RESPONSE_SHAPE = """{
    "categories": [
        {
            "category": "category_name",
            "confidence": 0.0,
            "contributing_tags": [
                {
                    "tag": "tag_name",
                    "confidence": 0.0
                }
            ]
        }
    ]
}"""


def format_confidence(confidence: float) -> str:
    """Render a confidence the way it appears in the prompt."""
    return f"{confidence:.{CONFIDENCE_DECIMALS}f}"


def _join_categories(categories: Sequence[str]) -> str:
    if len(categories) == 1:
        return categories[0]
    return f"{', '.join(categories[:-1])}, or {categories[-1]}"


def build_categorization_prompt(tags: Sequence[WeightedTag], categories: Sequence[str]) -> str:
    """Build the user instruction listing the tags and the required JSON shape."""
    tag_lines = "\n".join(f"- {tag.label} (confidence: {format_confidence(tag.confidence)})" for tag in tags)
    return (
        "Given these image tags and their confidence scores, classify the image into one of these "
        f"categories: {_join_categories(categories)}.\n"
        "For each category, provide a confidence score (0-1) and list which tags contributed to that "
        "classification. Only cite tags from the list below, with the confidence shown.\n"
        "\n"
        "Tags:\n"
        f"{tag_lines}\n"
        "\n"
        "Respond with JSON only, using exactly this structure:\n"
        f"{_RESPONSE_SHAPE}"
    )


def build_messages(tags: Sequence[WeightedTag], categories: Sequence[str]) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_categorization_prompt(tags, categories)},
    ]
