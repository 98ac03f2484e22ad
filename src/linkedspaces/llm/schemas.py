"""Pydantic schemas for the chat-completions envelope and the category payload.

The two are parsed separately: the envelope is the endpoint's own wrapper, the
payload is the JSON document the assistant writes into
``choices[0].message.content``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Transport envelope
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """Assistant message inside a completion choice."""

    model_config = ConfigDict(strict=True)

    role: str | None = None
    content: str


class ChatChoice(BaseModel):
    message: ChatMessage


class ChatCompletionEnvelope(BaseModel):
    """The subset of a chat-completions response the classifier relies on."""

    choices: list[ChatChoice] = Field(min_length=1)

    @property
    def content(self) -> str:
        return self.choices[0].message.content


# ---------------------------------------------------------------------------
# Category payload
# ---------------------------------------------------------------------------


class ContributingTagEntry(BaseModel):
    """A tag the assistant cites as evidence for a category."""

    model_config = ConfigDict(strict=True)

    tag: str
    confidence: float = Field(ge=0.0, le=1.0)


class CategoryEntry(BaseModel):
    model_config = ConfigDict(strict=True)

    category: str
    confidence: float = Field(ge=0.0, le=1.0)
    contributing_tags: list[ContributingTagEntry]


class CategoryPayload(BaseModel):
    """Structured answer the prompt asks the assistant to return."""

    model_config = ConfigDict(strict=True)

    categories: list[CategoryEntry]
