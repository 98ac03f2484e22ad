"""Remote place categorization over an OpenAI-compatible chat-completions API.

Flow:
    top-N tags -> prompt -> POST /chat/completions -> envelope -> payload -> validated predictions

The response is untrusted. The envelope and the payload it carries are parsed
as two separate steps so transport-shape and schema failures stay
distinguishable. Any invalid entry fails the whole call; there is no partial
acceptance and no retry here.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Self

import httpx
from pydantic import ValidationError

from linkedspaces.config import validate_api_key
from linkedspaces.errors import AuthenticationError, MalformedResponseError, NetworkError
from linkedspaces.llm.prompts import build_messages, format_confidence
from linkedspaces.llm.schemas import CategoryPayload, ChatCompletionEnvelope
from linkedspaces.pipeline.types import PLACE_CATEGORIES, CategoryPrediction, WeightedTag, rank_tags

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    from linkedspaces.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 10

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*\n(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)


class CategoryClassifier:
    """Client that turns weighted tags into ranked place-category predictions."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        temperature: float = 0.3,
        timeout: float = 30.0,
        categories: Sequence[str] = PLACE_CATEGORIES,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = validate_api_key(api_key)
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._temperature = temperature
        self._categories = tuple(categories)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> CategoryClassifier:
        return cls(
            settings.require_openai_api_key(),
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            temperature=settings.temperature,
            timeout=settings.request_timeout,
            client=client,
        )

    @property
    def categories(self) -> tuple[str, ...]:
        return self._categories

    async def classify(self, tags: Sequence[WeightedTag], top_n: int = DEFAULT_TOP_N) -> list[CategoryPrediction]:
        """Categorize an image from its tags.

        Args:
            tags: Weighted tags in extraction order; they need not be sorted.
            top_n: How many of the highest-confidence tags to send.

        Returns:
            Predictions sorted by confidence (descending). Empty when there are
            no tags to send.

        Raises:
            NetworkError: Transport failure or non-success status.
            AuthenticationError: The endpoint rejected the credential.
            MalformedResponseError: The envelope or payload does not conform.
        """
        if top_n < 1:
            raise ValueError(f"top_n must be positive, got {top_n}")

        selected = rank_tags(tags, top_n)
        if not selected:
            logger.info("No tags to categorize, skipping remote call")
            return []

        content = await self._request(selected)
        payload = self._parse_payload(content)
        predictions = self._to_predictions(payload, selected)
        logger.info(
            "Categorized %d tags into %s",
            len(selected),
            ", ".join(f"{p.category}={p.confidence:.2f}" for p in predictions) or "nothing",
        )
        return predictions

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # -- Internal -----------------------------------------------------------

    async def _request(self, tags: Sequence[WeightedTag]) -> str:
        body = {
            "model": self._model,
            "messages": build_messages(tags, self._categories),
            "temperature": self._temperature,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        logger.debug("POST %s (model=%s, tags=%d)", self._url, self._model, len(tags))
        try:
            response = await self._client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Request to {self._url} failed: {exc}") from exc

        if response.status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            raise AuthenticationError(f"Credential rejected by {self._url} ({response.status_code})")
        if not response.is_success:
            raise NetworkError(
                f"{self._url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        return self._parse_envelope(response.content)

    @staticmethod
    def _parse_envelope(raw: bytes) -> str:
        try:
            envelope = ChatCompletionEnvelope.model_validate_json(raw)
        except ValidationError as exc:
            raise MalformedResponseError(f"Unexpected response envelope: {exc}", layer="envelope") from exc
        return envelope.content

    @staticmethod
    def _parse_payload(content: str) -> CategoryPayload:
        fenced = _CODE_FENCE.match(content)
        text = fenced.group("body") if fenced else content
        try:
            return CategoryPayload.model_validate_json(text)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"Assistant reply is not a valid category payload: {exc}",
                layer="payload",
            ) from exc

    def _to_predictions(self, payload: CategoryPayload, sent: Sequence[WeightedTag]) -> list[CategoryPrediction]:
        # A citation must repeat the label and the confidence exactly as rendered in the prompt.
        known: dict[tuple[str, float], WeightedTag] = {}
        for tag in sent:
            known.setdefault((tag.label, float(format_confidence(tag.confidence))), tag)

        predictions: list[CategoryPrediction] = []
        for entry in payload.categories:
            category = entry.category.strip().lower()
            if not category:
                raise MalformedResponseError("Category name is empty", layer="schema")
            if category not in self._categories:
                logger.warning("Endpoint returned category %r outside %s", category, self._categories)

            contributing: list[WeightedTag] = []
            for cited in entry.contributing_tags:
                match = known.get((cited.tag, cited.confidence))
                if match is None:
                    raise MalformedResponseError(
                        f"Category {category!r} cites tag {cited.tag!r} "
                        f"({cited.confidence}) that was not in the request",
                        layer="schema",
                    )
                contributing.append(match)

            predictions.append(
                CategoryPrediction(
                    category=category,
                    confidence=entry.confidence,
                    contributing_tags=tuple(contributing),
                )
            )

        return sorted(predictions, key=lambda prediction: prediction.confidence, reverse=True)
