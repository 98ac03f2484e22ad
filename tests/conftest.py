"""Shared fakes for tagging, the chat-completions endpoint, and images."""

from __future__ import annotations

import io
import json
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import httpx
import numpy as np
import pytest
from PIL import Image

from linkedspaces.ml.model_manager import MODEL_REGISTRY, ModelSpec
from linkedspaces.pipeline.types import WeightedTag, rank_tags

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from numpy.typing import NDArray


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def make_png(width: int = 32, height: int = 24, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


# ---------------------------------------------------------------------------
# ONNX stand-ins
# ---------------------------------------------------------------------------


class FakeSession:
    """Minimal InferenceSession replacement returning fixed scores."""

    def __init__(self, scores: list[float], input_name: str = "pixel_values") -> None:
        self.scores = np.asarray(scores, dtype=np.float32)
        self.input_name = input_name
        self.feeds: list[dict[str, NDArray[np.float32]]] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=self.input_name)]

    def run(self, output_names: list[str] | None, feeds: dict[str, NDArray[np.float32]]) -> list[Any]:
        self.feeds.append(feeds)
        return [self.scores[np.newaxis, :]]


class FakeModelManager:
    """ModelManager double serving one in-memory session and label list."""

    def __init__(self, session: FakeSession, labels: list[str], spec: ModelSpec | None = None) -> None:
        self.session = session
        self.labels = labels
        self.spec = spec or MODEL_REGISTRY["mobilenet_v2"]
        self.loaded: list[str] = []

    def get_spec(self, model_name: str) -> ModelSpec:
        return self.spec

    def get_session(self, model_name: str) -> FakeSession:
        self.loaded.append(model_name)
        return self.session

    def get_labels(self, model_name: str) -> list[str]:
        return self.labels

    def get_loaded_models(self) -> list[str]:
        return list(self.loaded)

    def shutdown(self) -> None:
        self.loaded.clear()


class StubTagExtractor:
    """Tag extractor returning a fixed prediction map, or raising a given error."""

    model_name = "stub"

    def __init__(self, predictions: Mapping[str, float] | None = None, error: Exception | None = None) -> None:
        self._predictions = dict(predictions or {})
        self._error = error
        self.calls = 0

    def raw_predictions(self, image: NDArray[np.uint8]) -> dict[str, float]:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return dict(self._predictions)

    def extract_tags(self, image: NDArray[np.uint8]) -> list[WeightedTag]:
        return self.filter_tags(self.raw_predictions(image))

    def filter_tags(self, predictions: Mapping[str, float]) -> list[WeightedTag]:
        return rank_tags(WeightedTag(label, conf) for label, conf in predictions.items() if conf >= 0.02)


# ---------------------------------------------------------------------------
# Chat-completions endpoint
# ---------------------------------------------------------------------------


def completion(content: str) -> dict[str, Any]:
    """Wrap assistant text in a chat-completions response envelope."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "model": "gpt-3.5-turbo",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def categories_content(categories: list[dict[str, Any]]) -> str:
    return json.dumps({"categories": categories})


class StubEndpoint:
    """Records requests and answers them with a fixed response factory."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self._respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    @property
    def last_body(self) -> dict[str, Any]:
        body: dict[str, Any] = json.loads(self.requests[-1].content)
        return body

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def json_endpoint(payload: dict[str, Any], status_code: int = 200) -> StubEndpoint:
    return StubEndpoint(lambda request: httpx.Response(status_code, json=payload))
