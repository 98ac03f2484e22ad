"""Tests for the analysis orchestrator."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING
from unittest.mock import patch

import httpx
import numpy as np
import pytest
from conftest import StubEndpoint, StubTagExtractor, categories_content, completion, json_endpoint

from linkedspaces.config import Settings
from linkedspaces.errors import ConfigurationError, InferenceError, ModelUnavailableError
from linkedspaces.llm.category_classifier import CategoryClassifier
from linkedspaces.ml.inference import InferencePool
from linkedspaces.ml.preprocessing import ImagePreprocessor
from linkedspaces.pipeline.orchestrator import AnalysisOrchestrator
from linkedspaces.pipeline.types import AnalysisResult, CategoryPrediction, WeightedTag

if TYPE_CHECKING:
    from collections.abc import Sequence

# Deliberately not in confidence order.
RAW_TAGS: dict[str, float] = {
    "chair": 0.35,
    "restaurant_sign": 0.81,
    "menu": 0.30,
    "table": 0.40,
    "plate": 0.25,
    "window": 0.15,
    "cup": 0.20,
    "door": 0.05,
    "lamp": 0.10,
    "street": 0.03,
}

RESTAURANT_AND_CAFE = [
    {
        "category": "restaurant",
        "confidence": 0.9,
        "contributing_tags": [
            {"tag": "restaurant_sign", "confidence": 0.81},
            {"tag": "table", "confidence": 0.40},
        ],
    },
    {
        "category": "cafe",
        "confidence": 0.3,
        "contributing_tags": [{"tag": "cup", "confidence": 0.20}],
    },
]


def _orchestrator(
    extractor: StubTagExtractor,
    endpoint: StubEndpoint,
    pool: InferencePool | None = None,
) -> AnalysisOrchestrator:
    classifier = CategoryClassifier("sk-test", client=endpoint.client())
    return AnalysisOrchestrator(extractor, classifier, ImagePreprocessor(max_image_pixels=10_000_000), pool)


def _restaurant_endpoint() -> StubEndpoint:
    return json_endpoint(completion(categories_content(RESTAURANT_AND_CAFE)))


class _RecordingClassifier:
    def __init__(self, predictions: list[CategoryPrediction]) -> None:
        self.predictions = predictions
        self.received: list[WeightedTag] = []

    async def classify(self, tags: Sequence[WeightedTag], top_n: int = 10) -> list[CategoryPrediction]:
        self.received = list(tags)[:top_n]
        return self.predictions


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestAnalyzeSuccess:
    async def test_end_to_end_restaurant_scenario(self, png_bytes: bytes) -> None:
        orchestrator = _orchestrator(StubTagExtractor(RAW_TAGS), _restaurant_endpoint())

        result = await orchestrator.analyze(png_bytes, lambda message: None)

        assert result is not None
        assert result.top_categories == (
            CategoryPrediction(
                "restaurant",
                0.9,
                (WeightedTag("restaurant_sign", 0.81), WeightedTag("table", 0.40)),
            ),
            CategoryPrediction("cafe", 0.3, (WeightedTag("cup", 0.20),)),
        )
        expected_tags = sorted(RAW_TAGS.items(), key=lambda item: item[1], reverse=True)
        assert result.all_tags == tuple(WeightedTag(label, conf) for label, conf in expected_tags)

    async def test_progress_reports_each_stage(self, png_bytes: bytes) -> None:
        messages: list[str] = []
        orchestrator = _orchestrator(StubTagExtractor(RAW_TAGS), _restaurant_endpoint())

        await orchestrator.analyze(png_bytes, messages.append)

        assert messages == [
            "Starting image analysis...",
            "Analyzing image...",
            "Classifying place...",
            "Analysis complete!",
        ]

    async def test_result_is_capped_at_two_categories_and_ten_tags(self, png_bytes: bytes) -> None:
        raw = {f"label_{i}": 0.9 - i * 0.02 for i in range(40)}
        predictions = [CategoryPrediction(name, 0.5, ()) for name in ("park", "hotel", "shopping", "restaurant")]
        classifier = _RecordingClassifier(predictions)
        orchestrator = AnalysisOrchestrator(
            StubTagExtractor(raw), classifier, ImagePreprocessor(max_image_pixels=10_000_000)
        )

        result = await orchestrator.analyze(png_bytes)

        assert result is not None
        assert [p.category for p in result.top_categories] == ["park", "hotel"]
        assert len(result.all_tags) == 10
        assert [t.label for t in result.all_tags] == [f"label_{i}" for i in range(10)]
        assert len(classifier.received) == 10

    async def test_classifier_only_sees_tags_above_threshold(self, png_bytes: bytes) -> None:
        raw = {"fountain": 0.5, "statue": 0.3, "noise": 0.019, "speck": 0.001}
        classifier = _RecordingClassifier([])
        orchestrator = AnalysisOrchestrator(
            StubTagExtractor(raw), classifier, ImagePreprocessor(max_image_pixels=10_000_000)
        )

        result = await orchestrator.analyze(png_bytes)

        assert result is not None
        assert [t.label for t in classifier.received] == ["fountain", "statue"]
        assert [t.label for t in result.all_tags] == ["fountain", "statue", "noise", "speck"]
        assert result.top_categories == ()

    async def test_two_runs_produce_identical_results(self, png_bytes: bytes) -> None:
        orchestrator = _orchestrator(StubTagExtractor(RAW_TAGS), _restaurant_endpoint())

        first = await orchestrator.analyze(png_bytes)
        second = await orchestrator.analyze(png_bytes)

        assert first is not None
        assert first == second
        assert first is not second

    async def test_accepts_decoded_array(self) -> None:
        extractor = StubTagExtractor(RAW_TAGS)
        orchestrator = _orchestrator(extractor, _restaurant_endpoint())

        result = await orchestrator.analyze(np.zeros((16, 16, 3), dtype=np.uint8))

        assert isinstance(result, AnalysisResult)
        assert extractor.calls == 1

    async def test_runs_tagging_on_inference_pool(self, png_bytes: bytes) -> None:
        threads: list[str] = []

        class ThreadRecordingExtractor(StubTagExtractor):
            def raw_predictions(self, image: np.ndarray) -> dict[str, float]:
                threads.append(threading.current_thread().name)
                return super().raw_predictions(image)

        pool = InferencePool(max_concurrent=1)
        try:
            orchestrator = _orchestrator(ThreadRecordingExtractor(RAW_TAGS), _restaurant_endpoint(), pool)
            result = await orchestrator.analyze(png_bytes)
        finally:
            pool.shutdown()

        assert result is not None
        assert len(threads) == 1
        assert threads[0].startswith("tag-inference")

    async def test_decodes_bytes_off_the_event_loop(self, png_bytes: bytes) -> None:
        threads: list[str] = []

        class ThreadRecordingPreprocessor(ImagePreprocessor):
            def decode_image(self, data: bytes) -> np.ndarray:
                threads.append(threading.current_thread().name)
                return super().decode_image(data)

        pool = InferencePool(max_concurrent=1)
        try:
            classifier = CategoryClassifier("sk-test", client=_restaurant_endpoint().client())
            orchestrator = AnalysisOrchestrator(
                StubTagExtractor(RAW_TAGS), classifier, ThreadRecordingPreprocessor(max_image_pixels=10_000_000), pool
            )
            result = await orchestrator.analyze(png_bytes)
        finally:
            pool.shutdown()

        assert result is not None
        assert len(threads) == 1
        assert threads[0].startswith("tag-inference")

    async def test_failing_progress_callback_does_not_change_outcome(self, png_bytes: bytes) -> None:
        def explode(message: str) -> None:
            raise RuntimeError("ui went away")

        orchestrator = _orchestrator(StubTagExtractor(RAW_TAGS), _restaurant_endpoint())
        assert await orchestrator.analyze(png_bytes, explode) is not None


# ---------------------------------------------------------------------------
# Failure absorption
# ---------------------------------------------------------------------------


class TestAnalyzeFailures:
    async def test_undecodable_image_returns_none(self) -> None:
        messages: list[str] = []
        endpoint = _restaurant_endpoint()
        extractor = StubTagExtractor(RAW_TAGS)

        result = await _orchestrator(extractor, endpoint).analyze(b"definitely not an image", messages.append)

        assert result is None
        assert messages[-1].startswith("Failed to process image")
        assert extractor.calls == 0
        assert endpoint.requests == []

    async def test_model_failure_returns_none(self, png_bytes: bytes) -> None:
        messages: list[str] = []
        endpoint = _restaurant_endpoint()
        extractor = StubTagExtractor(error=InferenceError("forward pass exploded"))

        result = await _orchestrator(extractor, endpoint).analyze(png_bytes, messages.append)

        assert result is None
        assert "forward pass exploded" in messages[-1]
        assert endpoint.requests == []

    async def test_empty_predictions_return_none(self, png_bytes: bytes) -> None:
        endpoint = _restaurant_endpoint()
        result = await _orchestrator(StubTagExtractor({}), endpoint).analyze(png_bytes)
        assert result is None
        assert endpoint.requests == []

    async def test_network_failure_returns_none(self, png_bytes: bytes) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        messages: list[str] = []
        result = await _orchestrator(StubTagExtractor(RAW_TAGS), StubEndpoint(refuse)).analyze(
            png_bytes, messages.append
        )

        assert result is None
        assert messages[-1].startswith("Error during analysis")

    async def test_non_conforming_json_returns_none(self, png_bytes: bytes) -> None:
        endpoint = json_endpoint(completion("I think this is a restaurant."))
        result = await _orchestrator(StubTagExtractor(RAW_TAGS), endpoint).analyze(png_bytes)
        assert result is None

    async def test_fabricated_contributing_tag_returns_none(self, png_bytes: bytes) -> None:
        content = categories_content(
            [
                {
                    "category": "park",
                    "confidence": 0.7,
                    "contributing_tags": [{"tag": "unicorn", "confidence": 0.5}],
                }
            ]
        )
        messages: list[str] = []
        result = await _orchestrator(StubTagExtractor(RAW_TAGS), json_endpoint(completion(content))).analyze(
            png_bytes, messages.append
        )

        assert result is None
        assert "unicorn" in messages[-1]

    async def test_rejected_credential_returns_none(self, png_bytes: bytes) -> None:
        endpoint = json_endpoint({"error": {"message": "invalid key"}}, status_code=401)
        assert await _orchestrator(StubTagExtractor(RAW_TAGS), endpoint).analyze(png_bytes) is None

    async def test_unsupported_image_type_returns_none(self) -> None:
        orchestrator = _orchestrator(StubTagExtractor(RAW_TAGS), _restaurant_endpoint())
        assert await orchestrator.analyze("photo.jpg") is None  # type: ignore[arg-type]


class TestCancellation:
    async def test_cancelled_before_tagging(self, png_bytes: bytes) -> None:
        cancel = asyncio.Event()
        cancel.set()
        extractor = StubTagExtractor(RAW_TAGS)
        messages: list[str] = []

        result = await _orchestrator(extractor, _restaurant_endpoint()).analyze(
            png_bytes, messages.append, cancel_event=cancel
        )

        assert result is None
        assert extractor.calls == 0
        assert messages[-1] == "Analysis cancelled"

    async def test_cancelled_before_classifying(self, png_bytes: bytes) -> None:
        cancel = asyncio.Event()
        endpoint = _restaurant_endpoint()

        class CancellingExtractor(StubTagExtractor):
            def raw_predictions(self, image: np.ndarray) -> dict[str, float]:
                cancel.set()
                return super().raw_predictions(image)

        result = await _orchestrator(CancellingExtractor(RAW_TAGS), endpoint).analyze(
            png_bytes, cancel_event=cancel
        )

        assert result is None
        assert endpoint.requests == []


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestFromSettings:
    def test_missing_credential_raises_configuration_error(self) -> None:
        settings = Settings(openai_api_key=None)
        with patch("linkedspaces.pipeline.orchestrator.OnnxModelManager") as manager_cls:
            with pytest.raises(ConfigurationError):
                AnalysisOrchestrator.from_settings(settings)
        manager_cls.assert_not_called()

    def test_placeholder_credential_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="placeholder"):
            AnalysisOrchestrator.from_settings(Settings(openai_api_key="YOUR_API_KEY_HERE"))

    def test_missing_model_fails_at_construction(self) -> None:
        settings = Settings(openai_api_key="sk-test", model_path="/nonexistent/model.onnx")
        with pytest.raises(ModelUnavailableError):
            AnalysisOrchestrator.from_settings(settings)

    def test_rejects_non_positive_top_n(self) -> None:
        with pytest.raises(ValueError, match="top_n"):
            AnalysisOrchestrator(
                StubTagExtractor(RAW_TAGS),
                _RecordingClassifier([]),
                ImagePreprocessor(max_image_pixels=1),
                top_n=0,
            )
