"""Analysis orchestration: decode -> tag -> categorize -> ranked result.

The orchestrator is the boundary where typed pipeline errors stop. Callers get
either a complete AnalysisResult or None, with failure detail delivered only
through the progress callback.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, TypeVar

import numpy as np

from linkedspaces.errors import ImageDecodeError, InferenceError, PipelineError
from linkedspaces.llm.category_classifier import DEFAULT_TOP_N, CategoryClassifier
from linkedspaces.ml.image_classifier import OnnxTagExtractor
from linkedspaces.ml.model_manager import OnnxModelManager
from linkedspaces.ml.preprocessing import ImagePreprocessor
from linkedspaces.pipeline.types import AnalysisResult, rank_tags, tags_from_predictions

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from linkedspaces.config import Settings
    from linkedspaces.ml.image_classifier import TagExtractor
    from linkedspaces.ml.inference import InferencePool
    from linkedspaces.ml.model_manager import ModelManager
    from linkedspaces.pipeline.types import CategoryPrediction, WeightedTag

    ProgressCallback = Callable[[str], None]

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ALL_TAGS = 10
MAX_TOP_CATEGORIES = 2


class AnalysisStage(StrEnum):
    IDLE = "idle"
    DECODING = "decoding"
    TAGGING = "tagging"
    CLASSIFYING = "classifying"
    DONE = "done"
    FAILED = "failed"


class Categorizer(Protocol):
    """Anything that can turn weighted tags into ranked category predictions."""

    async def classify(self, tags: Sequence[WeightedTag], top_n: int = ...) -> list[CategoryPrediction]: ...


class _Run:
    """Per-call stage tracker that forwards status messages to the caller."""

    def __init__(self, on_progress: ProgressCallback | None) -> None:
        self.stage = AnalysisStage.IDLE
        self._on_progress = on_progress

    def advance(self, stage: AnalysisStage, message: str) -> None:
        logger.info("Analysis %s -> %s: %s", self.stage, stage, message)
        self.stage = stage
        if self._on_progress is None:
            return
        try:
            self._on_progress(message)
        except Exception:
            # Progress is advisory; a broken callback must not change the outcome.
            logger.exception("Progress callback raised during %s", stage)


class AnalysisOrchestrator:
    """Sequences tag extraction and remote categorization for one image at a time.

    Calls are independent: no state is shared between concurrent ``analyze``
    invocations apart from the read-only model session.
    """

    def __init__(
        self,
        tag_extractor: TagExtractor,
        classifier: Categorizer,
        preprocessor: ImagePreprocessor,
        pool: InferencePool | None = None,
        *,
        top_n: int = DEFAULT_TOP_N,
    ) -> None:
        if top_n < 1:
            raise ValueError(f"top_n must be positive, got {top_n}")
        self._tag_extractor = tag_extractor
        self._classifier = classifier
        self._preprocessor = preprocessor
        self._pool = pool
        self._top_n = top_n

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool: InferencePool | None = None,
        model_manager: ModelManager | None = None,
    ) -> AnalysisOrchestrator:
        """Build the full pipeline from configuration.

        Raises:
            ConfigurationError: The API credential is missing or a placeholder.
            ModelUnavailableError: The classification model cannot be loaded.
        """
        settings.require_openai_api_key()
        preprocessor = ImagePreprocessor(max_image_pixels=settings.max_image_pixels)
        tag_extractor = OnnxTagExtractor(
            model_manager=model_manager if model_manager is not None else OnnxModelManager(settings),
            preprocessor=preprocessor,
            model_name=settings.classification_model,
        )
        classifier = CategoryClassifier.from_settings(settings)
        return cls(tag_extractor, classifier, preprocessor, pool, top_n=settings.top_n)

    async def aclose(self) -> None:
        if isinstance(self._classifier, CategoryClassifier):
            await self._classifier.aclose()

    @property
    def tag_extractor(self) -> TagExtractor:
        return self._tag_extractor

    @property
    def preprocessor(self) -> ImagePreprocessor:
        return self._preprocessor

    async def analyze(
        self,
        image: bytes | NDArray[np.uint8],
        on_progress: ProgressCallback | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AnalysisResult | None:
        """Analyze one photo.

        Args:
            image: Encoded image bytes or an already decoded HxWx3 RGB array.
            on_progress: Called synchronously with a status message at each stage.
            cancel_event: Checked before tagging and before categorizing; once
                set, the run stops and returns None.

        Returns:
            The complete result, or None if any stage failed or the run was cancelled.
        """
        run = _Run(on_progress)
        try:
            run.advance(AnalysisStage.DECODING, "Starting image analysis...")
            pixels = await self._decode(image)

            if self._cancelled(cancel_event, run):
                return None
            run.advance(AnalysisStage.TAGGING, "Analyzing image...")
            predictions = await self._predict(pixels)
            all_tags = rank_tags(tags_from_predictions(predictions), MAX_ALL_TAGS)
            candidate_tags = self._tag_extractor.filter_tags(predictions)

            if self._cancelled(cancel_event, run):
                return None
            run.advance(AnalysisStage.CLASSIFYING, "Classifying place...")
            categories = await self._classifier.classify(candidate_tags, self._top_n)
        except ImageDecodeError as exc:
            run.advance(AnalysisStage.FAILED, f"Failed to process image: {exc}")
            return None
        except PipelineError as exc:
            logger.warning("Analysis failed during %s: %s", run.stage, exc)
            run.advance(AnalysisStage.FAILED, f"Error during analysis: {exc}")
            return None

        result = AnalysisResult(
            top_categories=tuple(categories[:MAX_TOP_CATEGORIES]),
            all_tags=tuple(all_tags),
        )
        run.advance(AnalysisStage.DONE, "Analysis complete!")
        return result

    async def _decode(self, image: bytes | NDArray[np.uint8]) -> NDArray[np.uint8]:
        if isinstance(image, bytes | bytearray | memoryview):
            return await self._offload(self._preprocessor.decode_image, bytes(image))
        if isinstance(image, np.ndarray):
            return self._preprocessor.ensure_rgb(image)
        raise ImageDecodeError(f"Unsupported image type {type(image).__name__}")

    async def _predict(self, pixels: NDArray[np.uint8]) -> dict[str, float]:
        predictions = await self._offload(self._tag_extractor.raw_predictions, pixels)
        if not predictions:
            raise InferenceError("Model produced no predictions")
        return predictions

    @staticmethod
    def _cancelled(cancel_event: asyncio.Event | None, run: _Run) -> bool:
        if cancel_event is None or not cancel_event.is_set():
            return False
        run.advance(AnalysisStage.FAILED, "Analysis cancelled")
        return True

    async def _offload(self, func: Callable[..., T], *args: object) -> T:
        if self._pool is not None:
            return await self._pool.run(func, *args)
        return await asyncio.to_thread(func, *args)
