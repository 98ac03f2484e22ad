"""Image tagging with a local ONNX classification model.

Runs one forward pass per image and turns the output distribution into
weighted tags. The 2% threshold is a cheap pre-filter ahead of the remote
categorization call, not a final decision.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Protocol

import numpy as np

from linkedspaces.errors import InferenceError, ModelUnavailableError
from linkedspaces.pipeline.types import WeightedTag, rank_tags

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

    from linkedspaces.ml.model_manager import ModelManager
    from linkedspaces.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD: float = 0.02


class TagExtractor(Protocol):
    """Protocol for image tagging models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def extract_tags(self, image: NDArray[np.uint8]) -> list[WeightedTag]:
        """Tag an image, keeping only labels at or above the confidence threshold.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Tags sorted by confidence (descending).
        """
        ...

    def raw_predictions(self, image: NDArray[np.uint8]) -> dict[str, float]:
        """Return the full, unfiltered label -> confidence map for an image."""
        ...

    def filter_tags(self, predictions: Mapping[str, float]) -> list[WeightedTag]:
        """Apply the confidence threshold to an already computed prediction map."""
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


def unique_labels(labels: Sequence[str]) -> list[str]:
    """Suffix repeated label names with their output index.

    Prediction maps are keyed by label, so keys must be distinct. ImageNet
    repeats 'crane' (the bird and the machine).
    """
    counts = Counter(labels)
    return [label if counts[label] == 1 else f"{label} ({index})" for index, label in enumerate(labels)]


class OnnxTagExtractor:
    """Tag extractor backed by an ONNX image classification session.

    The session and labels are loaded in the constructor so a missing or
    broken model fails once, up front, with ModelUnavailableError.
    """

    def __init__(
        self,
        model_manager: ModelManager,
        preprocessor: ImagePreprocessor,
        model_name: str,
        threshold: float = CONFIDENCE_THRESHOLD,
    ) -> None:
        self._model_name = model_name
        self._preprocessor = preprocessor
        self._threshold = threshold

        self._spec = model_manager.get_spec(model_name)
        self._session = model_manager.get_session(model_name)
        self._labels = unique_labels(model_manager.get_labels(model_name))

        inputs = self._session.get_inputs()
        if not inputs:
            raise ModelUnavailableError(f"Model {model_name} declares no inputs")
        self._input_name = inputs[0].name
        logger.info("Tag extractor ready (model=%s, labels=%d)", model_name, len(self._labels))

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def threshold(self) -> float:
        return self._threshold

    def raw_predictions(self, image: NDArray[np.uint8]) -> dict[str, float]:
        tensor = self._preprocessor.preprocess_for_classification(
            image,
            resize_to=self._spec.resize_to,
            crop_size=self._spec.crop_size,
            mean=self._spec.mean,
            std=self._spec.std,
        )
        probabilities = self._forward(tensor)
        return {label: float(probabilities[index]) for index, label in enumerate(self._labels)}

    def extract_tags(self, image: NDArray[np.uint8]) -> list[WeightedTag]:
        return self.filter_tags(self.raw_predictions(image))

    def filter_tags(self, predictions: Mapping[str, float]) -> list[WeightedTag]:
        kept = [
            WeightedTag(label=label, confidence=confidence)
            for label, confidence in predictions.items()
            if confidence >= self._threshold
        ]
        logger.debug("Kept %d of %d labels at threshold %.2f", len(kept), len(predictions), self._threshold)
        return rank_tags(kept)

    def _forward(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Forward pass failed for {self._model_name}: {exc}") from exc

        if not outputs:
            raise InferenceError(f"Model {self._model_name} returned no outputs")
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(self._labels):
            raise InferenceError(
                f"Model {self._model_name} produced {scores.shape[0]} scores for {len(self._labels)} labels"
            )
        if not np.all(np.isfinite(scores)):
            raise InferenceError(f"Model {self._model_name} produced non-finite scores")

        # Exported classifiers emit logits; a distribution already summing to 1 is left as is.
        if np.all(scores >= 0.0) and np.isclose(np.sum(scores), 1.0, atol=1e-3):
            return scores
        return softmax(scores)
