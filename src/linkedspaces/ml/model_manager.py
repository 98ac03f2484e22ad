"""Model manager: download, load, and cache ONNX classification models.

Handles downloading model weights and label maps from HuggingFace, reading
labels, and creating and caching ONNX InferenceSessions. Every failure to
obtain a usable model surfaces as ModelUnavailableError.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from linkedspaces.errors import ModelUnavailableError

if TYPE_CHECKING:
    from linkedspaces.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_spec(self, model_name: str) -> ModelSpec:
        """Return the static metadata for a model."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels indexed by model output position."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    labels_filename: str
    task: ModelTask
    license: str
    resize_to: int = 256
    crop_size: int = 224
    mean: tuple[float, float, float] = (0.5, 0.5, 0.5)
    std: tuple[float, float, float] = (0.5, 0.5, 0.5)


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="onnx-community/mobilenet_v2_1.0_224",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
    "mobilenet_v2_quantized": ModelSpec(
        name="mobilenet_v2_quantized",
        repo_id="onnx-community/mobilenet_v2_1.0_224",
        filename="model_quantized.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
    ),
}


def read_labels(path: Path) -> list[str]:
    """Read class labels from a HuggingFace ``config.json`` or a one-label-per-line text file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ModelUnavailableError(f"Cannot read labels from {path}: {exc}") from exc

    if path.suffix != ".json":
        labels = [line.strip() for line in text.splitlines() if line.strip()]
    else:
        try:
            id2label = json.loads(text)["id2label"]
            labels = [str(id2label[str(index)]) for index in range(len(id2label))]
        except (ValueError, KeyError, TypeError) as exc:
            raise ModelUnavailableError(f"{path} does not contain a usable id2label map") from exc

    if not labels:
        raise ModelUnavailableError(f"No labels found in {path}")
    return labels


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads, and caches ONNX inference sessions and their labels."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._labels: dict[str, list[str]] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def get_spec(self, model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelUnavailableError(f"Unknown model: {model_name}") from None

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally.

        An explicit ``model_path`` setting bypasses the download.
        """
        if self._settings.model_path is not None:
            return self._require_file(Path(self._settings.model_path))

        spec = self.get_spec(model_name)
        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec, spec.filename, spec.subfolder)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelUnavailableError(f"Failed to load {model_name} from {model_path}: {exc}") from exc

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels for a model, downloading the label map if needed."""
        with self._lock:
            cached = self._labels.get(model_name)
            if cached is not None:
                return cached

        if self._settings.labels_path is not None:
            labels_path = self._require_file(Path(self._settings.labels_path))
        else:
            spec = self.get_spec(model_name)
            labels_path = self._download(spec, spec.labels_filename, subfolder=None)

        labels = read_labels(labels_path)
        with self._lock:
            self._labels[model_name] = labels
        logger.info("Loaded %d labels for %s", len(labels), model_name)
        return labels

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            self._labels.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _download(self, spec: ModelSpec, filename: str, subfolder: str | None) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            return Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=filename,
                    subfolder=subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelUnavailableError(f"Failed to download {filename} for {spec.name}: {exc}") from exc

    @staticmethod
    def _require_file(path: Path) -> Path:
        if not path.is_file():
            raise ModelUnavailableError(f"Model asset not found: {path}")
        return path

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0, "arena_extend_strategy": "kSameAsRequested"}),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
