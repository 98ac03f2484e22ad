"""Exception hierarchy for the analysis pipeline."""

from __future__ import annotations

from typing import Literal


class PipelineError(Exception):
    """Base class for every failure the pipeline knows how to report."""


class ConfigurationError(PipelineError):
    """Required configuration (e.g. the API credential) is missing or a placeholder."""


class ImageDecodeError(PipelineError):
    """The image cannot be decoded or converted to the model's pixel format."""


class ModelUnavailableError(PipelineError):
    """The classification model could not be downloaded or loaded.

    Raised at construction time: it signals a broken installation, not a
    transient per-image condition.
    """


class InferenceError(PipelineError):
    """The model was loaded but did not produce usable predictions."""


class NetworkError(PipelineError):
    """Transport failure or a non-success status from the remote endpoint."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(PipelineError):
    """The remote endpoint rejected the credential."""


class MalformedResponseError(PipelineError):
    """The remote response violates the expected schema.

    ``layer`` tells which parse step failed: the transport ``envelope``, the
    JSON ``payload`` carried inside it, or the ``schema`` checks applied to the
    parsed payload (field types, category set, unknown contributing tags).
    """

    def __init__(self, message: str, layer: Literal["envelope", "payload", "schema"]) -> None:
        super().__init__(message)
        self.layer = layer
