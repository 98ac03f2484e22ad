"""Environment-based configuration for LinkedSpaces."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from linkedspaces.errors import ConfigurationError

PLACEHOLDER_API_KEY = "YOUR_API_KEY_HERE"


class Settings(BaseSettings):
    """Application settings loaded from LINKEDSPACES_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LINKEDSPACES_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication for our own API (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Tagging model
    classification_model: str = "mobilenet_v2"
    models_dir: str = "models"
    model_path: str | None = None
    labels_path: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Remote categorization
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    request_timeout: float = Field(default=30.0, gt=0)
    top_n: int = Field(default=10, ge=1)

    # Metadata store (None = disabled)
    store_path: str | None = None

    def require_openai_api_key(self) -> str:
        """Return the configured credential or raise ConfigurationError.

        A missing, blank, or placeholder key is rejected before any network call.
        """
        return validate_api_key(self.openai_api_key)


def validate_api_key(api_key: str | None) -> str:
    """Reject an absent, blank, or placeholder credential."""
    if api_key is None or not api_key.strip():
        raise ConfigurationError("LINKEDSPACES_OPENAI_API_KEY is not set")
    if api_key.strip() == PLACEHOLDER_API_KEY:
        raise ConfigurationError("LINKEDSPACES_OPENAI_API_KEY still holds the placeholder value")
    return api_key.strip()


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
