"""
Model / API-key resolution per modality.

`GenerationConfig` is immutable: every generation call resolves its model and
key from the config object it was handed, and updates produce a new object,
so in-flight calls keep the configuration they started with.
"""

import os
import logging
from pathlib import Path
from typing import Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

Modality = Literal["text", "image", "video"]

API_BASE = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_TEXT_MODEL = "gemini-3-flash-preview"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_VIDEO_MODEL = "veo-3.1-fast-generate-preview"

# Multi-image reference video only works on the full (non-fast) model
REFERENCE_VIDEO_MODEL = "veo-3.1-generate-preview"

DEFAULT_POLL_INTERVAL = 8.0


class ModalityConfig(NamedTuple):
    model: str
    api_key: str


class GenerationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    text_model: str = DEFAULT_TEXT_MODEL
    text_key: str = ""
    image_model: str = DEFAULT_IMAGE_MODEL
    image_key: str = ""
    video_model: str = DEFAULT_VIDEO_MODEL
    video_key: str = ""
    # Used for any modality whose own key is empty
    fallback_key: str = ""

    api_base: str = API_BASE
    request_timeout: float = 120.0
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_wait_seconds: Optional[float] = None
    data_dir: Path = Path("data")

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        max_wait = os.getenv("VIDEO_MAX_WAIT_SECONDS")
        return cls(
            text_model=os.getenv("TEXT_MODEL", DEFAULT_TEXT_MODEL),
            text_key=os.getenv("TEXT_API_KEY", ""),
            image_model=os.getenv("IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            image_key=os.getenv("IMAGE_API_KEY", ""),
            video_model=os.getenv("VIDEO_MODEL", DEFAULT_VIDEO_MODEL),
            video_key=os.getenv("VIDEO_API_KEY", ""),
            fallback_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
            poll_interval=float(os.getenv("VIDEO_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
            max_wait_seconds=float(max_wait) if max_wait else None,
            data_dir=Path(os.getenv("OMNISPARK_DATA_DIR", "data")),
        )

    def updated(self, **changes) -> "GenerationConfig":
        """Return a new config with `changes` applied; self is left untouched."""
        return self.model_validate({**self.model_dump(), **changes})

    def resolve(self, modality: Modality) -> ModalityConfig:
        model = getattr(self, f"{modality}_model")
        key = getattr(self, f"{modality}_key") or self.fallback_key
        if not key:
            logger.warning(f"No API key configured for {modality} generation")
        return ModalityConfig(model=model, api_key=key)

    def has_key(self, modality: Modality) -> bool:
        return bool(getattr(self, f"{modality}_key") or self.fallback_key)

    @staticmethod
    def is_high_res_model(model: str) -> bool:
        """Quality tier is chosen by model id: flash models are standard tier."""
        return "flash" not in model

    def public_view(self) -> dict:
        """Config summary with keys masked."""

        def mask(value: str) -> str:
            if not value:
                return "MISSING"
            return value[:4] + "..." + value[-4:]

        return {
            "text_model": self.text_model,
            "image_model": self.image_model,
            "video_model": self.video_model,
            "text_key": mask(self.text_key or self.fallback_key),
            "image_key": mask(self.image_key or self.fallback_key),
            "video_key": mask(self.video_key or self.fallback_key),
            "poll_interval": self.poll_interval,
            "max_wait_seconds": self.max_wait_seconds,
        }
