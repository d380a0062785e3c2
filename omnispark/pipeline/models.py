"""
Pydantic models and enums for the creative production pipeline.
"""

import base64
import binascii
import copy
import io
import re
import time
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_BRIEF_IMAGES = 4

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


def new_id() -> str:
    return str(uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Mode ─────────────────────────────────────────────────────────────────────

class Mode(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    PDP = "pdp"


class AssetType(str, Enum):
    CONCEPT = "concept"
    IMAGE = "image"
    VIDEO = "video"


# ── Media ────────────────────────────────────────────────────────────────────

def sniff_mime_type(data: bytes, default: str = "image/png") -> str:
    """Detect the image format of raw bytes with Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").lower()
    except (UnidentifiedImageError, OSError):
        return default
    if fmt == "jpeg":
        return "image/jpeg"
    if fmt in ("png", "webp", "gif"):
        return f"image/{fmt}"
    return default


class MediaPayload(BaseModel):
    """A binary media blob tagged with its mime type."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    mime_type: str = "image/png"
    data: bytes

    @classmethod
    def from_base64(cls, b64: str, mime_type: Optional[str] = None) -> "MediaPayload":
        try:
            raw = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 media payload: {e}") from e
        return cls(mime_type=mime_type or sniff_mime_type(raw), data=raw)

    @classmethod
    def from_data_url(cls, text: str) -> "MediaPayload":
        """Accepts either a `data:<mime>;base64,` URL or bare base64."""
        match = _DATA_URL_RE.match(text.strip())
        if match:
            return cls.from_base64(match.group("data"), match.group("mime"))
        return cls.from_base64(text.strip())

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    def to_inline_part(self) -> dict:
        """Gemini `inlineData` request part."""
        return {"inlineData": {"mimeType": self.mime_type, "data": self.to_base64()}}


# ── Brief & product library ──────────────────────────────────────────────────

class ProductBrief(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    creative_direction: str
    reference_images: tuple[MediaPayload, ...] = ()

    @field_validator("name", "description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("reference_images")
    @classmethod
    def _max_images(cls, value: tuple) -> tuple:
        if len(value) > MAX_BRIEF_IMAGES:
            raise ValueError(f"at most {MAX_BRIEF_IMAGES} reference images are allowed")
        return value

    @property
    def primary_image(self) -> Optional[MediaPayload]:
        return self.reference_images[0] if self.reference_images else None


class ProductRecord(BaseModel):
    """Persisted product-library row."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str
    images: list[str] = Field(default_factory=list, description="data: URLs")
    timestamp: int = Field(default_factory=now_ms)
    pinned: bool = False

    def same_product(self, other: "ProductRecord") -> bool:
        return (
            self.name == other.name
            and self.description == other.description
            and self.images == other.images
        )


# ── Generated artifacts ──────────────────────────────────────────────────────

class Concept(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    title: str
    description: str
    script: str
    storyboard: str
    visual_prompt: str
    # Lineage
    product_name: str
    creative_direction: str
    mode: Mode
    created_at: int = Field(default_factory=now_ms)

    def revised(self, **changes: Any) -> "Concept":
        """Edits never mutate a concept; they produce a new one."""
        changes.setdefault("id", new_id())
        changes.setdefault("created_at", now_ms())
        return self.model_copy(update=changes)


class ImageArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    payload: MediaPayload
    prompt: str
    # Lineage
    product_name: str
    creative_direction: str
    concept_title: str
    concept_id: str
    mode: Mode
    created_at: int = Field(default_factory=now_ms)

    @classmethod
    def for_concept(cls, concept: Concept, payload: MediaPayload, prompt: str, mode: Mode) -> "ImageArtifact":
        return cls(
            payload=payload,
            prompt=prompt,
            product_name=concept.product_name,
            creative_direction=concept.creative_direction,
            concept_title=concept.title,
            concept_id=concept.id,
            mode=mode,
        )


class VideoArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    uri: str
    local_url: str
    # Lineage (no concept id; grouped by product + concept title)
    product_name: str
    creative_direction: str
    concept_title: str
    mode: Mode = Mode.VIDEO
    created_at: int = Field(default_factory=now_ms)


class LibraryMeta(BaseModel):
    title: Optional[str] = None
    prompt: Optional[str] = None
    mode: Optional[Mode] = None
    product_name: Optional[str] = None
    concept_title: Optional[str] = None


class LibraryAsset(BaseModel):
    id: str = Field(default_factory=new_id)
    type: AssetType
    content: Any
    timestamp: int = Field(default_factory=now_ms)
    pinned: bool = False
    meta: LibraryMeta = Field(default_factory=LibraryMeta)

    @classmethod
    def snapshot(cls, asset_type: AssetType, content: Any, meta: Optional[LibraryMeta] = None) -> "LibraryAsset":
        if isinstance(content, MediaPayload):
            content = content.to_data_url()
        elif isinstance(content, BaseModel):
            content = content.model_dump(mode="json")
        return cls(
            type=asset_type,
            content=copy.deepcopy(content),
            meta=(meta or LibraryMeta()).model_copy(deep=True),
        )


# ── Storyboard ───────────────────────────────────────────────────────────────

class ShotDescriptor(BaseModel):
    label: str
    instruction: str


class StoryboardShot(BaseModel):
    index: int
    label: str
    instruction: str
    payload: MediaPayload
    artifact_id: Optional[str] = None


class StoryboardResult(BaseModel):
    shots: list[StoryboardShot] = Field(default_factory=list)
    failed_labels: list[str] = Field(default_factory=list)
    failed_kinds: list[str] = Field(default_factory=list)
    used_fallback: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.failed_labels)


# ── Video job ────────────────────────────────────────────────────────────────

class VideoJobState(str, Enum):
    IDLE = "IDLE"
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    READY = "READY"
    FAILED = "FAILED"


class VideoJob(BaseModel):
    job_id: str = Field(default_factory=new_id)
    state: VideoJobState = VideoJobState.IDLE
    operation_name: Optional[str] = None
    polls: int = 0
    video_uri: Optional[str] = None
    local_url: Optional[str] = None
    error: Optional[str] = None


# ── Session status ───────────────────────────────────────────────────────────

class StatusMessage(BaseModel):
    kind: str = "info"
    message: str = ""
    next_action: Optional[str] = None


# ── API Requests ─────────────────────────────────────────────────────────────

class BriefRequest(BaseModel):
    name: str = ""
    description: str = ""
    creative_direction: str = ""
    images: list[str] = Field(default_factory=list, description="data: URLs or bare base64")
    # Reuse a product-library record instead of name/description/images
    product_id: Optional[str] = None


class ModeRequest(BaseModel):
    mode: Mode


class DescribeProductRequest(BaseModel):
    name: str


class ReviseConceptRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    script: Optional[str] = None
    storyboard: Optional[str] = None
    visual_prompt: Optional[str] = None


class AspectRatioRequest(BaseModel):
    aspect_ratio: str


class EditRequest(BaseModel):
    instruction: str


class ShotRegenRequest(BaseModel):
    instruction: Optional[str] = None


class VideoRequest(BaseModel):
    reference_ids: list[str] = Field(default_factory=list)


class PromoteRequest(BaseModel):
    """Either a history entry (`session_id` + `artifact_id`) or raw content."""

    session_id: Optional[str] = None
    artifact_id: Optional[str] = None
    type: Optional[AssetType] = None
    content: Any = None
    meta: Optional[LibraryMeta] = None


class ConfigUpdateRequest(BaseModel):
    text_model: Optional[str] = None
    text_key: Optional[str] = None
    image_model: Optional[str] = None
    image_key: Optional[str] = None
    video_model: Optional[str] = None
    video_key: Optional[str] = None
    fallback_key: Optional[str] = None
    poll_interval: Optional[float] = Field(default=None, gt=0)
    max_wait_seconds: Optional[float] = Field(default=None, gt=0)
