import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

T = TypeVar("T")


def _time_id(prefix: str) -> str:
    # Time-derived, with a random suffix so sibling units created in the
    # same clock tick never collide.
    return f"{prefix}_{time.time_ns()}_{uuid.uuid4().hex[:8]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Standard Error Struct
class ErrorDetails(BaseModel):
    code: str
    message: str
    trace_id: Optional[str] = None


class APIResponse(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ErrorDetails] = None


# --- Value Objects ---


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"


CANONICAL_FORMAT = ImageFormat.JPEG


class ImageData(BaseModel):
    """Raw image bytes plus the format detected from their header."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    format: ImageFormat

    @field_validator("data")
    @classmethod
    def _not_empty(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("image data cannot be empty")
        return value

    @property
    def is_canonical(self) -> bool:
        return self.format == CANONICAL_FORMAT

    @property
    def size(self) -> int:
        return len(self.data)


class PersonGeneration(str, Enum):
    ALLOW_ADULT = "allow_adult"
    ALLOW_ALL = "allow_all"
    DONT_ALLOW = "dont_allow"


class SafetySetting(str, Enum):
    BLOCK_MEDIUM_AND_ABOVE = "block_medium_and_above"
    BLOCK_LOW_AND_ABOVE = "block_low_and_above"
    BLOCK_ONLY_HIGH = "block_only_high"
    BLOCK_NONE = "block_none"


class OutputFormat(str, Enum):
    # Values are the MIME types the provider expects in outputOptions
    PNG = "image/png"
    JPEG = "image/jpeg"

    @classmethod
    def coerce(cls, value: Any) -> Any:
        """Accepts the bare names ("PNG", "jpeg") as well as MIME types."""
        if isinstance(value, str) and value.upper() in cls.__members__:
            return cls[value.upper()].value
        return value


class GenerationParameters(BaseModel):
    """
    Provider parameters for one try-on call.

    Ranges are rejected, never clamped. Two provider restrictions are
    applied after validation and always win over explicit input:
    - a non-JPEG output has no compression quality (forced to 0)
    - a watermarked output cannot be seeded (seed forced to 0)
    """

    model_config = ConfigDict(frozen=True)

    # Field order matters: the restriction validators read earlier fields
    add_watermark: bool = True
    base_steps: int = Field(default=32, ge=1, le=100)
    person_generation: PersonGeneration = PersonGeneration.ALLOW_ADULT
    safety_setting: SafetySetting = SafetySetting.BLOCK_MEDIUM_AND_ABOVE
    sample_count: int = Field(default=1, ge=1, le=4)
    output_format: OutputFormat = OutputFormat.PNG
    seed: int = Field(default=0, validate_default=True)
    compression_quality: int = Field(default=75, ge=0, le=100, validate_default=True)

    @field_validator("output_format", mode="before")
    @classmethod
    def _output_format_by_name(cls, value: Any) -> Any:
        return OutputFormat.coerce(value)

    @field_validator("seed")
    @classmethod
    def _no_seed_with_watermark(cls, value: int, info: ValidationInfo) -> int:
        if info.data.get("add_watermark"):
            return 0
        return value

    @field_validator("compression_quality")
    @classmethod
    def _quality_only_for_jpeg(cls, value: int, info: ValidationInfo) -> int:
        if info.data.get("output_format") != OutputFormat.JPEG:
            return 0
        return value

    @property
    def output_mime_type(self) -> str:
        return self.output_format.value


# --- Entities ---


class GenerationRequest(BaseModel):
    """One (person, garment) pair sent to the provider. Images are canonical."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _time_id("req"))
    person_image: ImageData
    garment_image: ImageData
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    created_at: datetime = Field(default_factory=_utcnow)


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _time_id("result"))
    request_id: str
    images: tuple[ImageData, ...] = ()
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_images(self) -> bool:
        return len(self.images) > 0


class GarmentInput(BaseModel):
    """Raw garment upload as handed over by the HTTP/CLI layer."""

    data: bytes = Field(repr=False)
    mime_type: Optional[str] = None


class OutputImage(BaseModel):
    data: bytes = Field(repr=False)
    mime_type: str


class AggregatedOutput(BaseModel):
    request_id: str
    images: list[OutputImage] = Field(default_factory=list)


# --- API Payloads ---


class EncodedImage(BaseModel):
    id: str
    data: str  # base64
    type: str


class TryOnResponseData(BaseModel):
    request_id: str
    images: list[EncodedImage]


class StoredRequestData(BaseModel):
    request_id: str
    created_at: datetime
    parameters: GenerationParameters
    result_id: Optional[str] = None
    images: list[EncodedImage] = Field(default_factory=list)
