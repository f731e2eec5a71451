"""Pydantic models for stored images and their WebP conversion state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""

    return datetime.now(timezone.utc)


class ConversionStatus(str, Enum):
    """Lifecycle states of an image's WebP conversion."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    permanently_failed = "permanently_failed"
    skipped = "skipped"
    already_converted = "already_converted"


WEBP_MIME = "image/webp"

# Timestamp owned by each terminal status.
TERMINAL_TIMESTAMPS = {
    ConversionStatus.completed: "converted_at",
    ConversionStatus.already_converted: "converted_at",
    ConversionStatus.failed: "conversion_failed_at",
    ConversionStatus.permanently_failed: "conversion_permanently_failed_at",
    ConversionStatus.skipped: "conversion_skipped_at",
}

TIMESTAMP_FIELDS = (
    "converted_at",
    "conversion_failed_at",
    "conversion_skipped_at",
    "conversion_permanently_failed_at",
)

IMMUTABLE_FIELDS = frozenset({"id", "owner_id", "content_hash"})


class ImageRecord(BaseModel):
    """Metadata for one uploaded image."""

    id: int
    owner_id: int
    path: str
    original_name: str
    mime: str
    size: int
    content_hash: str

    conversion_status: ConversionStatus = ConversionStatus.pending
    conversion_attempts: int = 0
    conversion_quality: Optional[int] = None
    original_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    # set when the WebP came out larger and the source was kept beside it
    original_path: Optional[str] = None

    converted_at: Optional[datetime] = None
    conversion_failed_at: Optional[datetime] = None
    conversion_skipped_at: Optional[datetime] = None
    conversion_permanently_failed_at: Optional[datetime] = None

    conversion_error: Optional[str] = None
    conversion_skip_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_converted(self) -> bool:
        return self.conversion_status == ConversionStatus.completed

    @property
    def has_conversion_failed(self) -> bool:
        return self.conversion_status in (ConversionStatus.failed, ConversionStatus.permanently_failed)


class NewImage(BaseModel):
    """Fields supplied when a record is first created."""

    owner_id: int
    path: str
    original_name: str
    mime: str
    size: int
    content_hash: str


class ImageResponse(BaseModel):
    """API representation of an image record."""

    id: int
    path: str
    original_name: str
    mime: str
    size: int
    conversion_status: ConversionStatus
    conversion_attempts: int
    conversion_quality: Optional[int] = None
    original_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    converted_at: Optional[datetime] = None
    conversion_error: Optional[str] = None
    conversion_skip_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: ImageRecord) -> "ImageResponse":
        return cls.model_validate(record.model_dump())


class ImagePage(BaseModel):
    """Paginated listing of an owner's images."""

    items: List[ImageResponse]
    total: int
    page: int
    per_page: int
    last_page: int
