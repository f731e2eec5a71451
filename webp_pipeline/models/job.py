"""Models describing conversion job executions and retry sweeps."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .image import ConversionStatus, ImageRecord


class ConversionOutcome(BaseModel):
    """Result of a single conversion job execution."""

    job_id: str
    image_id: int
    attempt: int
    status: Optional[ConversionStatus] = None
    record: Optional[ImageRecord] = None


class RetryStatusFilter(str, Enum):
    """Statuses the retry sweeper can be pointed at."""

    failed = "failed"
    permanently_failed = "permanently_failed"
    skipped = "skipped"
    all = "all"


class RetrySweepOptions(BaseModel):
    """Parameters of one retry sweep run."""

    hours: int = 24
    limit: int = Field(default=50, ge=0)
    status: RetryStatusFilter = RetryStatusFilter.failed
    force: bool = False
    dry_run: bool = False


class RetryCandidate(BaseModel):
    """Row shown for a record selected by the sweeper."""

    id: int
    owner_id: int
    original_name: str
    status: ConversionStatus
    failed_at: Optional[datetime] = None
    attempts: int
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: ImageRecord) -> "RetryCandidate":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            original_name=record.original_name,
            status=record.conversion_status,
            failed_at=record.conversion_failed_at or record.conversion_skipped_at,
            attempts=record.conversion_attempts,
            error=record.conversion_error,
        )


class RetrySweepReport(BaseModel):
    """Summary returned by a retry sweep."""

    options: RetrySweepOptions
    selected: int = 0
    retried: int = 0
    failed_ids: List[int] = Field(default_factory=list)
    candidates: List[RetryCandidate] = Field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run
