"""Periodic re-enqueue of failed and skipped WebP conversions."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import get_logger
from webp_pipeline.models.image import ConversionStatus, ImageRecord, utcnow
from webp_pipeline.models.job import (
    RetryCandidate,
    RetryStatusFilter,
    RetrySweepOptions,
    RetrySweepReport,
)
from webp_pipeline.services.record_store import ImageRecordStore, RecordQuery, record_store

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset(
    {ConversionStatus.failed, ConversionStatus.permanently_failed, ConversionStatus.skipped}
)

# The "all" window only looks at failed/skipped timestamps; permanently failed
# records are never matched by their own timestamp there.
WINDOW_FIELDS = {
    RetryStatusFilter.failed: ("conversion_failed_at",),
    RetryStatusFilter.skipped: ("conversion_skipped_at",),
    RetryStatusFilter.permanently_failed: ("conversion_permanently_failed_at",),
    RetryStatusFilter.all: ("conversion_failed_at", "conversion_skipped_at"),
}

RETRY_RESET_FIELDS: Dict[str, Any] = {
    "conversion_status": ConversionStatus.pending,
    "conversion_attempts": 0,
    "conversion_error": None,
    "conversion_failed_at": None,
    "conversion_permanently_failed_at": None,
    "conversion_skipped_at": None,
    "conversion_skip_reason": None,
}


def build_retry_query(options: RetrySweepOptions, now: datetime, max_attempts: int) -> RecordQuery:
    """Translate sweep options into a record store query."""

    if options.status == RetryStatusFilter.all:
        statuses = RETRYABLE_STATUSES
    else:
        statuses = frozenset({ConversionStatus(options.status.value)})

    window: Dict[str, Any] = {}
    if options.hours > 0:
        window = {
            "timestamp_fields": WINDOW_FIELDS[options.status],
            "since": now - timedelta(hours=options.hours),
            "until": now,
        }

    return RecordQuery(
        statuses=statuses,
        max_attempts=None if options.force else max_attempts,
        order_by="conversion_failed_at",
        limit=options.limit,
        **window,
    )


def _default_enqueue(image_id: int) -> Any:
    from webp_pipeline.tasks.image_tasks import enqueue_conversion

    return enqueue_conversion(image_id)


class RetrySweeper:
    """Selects retry candidates, resets them to pending and re-enqueues them."""

    def __init__(
        self,
        records: Optional[ImageRecordStore] = None,
        enqueue: Callable[[int], Any] = _default_enqueue,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = settings.conversion_max_attempts,
    ) -> None:
        self.records = records if records is not None else record_store
        self.enqueue = enqueue
        self._clock = clock
        self.max_attempts = max_attempts

    def select(self, options: RetrySweepOptions) -> List[ImageRecord]:
        query = build_retry_query(options, self._clock(), self.max_attempts)
        return self.records.query(query)

    def sweep(
        self,
        options: RetrySweepOptions,
        on_progress: Optional[Callable[[ImageRecord], None]] = None,
    ) -> RetrySweepReport:
        """Select and retry in one go."""

        return self.retry(self.select(options), options, on_progress)

    def retry(
        self,
        candidates: List[ImageRecord],
        options: RetrySweepOptions,
        on_progress: Optional[Callable[[ImageRecord], None]] = None,
    ) -> RetrySweepReport:
        """Reset and re-enqueue ``candidates``. Per-record failures are logged and counted, never raised."""

        report = RetrySweepReport(
            options=options,
            selected=len(candidates),
            candidates=[RetryCandidate.from_record(r) for r in candidates],
        )
        logger.info("retry_sweep_selected", count=report.selected, **options.model_dump(mode="json"))

        if options.dry_run:
            return report

        for record in candidates:
            try:
                self.records.update(record.id, RETRY_RESET_FIELDS)
                self.enqueue(record.id)
            except Exception as exc:
                report.failed_ids.append(record.id)
                logger.error("retry_sweep_record_failed", image_id=record.id, error=str(exc))
                self._restore(record)
            else:
                report.retried += 1
                logger.debug("retry_sweep_record_enqueued", image_id=record.id)
            if on_progress is not None:
                on_progress(record)

        if report.retried:
            logger.info(
                "retry_sweep_completed",
                retried_count=report.retried,
                failed_count=len(report.failed_ids),
                parameters=options.model_dump(mode="json", exclude={"dry_run"}),
            )
        return report

    def _restore(self, record: ImageRecord) -> None:
        # Put back what the reset cleared so the next sweep can select it again.
        previous = {field: getattr(record, field) for field in RETRY_RESET_FIELDS}
        try:
            self.records.update(record.id, previous)
        except Exception:
            logger.exception("retry_sweep_restore_failed", image_id=record.id)
