"""State machine for converting a stored image to WebP."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import get_logger
from webp_pipeline.models.image import (
    TERMINAL_TIMESTAMPS,
    TIMESTAMP_FIELDS,
    WEBP_MIME,
    ConversionStatus,
    ImageRecord,
    utcnow,
)
from webp_pipeline.models.job import ConversionOutcome
from webp_pipeline.services.blob_store import BlobStore, blob_store
from webp_pipeline.services.codecs import CodecUnavailableError, ImageCodec, get_codec
from webp_pipeline.services.conversion_policy import (
    compression_ratio,
    derive_webp_path,
    select_quality,
    should_delete_original,
    truncate_message,
)
from webp_pipeline.services.record_store import ImageRecordStore, record_store

logger = get_logger(__name__)

SOURCE_FILE_NOT_FOUND = "source_file_not_found"


class ConversionVerificationError(RuntimeError):
    """Raised when the encoded WebP is not present after writing it."""


def new_job_id() -> str:
    return f"webp_{uuid.uuid4().hex}"


def terminal_timestamps(status: ConversionStatus, now: datetime) -> Dict[str, Optional[datetime]]:
    """Timestamp fields for entering ``status``: its own set, every other cleared."""

    owned = TERMINAL_TIMESTAMPS.get(status)
    return {field: (now if field == owned else None) for field in TIMESTAMP_FIELDS}


class ConversionJob:
    """Runs one conversion attempt for one image record.

    The attempt number comes from the task queue. Per-image failures are
    written to the record and re-raised so the queue can schedule another
    attempt; a missing codec is an environment problem and propagates without
    touching the record.
    """

    def __init__(
        self,
        image_id: int,
        attempt: int = 1,
        *,
        job_id: Optional[str] = None,
        records: Optional[ImageRecordStore] = None,
        blobs: Optional[BlobStore] = None,
        codec_provider: Callable[[], ImageCodec] = get_codec,
        clock: Callable[[], datetime] = utcnow,
        error_limit: int = settings.conversion_error_max_length,
    ) -> None:
        self.image_id = image_id
        self.attempt = attempt
        self.job_id = job_id or new_job_id()
        self.records = records if records is not None else record_store
        self.blobs = blobs if blobs is not None else blob_store
        self._codec_provider = codec_provider
        self._clock = clock
        self._error_limit = error_limit
        self.original_size = 0
        self.log = logger.bind(job_id=self.job_id, image_id=image_id, attempt=attempt)

    def run(self) -> ConversionOutcome:
        self.log.info("webp_conversion_started")

        record = self.records.find_by_id(self.image_id)
        if record is None:
            self.log.warning("webp_conversion_record_missing")
            return self._outcome(None)

        self.original_size = record.size

        if not self.blobs.exists(record.path):
            return self._outcome(self._mark_skipped(record, SOURCE_FILE_NOT_FOUND))

        if record.mime == WEBP_MIME:
            return self._outcome(self._mark_already_converted(record))

        return self._outcome(self._convert(record))

    def _outcome(self, record: Optional[ImageRecord]) -> ConversionOutcome:
        return ConversionOutcome(
            job_id=self.job_id,
            image_id=self.image_id,
            attempt=self.attempt,
            status=record.conversion_status if record else None,
            record=record,
        )

    def _convert(self, record: ImageRecord) -> ImageRecord:
        codec = self._codec_provider()
        self.log.debug("webp_codec_resolved", codec=codec.name)

        self.records.update(record.id, {"conversion_status": ConversionStatus.processing})

        try:
            webp_path = derive_webp_path(record.path)
            quality = select_quality(record.mime)

            encoded = codec.encode_webp(self.blobs.read(record.path), quality)
            self.blobs.write(webp_path, encoded)
            if not self.blobs.exists(webp_path):
                raise ConversionVerificationError(f"WebP file was not created at {webp_path}")
            new_size = self.blobs.size(webp_path)

            keep_original = not should_delete_original(self.original_size, new_size)
            updated = self._mark_completed(record, webp_path, new_size, quality, keep_original)
        except CodecUnavailableError:
            # encoder vanished mid-run; undo the processing mark and let it propagate
            self.log.error("webp_codec_lost", codec=codec.name)
            self.records.update(record.id, {"conversion_status": record.conversion_status})
            raise
        except Exception as exc:
            self._mark_failed(record, exc)
            raise

        self._cleanup_original(record, new_size, keep_original)
        return updated

    def _mark_completed(
        self, record: ImageRecord, webp_path: str, new_size: int, quality: int, keep_original: bool
    ) -> ImageRecord:
        now = self._clock()
        ratio = compression_ratio(self.original_size, new_size)
        fields: Dict[str, Any] = {
            "path": webp_path,
            "mime": WEBP_MIME,
            "size": new_size,
            "conversion_status": ConversionStatus.completed,
            "conversion_quality": quality,
            "original_size": self.original_size,
            "compression_ratio": ratio,
            "original_path": record.path if keep_original else None,
            "conversion_attempts": self.attempt,
            "conversion_error": None,
            **terminal_timestamps(ConversionStatus.completed, now),
        }
        updated = self.records.update(record.id, fields)
        self.log.info(
            "webp_conversion_completed",
            original_size_kb=round(self.original_size / 1024, 2),
            new_size_kb=round(new_size / 1024, 2),
            saved_percent=ratio,
            quality=quality,
        )
        return updated

    def _cleanup_original(self, record: ImageRecord, new_size: int, keep_original: bool) -> None:
        if keep_original:
            self.log.warning(
                "webp_larger_than_original_keeping_both",
                original_size=self.original_size,
                webp_size=new_size,
            )
            return

        # The record already points at the WebP, so a failed delete only leaves an orphan.
        try:
            self.blobs.delete(record.path)
        except OSError as exc:
            self.log.error("webp_original_delete_failed", path=record.path, error=str(exc))
            return
        self.log.info("webp_original_deleted", path=record.path, saved_bytes=self.original_size - new_size)

    def _mark_failed(self, record: ImageRecord, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        self.log.error("webp_conversion_failed", error=message, exc_info=exc)
        fields: Dict[str, Any] = {
            "conversion_status": ConversionStatus.failed,
            "conversion_error": truncate_message(message, self._error_limit),
            "conversion_attempts": self.attempt,
            "original_size": self.original_size,
            **terminal_timestamps(ConversionStatus.failed, self._clock()),
        }
        try:
            self.records.update(record.id, fields)
        except Exception:
            self.log.exception("webp_failure_not_recorded")

    def _mark_skipped(self, record: ImageRecord, reason: str) -> ImageRecord:
        self.log.warning("webp_source_file_not_found", path=record.path)
        return self.records.update(
            record.id,
            {
                "conversion_status": ConversionStatus.skipped,
                "conversion_skip_reason": truncate_message(reason, self._error_limit),
                "original_size": self.original_size,
                **terminal_timestamps(ConversionStatus.skipped, self._clock()),
            },
        )

    def _mark_already_converted(self, record: ImageRecord) -> ImageRecord:
        self.log.info("webp_already_converted")
        return self.records.update(
            record.id,
            {
                "conversion_status": ConversionStatus.already_converted,
                "original_size": self.original_size,
                **terminal_timestamps(ConversionStatus.already_converted, self._clock()),
            },
        )


def mark_permanently_failed(
    image_id: int,
    *,
    records: Optional[ImageRecordStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Optional[ImageRecord]:
    """Move a failed record to ``permanently_failed`` once the queue gives up on it."""

    records = records if records is not None else record_store
    record = records.find_by_id(image_id)
    if record is None or record.conversion_status != ConversionStatus.failed:
        return None

    updated = records.update(
        image_id,
        {
            "conversion_status": ConversionStatus.permanently_failed,
            **terminal_timestamps(ConversionStatus.permanently_failed, clock()),
        },
    )
    logger.warning(
        "webp_conversion_permanently_failed",
        image_id=image_id,
        attempts=updated.conversion_attempts,
        error=updated.conversion_error,
    )
    return updated
