"""Celery tasks for WebP conversion and the retry sweep."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from celery.result import AsyncResult

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import get_logger
from webp_pipeline.models.job import RetryStatusFilter, RetrySweepOptions
from webp_pipeline.services import codecs
from webp_pipeline.services.blob_store import blob_store
from webp_pipeline.services.codecs import CodecUnavailableError, get_codec
from webp_pipeline.services.conversion_job import ConversionJob, mark_permanently_failed, new_job_id
from webp_pipeline.services.record_store import record_store
from webp_pipeline.services.retry_sweeper import RetrySweeper
from webp_pipeline.worker.celery_app import celery_app

logger = get_logger(__name__)

SWEEP_LOCK_NAME = "lock:retry_sweep"


def retry_countdown(retries: int) -> int:
    """Delay before the next attempt, clamped to the last configured step."""

    backoff = settings.conversion_backoff_seconds
    return backoff[min(retries, len(backoff) - 1)]


@celery_app.task(
    bind=True,
    name="image.convert_to_webp",
    max_retries=settings.conversion_max_attempts - 1,
    soft_time_limit=settings.conversion_timeout_seconds,
    time_limit=settings.conversion_timeout_seconds + 30,
)
def convert_image_to_webp(self, image_id: int) -> dict:
    """Run one conversion attempt; the queue owns retries and backoff."""

    attempt = self.request.retries + 1
    job = ConversionJob(
        image_id,
        attempt,
        job_id=self.request.id or new_job_id(),
        records=record_store,
        blobs=blob_store,
        codec_provider=get_codec,
    )
    try:
        outcome = job.run()
    except CodecUnavailableError as exc:
        logger.critical("webp_codec_unavailable", job_id=job.job_id, image_id=image_id, error=str(exc))
        # re-probe on the next task instead of reusing a codec that has gone away
        codecs.get_codec.cache_clear()
        raise
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            mark_permanently_failed(image_id, records=record_store)
            raise
        countdown = retry_countdown(self.request.retries)
        logger.info("webp_conversion_retry_scheduled", job_id=job.job_id, image_id=image_id, countdown=countdown)
        raise self.retry(exc=exc, countdown=countdown)

    return outcome.model_dump(mode="json", exclude={"record"})


def enqueue_conversion(image_id: int) -> AsyncResult:
    """Queue a conversion for ``image_id`` on the images queue."""

    return convert_image_to_webp.apply_async(args=[image_id], queue=settings.celery_image_queue)


@contextmanager
def sweep_lock(client: Optional[redis.Redis] = None) -> Iterator[bool]:
    """Hold a non-blocking Redis lock so scheduled sweeps never overlap."""

    client = client or redis.Redis.from_url(settings.redis_url)
    lock = client.lock(
        f"{settings.redis_key_prefix}:{SWEEP_LOCK_NAME}",
        timeout=settings.retry_sweep_interval_seconds,
    )
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


@celery_app.task(name="image.retry_failed_conversions")
def retry_failed_conversions(
    hours: int = 24,
    limit: int = 100,
    status: str = RetryStatusFilter.failed.value,
    force: bool = False,
) -> dict:
    """Scheduled retry sweep."""

    options = RetrySweepOptions(hours=hours, limit=limit, status=status, force=force)
    with sweep_lock() as acquired:
        if not acquired:
            logger.info("retry_sweep_already_running")
            return {"skipped": True, "retried": 0}
        report = RetrySweeper(records=record_store, enqueue=enqueue_conversion).sweep(options)

    return {
        "skipped": False,
        "selected": report.selected,
        "retried": report.retried,
        "failed_ids": report.failed_ids,
    }
