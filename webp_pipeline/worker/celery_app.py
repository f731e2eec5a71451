"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_init

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import configure_logging, get_logger

logger = get_logger(__name__)

celery_app = Celery("webp_pipeline", include=["webp_pipeline.tasks.image_tasks"])

broker_url = settings.celery_broker_url or settings.redis_url
result_backend = settings.celery_result_backend or settings.redis_url

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=result_backend,
    task_default_queue=settings.celery_image_queue,
    task_soft_time_limit=settings.conversion_timeout_seconds,
    task_time_limit=settings.conversion_timeout_seconds + 30,
    worker_max_tasks_per_child=100,
    task_track_started=True,
    task_always_eager=settings.debug,
    beat_schedule={
        "retry-failed-webp-conversions": {
            "task": "image.retry_failed_conversions",
            "schedule": settings.retry_sweep_interval_seconds,
            "kwargs": {"hours": settings.retry_sweep_hours, "limit": settings.retry_sweep_limit},
        },
    },
)


@worker_init.connect
def probe_codec(**_kwargs) -> None:
    """Refuse to start a worker that has no WebP encoder."""

    from webp_pipeline.services.codecs import get_codec

    configure_logging()
    codec = get_codec()
    logger.info("worker_codec_ready", codec=codec.name)
