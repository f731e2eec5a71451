"""FastAPI application entrypoint."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webp_pipeline.api import router as api_router
from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router.api_router, prefix=settings.api_v1_prefix)


@app.get("/healthz", tags=["health"])
def health_check() -> dict:
    """Liveness probe; also reports the configured storage backend."""

    logger.debug("health_check_invoked", record_store=settings.record_store_backend)
    return {
        "status": "ok",
        "environment": settings.environment,
        "record_store": settings.record_store_backend,
    }
