"""API router aggregator."""

from fastapi import APIRouter

from webp_pipeline.api.routes import images

api_router = APIRouter()
api_router.include_router(images.router)
