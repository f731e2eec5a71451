"""Shared API dependencies."""

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from webp_pipeline.core.config import settings
from webp_pipeline.services.image_service import ImageService, image_service

api_token_header = APIKeyHeader(name=settings.auth_token_header, auto_error=False)


def verify_api_key(token: str | None = Security(api_token_header)) -> str:
    """Validate static API token if configured."""

    expected = settings.auth_jwt_secret
    if not expected:
        return ""

    if token in {expected, f"Bearer {expected}"}:
        return token or ""

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API token")


def get_auth_dependency(token: str = Depends(verify_api_key)) -> str:
    """Expose dependency alias for routers."""

    return token


def get_owner_id(owner_id: int | None = Header(default=None, alias=settings.owner_id_header)) -> int:
    """Identify the caller whose images are being accessed."""

    if owner_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing owner identity")
    return owner_id


def get_image_service() -> ImageService:
    return image_service
