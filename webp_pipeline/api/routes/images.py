"""Routes for uploading and managing images."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status

from webp_pipeline.api.dependencies import get_auth_dependency, get_image_service, get_owner_id
from webp_pipeline.models.image import ImagePage, ImageResponse
from webp_pipeline.services.image_service import ImageService, StorageWriteError, UploadValidationError

router = APIRouter(prefix="/images", tags=["images"], dependencies=[Depends(get_auth_dependency)])


@router.post(
    "",
    response_model=ImageResponse,
    summary="Upload an image and schedule its WebP conversion",
)
def upload_image(
    image: UploadFile = File(...),
    owner_id: int = Depends(get_owner_id),
    service: ImageService = Depends(get_image_service),
) -> ImageResponse:
    """Store the upload; conversion always happens later on a worker."""

    data = image.file.read()
    try:
        record = service.upload(
            owner_id,
            data,
            original_name=image.filename or "upload",
            mime=image.content_type or "",
        )
    except UploadValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StorageWriteError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Upload failed") from exc

    return ImageResponse.from_record(record)


@router.get("", response_model=ImagePage, summary="List the caller's images")
def list_images(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    owner_id: int = Depends(get_owner_id),
    service: ImageService = Depends(get_image_service),
) -> ImagePage:
    return service.list(owner_id, page=page, per_page=per_page)


@router.get("/{image_id}", response_model=ImageResponse, summary="Retrieve one image")
def get_image(
    image_id: int,
    owner_id: int = Depends(get_owner_id),
    service: ImageService = Depends(get_image_service),
) -> ImageResponse:
    record = service.get(owner_id, image_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return ImageResponse.from_record(record)


@router.delete("/{image_id}", summary="Delete an image and its file")
def delete_image(
    image_id: int,
    owner_id: int = Depends(get_owner_id),
    service: ImageService = Depends(get_image_service),
) -> dict:
    if not service.delete(owner_id, image_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return {"message": "Image deleted"}
