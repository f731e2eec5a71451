"""Upload, lookup and deletion of owner images."""

from __future__ import annotations

import hashlib
import math
import secrets
import time
from typing import Any, Callable, Optional

from webp_pipeline.core.config import Settings, settings
from webp_pipeline.core.logging import get_logger
from webp_pipeline.models.image import ImagePage, ImageRecord, ImageResponse, NewImage
from webp_pipeline.services.blob_store import BlobStore, blob_store
from webp_pipeline.services.record_store import DuplicateImageError, ImageRecordStore, record_store

logger = get_logger(__name__)

MIME_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png"}


class UploadValidationError(ValueError):
    """Raised when an upload has a disallowed type or size."""


class StorageWriteError(RuntimeError):
    """Raised when upload bytes could not be persisted."""


def _default_enqueue(image_id: int) -> Any:
    from webp_pipeline.tasks.image_tasks import enqueue_conversion

    return enqueue_conversion(image_id)


class ImageService:
    """Owner-scoped operations on stored images. The owner is always passed in."""

    def __init__(
        self,
        records: Optional[ImageRecordStore] = None,
        blobs: Optional[BlobStore] = None,
        enqueue: Callable[[int], Any] = _default_enqueue,
        config: Settings = settings,
    ) -> None:
        self.records = records if records is not None else record_store
        self.blobs = blobs if blobs is not None else blob_store
        self.enqueue = enqueue
        self.config = config

    def upload(self, owner_id: int, data: bytes, original_name: str, mime: str) -> ImageRecord:
        """Store an image and schedule its conversion, or return the owner's existing copy."""

        size = len(data)
        logger.info("image_upload_started", owner_id=owner_id, original_name=original_name, size=size)
        self._validate(mime, size)

        content_hash = hashlib.sha256(data).hexdigest()
        existing = self.records.find_by_hash(owner_id, content_hash)
        if existing is not None:
            logger.info("image_duplicate_prevented", owner_id=owner_id, existing_image_id=existing.id, hash=content_hash)
            return existing

        path = self._storage_path(owner_id, original_name, mime)
        try:
            self.blobs.write(path, data)
        except (OSError, ValueError) as exc:
            logger.error("image_store_failed", owner_id=owner_id, original_name=original_name, error=str(exc))
            raise StorageWriteError(f"Failed to store {original_name}") from exc

        new_image = NewImage(
            owner_id=owner_id,
            path=path,
            original_name=original_name,
            mime=mime,
            size=size,
            content_hash=content_hash,
        )
        try:
            record = self.records.create(new_image)
        except DuplicateImageError as exc:
            # A concurrent upload of the same bytes won the race.
            self.blobs.delete(path)
            logger.info("image_duplicate_prevented", owner_id=owner_id, existing_image_id=exc.existing_id, hash=content_hash)
            return self.records.find_by_id(exc.existing_id)

        logger.info("image_uploaded", owner_id=owner_id, image_id=record.id, path=path, size=size)

        try:
            self.enqueue(record.id)
        except Exception as exc:
            logger.error("image_conversion_enqueue_failed", image_id=record.id, error=str(exc))

        return record

    def get(self, owner_id: int, image_id: int) -> Optional[ImageRecord]:
        record = self.records.find_by_id(image_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def list(self, owner_id: int, page: int = 1, per_page: int = 20) -> ImagePage:
        page = max(page, 1)
        per_page = min(max(per_page, 1), 100)
        total = self.records.count_for_owner(owner_id)
        records = self.records.list_for_owner(owner_id, offset=(page - 1) * per_page, limit=per_page)
        return ImagePage(
            items=[ImageResponse.from_record(r) for r in records],
            total=total,
            page=page,
            per_page=per_page,
            last_page=max(1, math.ceil(total / per_page)),
        )

    def delete(self, owner_id: int, image_id: int) -> bool:
        record = self.get(owner_id, image_id)
        if record is None:
            return False

        self.blobs.delete(record.path)
        if record.original_path:
            self.blobs.delete(record.original_path)
        deleted = self.records.delete(image_id)
        logger.info("image_deleted", owner_id=owner_id, image_id=image_id, path=record.path)
        return deleted

    def _validate(self, mime: str, size: int) -> None:
        if mime not in self.config.allowed_upload_mimes:
            raise UploadValidationError("Only JPEG and PNG images are accepted")
        if size == 0:
            raise UploadValidationError("Uploaded file is empty")
        if size > self.config.max_upload_bytes:
            limit_mb = self.config.max_upload_bytes / (1024 * 1024)
            raise UploadValidationError(f"Maximum file size is {limit_mb:g} MB")

    @staticmethod
    def _storage_path(owner_id: int, original_name: str, mime: str) -> str:
        extension = MIME_EXTENSIONS.get(mime)
        if extension is None:
            _, _, suffix = original_name.rpartition(".")
            extension = suffix.lower() or "bin"
        return f"images/{owner_id}/image_{int(time.time())}_{secrets.token_hex(4)}.{extension}"


image_service = ImageService()
