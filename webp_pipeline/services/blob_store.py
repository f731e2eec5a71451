"""Key-addressed blob storage for image bytes."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import get_logger

logger = get_logger(__name__)


class BlobNotFoundError(FileNotFoundError):
    """Raised when reading or sizing a key that does not exist."""


class BlobStore(Protocol):
    def exists(self, path: str) -> bool:
        ...

    def read(self, path: str) -> bytes:
        ...

    def write(self, path: str, data: bytes) -> None:
        ...

    def delete(self, path: str) -> bool:
        ...

    def size(self, path: str) -> int:
        ...


class LocalBlobStore:
    """Stores blobs as files below a root directory."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        if not path:
            raise ValueError("Blob path must not be empty")
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(path) from exc

    def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file first so readers never see partial bytes.
        tmp = target.with_name(f".{target.name}.part")
        tmp.write_bytes(data)
        os.replace(tmp, target)
        logger.debug("blob_written", path=path, bytes=len(data))

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.debug("blob_deleted", path=path)
        return True

    def size(self, path: str) -> int:
        target = self._resolve(path)
        try:
            return target.stat().st_size
        except FileNotFoundError as exc:
            raise BlobNotFoundError(path) from exc


blob_store = LocalBlobStore(settings.storage_root)
