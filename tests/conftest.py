from datetime import datetime, timezone
from io import BytesIO
from typing import List, Optional, Tuple

import pytest
from PIL import Image

from webp_pipeline.models.image import NewImage
from webp_pipeline.services.blob_store import LocalBlobStore
from webp_pipeline.services.record_store import InMemoryImageRecordStore

FIXED_NOW = datetime(2026, 1, 28, 12, 0, tzinfo=timezone.utc)


class FakeCodec:
    name = "fake"

    def __init__(self, output: bytes = b"RIFF0000WEBPVP8 ", error: Optional[Exception] = None):
        self.output = output
        self.error = error
        self.calls: List[Tuple[bytes, int]] = []

    def is_available(self) -> bool:
        return True

    def encode_webp(self, data: bytes, quality: int) -> bytes:
        self.calls.append((data, quality))
        if self.error is not None:
            raise self.error
        return self.output


class RecordingBlobStore(LocalBlobStore):
    """Local store that remembers mutating calls."""

    def __init__(self, root):
        super().__init__(root)
        self.writes: List[str] = []
        self.deletes: List[str] = []

    def write(self, path, data):
        self.writes.append(path)
        super().write(path, data)

    def delete(self, path):
        self.deletes.append(path)
        return super().delete(path)


def png_bytes(size=(16, 16), color=(200, 30, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def jpeg_bytes(size=(16, 16), color=(20, 120, 220)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def records(clock):
    return InMemoryImageRecordStore(clock=clock)


@pytest.fixture
def blobs(tmp_path):
    return RecordingBlobStore(tmp_path / "storage")


@pytest.fixture
def make_record(records, blobs):
    counter = {"n": 0}

    def _make(
        owner_id: int = 1,
        content: bytes = b"x" * 1000,
        mime: str = "image/jpeg",
        path: Optional[str] = None,
        store_blob: bool = True,
        **fields,
    ):
        counter["n"] += 1
        path = path or f"images/{owner_id}/image_{counter['n']}.jpg"
        if store_blob:
            blobs.write(path, content)
            blobs.writes.clear()
        record = records.create(
            NewImage(
                owner_id=owner_id,
                path=path,
                original_name=f"photo_{counter['n']}.jpg",
                mime=mime,
                size=len(content),
                content_hash=f"hash-{counter['n']}",
            )
        )
        if fields:
            record = records.update(record.id, fields)
        return record

    return _make
