import hashlib

import pytest

from conftest import jpeg_bytes, png_bytes
from webp_pipeline.core.config import Settings
from webp_pipeline.models.image import ConversionStatus
from webp_pipeline.services.image_service import ImageService, StorageWriteError, UploadValidationError


@pytest.fixture
def queue():
    return []


@pytest.fixture
def service(records, blobs, queue):
    return ImageService(records=records, blobs=blobs, enqueue=queue.append, config=Settings(max_upload_bytes=64 * 1024))


def test_upload_stores_blob_creates_pending_record_and_enqueues(service, blobs, queue):
    data = jpeg_bytes()

    record = service.upload(7, data, original_name="cat.jpg", mime="image/jpeg")

    assert record.owner_id == 7
    assert record.conversion_status == ConversionStatus.pending
    assert record.content_hash == hashlib.sha256(data).hexdigest()
    assert record.size == len(data)
    assert record.path.startswith("images/7/image_") and record.path.endswith(".jpg")
    assert blobs.read(record.path) == data
    assert queue == [record.id]


def test_duplicate_upload_returns_existing_without_second_write(service, blobs, queue):
    data = png_bytes()

    first = service.upload(1, data, original_name="a.png", mime="image/png")
    second = service.upload(1, data, original_name="renamed.png", mime="image/png")

    assert second.id == first.id
    assert len(blobs.writes) == 1
    assert queue == [first.id]


def test_same_bytes_for_another_owner_is_a_new_image(service, blobs):
    data = png_bytes()

    first = service.upload(1, data, original_name="a.png", mime="image/png")
    other = service.upload(2, data, original_name="a.png", mime="image/png")

    assert other.id != first.id
    assert len(blobs.writes) == 2


@pytest.mark.parametrize(
    "data, mime",
    [
        (b"GIF89a", "image/gif"),
        (b"RIFF", "image/webp"),
        (b"x" * (64 * 1024 + 1), "image/jpeg"),
        (b"", "image/png"),
    ],
)
def test_upload_validation(service, blobs, data, mime):
    with pytest.raises(UploadValidationError):
        service.upload(1, data, original_name="f", mime=mime)

    assert blobs.writes == []


def test_storage_failure_raises(service, blobs, monkeypatch, records):
    def broken_write(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(blobs, "write", broken_write)

    with pytest.raises(StorageWriteError):
        service.upload(1, jpeg_bytes(), original_name="a.jpg", mime="image/jpeg")

    assert records.count_for_owner(1) == 0


def test_enqueue_failure_still_returns_record(records, blobs):
    def broken_queue(image_id):
        raise ConnectionError("broker down")

    service = ImageService(records=records, blobs=blobs, enqueue=broken_queue)

    record = service.upload(1, jpeg_bytes(), original_name="a.jpg", mime="image/jpeg")

    assert records.find_by_id(record.id) is not None


def test_get_is_owner_scoped(service):
    record = service.upload(1, jpeg_bytes(), original_name="a.jpg", mime="image/jpeg")

    assert service.get(1, record.id) == record
    assert service.get(2, record.id) is None


def test_list_paginates(service):
    for shade in range(3):
        service.upload(1, png_bytes(color=(shade, 0, 0)), original_name=f"{shade}.png", mime="image/png")

    page = service.list(1, page=2, per_page=2)

    assert page.total == 3
    assert page.last_page == 2
    assert len(page.items) == 1


def test_delete_removes_blob_and_record(service, blobs, records):
    record = service.upload(1, jpeg_bytes(), original_name="a.jpg", mime="image/jpeg")

    assert service.delete(2, record.id) is False
    assert service.delete(1, record.id) is True
    assert not blobs.exists(record.path)
    assert records.find_by_id(record.id) is None


def test_delete_also_removes_original_kept_beside_webp(service, blobs, records, make_record):
    record = make_record(path="images/1/big.png", mime="image/png")
    blobs.write("images/1/big.webp", b"w" * 2000)
    records.update(
        record.id,
        {
            "path": "images/1/big.webp",
            "mime": "image/webp",
            "conversion_status": "completed",
            "original_path": "images/1/big.png",
        },
    )

    assert service.delete(1, record.id) is True
    assert not blobs.exists("images/1/big.webp")
    assert not blobs.exists("images/1/big.png")
