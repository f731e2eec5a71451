"""Persistence for image records.

Two interchangeable stores are provided: a thread-safe in-memory registry for
tests and single-process debug runs, and a Redis-backed store shared by the
API, the Celery workers and the retry CLI.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import redis
from pydantic_core import to_jsonable_python

from webp_pipeline.core.config import Settings, settings
from webp_pipeline.core.logging import get_logger
from webp_pipeline.models.image import (
    IMMUTABLE_FIELDS,
    ConversionStatus,
    ImageRecord,
    NewImage,
    utcnow,
)

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RecordNotFoundError(KeyError):
    """Raised when updating a record that does not exist."""


class DuplicateImageError(ValueError):
    """Raised when an owner already has a record with the same content hash."""

    def __init__(self, owner_id: int, content_hash: str, existing_id: int) -> None:
        self.owner_id = owner_id
        self.content_hash = content_hash
        self.existing_id = existing_id
        super().__init__(f"Owner {owner_id} already stored {content_hash} as image {existing_id}")


@dataclass(frozen=True)
class RecordQuery:
    """Declarative filter evaluated by record stores.

    ``timestamp_fields`` are OR-ed: a record is inside the window when any of
    them falls within ``[since, until]``. ``max_attempts`` is exclusive.
    """

    statuses: frozenset[ConversionStatus] = frozenset()
    timestamp_fields: tuple[str, ...] = ()
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    max_attempts: Optional[int] = None
    order_by: str = "conversion_failed_at"
    limit: Optional[int] = None

    def matches(self, record: ImageRecord) -> bool:
        if self.statuses and record.conversion_status not in self.statuses:
            return False
        if self.max_attempts is not None and record.conversion_attempts >= self.max_attempts:
            return False
        if self.timestamp_fields and (self.since is not None or self.until is not None):
            return any(self._in_window(getattr(record, field)) for field in self.timestamp_fields)
        return True

    def _in_window(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        if self.since is not None and value < self.since:
            return False
        if self.until is not None and value > self.until:
            return False
        return True

    def _sort_key(self, record: ImageRecord) -> tuple:
        value = getattr(record, self.order_by)
        # Nulls sort first, the way SQL orders them ascending.
        if value is None:
            return (0, _EPOCH, record.id)
        return (1, value, record.id)

    def apply(self, records: Iterable[ImageRecord]) -> List[ImageRecord]:
        selected = sorted((r for r in records if self.matches(r)), key=self._sort_key)
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


class ImageRecordStore(Protocol):
    def create(self, image: NewImage) -> ImageRecord:
        ...

    def find_by_id(self, image_id: int) -> Optional[ImageRecord]:
        ...

    def find_by_hash(self, owner_id: int, content_hash: str) -> Optional[ImageRecord]:
        ...

    def update(self, image_id: int, fields: Mapping[str, Any]) -> ImageRecord:
        ...

    def delete(self, image_id: int) -> bool:
        ...

    def query(self, criteria: RecordQuery) -> List[ImageRecord]:
        ...

    def list_for_owner(self, owner_id: int, offset: int = 0, limit: int = 20) -> List[ImageRecord]:
        ...

    def count_for_owner(self, owner_id: int) -> int:
        ...


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(ImageRecord.model_fields)
    if unknown:
        raise ValueError(f"Unknown image fields: {sorted(unknown)}")
    frozen = set(fields) & IMMUTABLE_FIELDS
    if frozen:
        raise ValueError(f"Immutable image fields cannot be updated: {sorted(frozen)}")


class InMemoryImageRecordStore:
    """Thread-safe image registry. Every update replaces the record under one lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._lock = Lock()
        self._clock = clock
        self._records: Dict[int, ImageRecord] = {}
        self._hash_index: Dict[tuple[int, str], int] = {}
        self._next_id = 1

    def create(self, image: NewImage) -> ImageRecord:
        key = (image.owner_id, image.content_hash)
        with self._lock:
            if key in self._hash_index:
                raise DuplicateImageError(image.owner_id, image.content_hash, self._hash_index[key])
            now = self._clock()
            record = ImageRecord(id=self._next_id, created_at=now, updated_at=now, **image.model_dump())
            self._next_id += 1
            self._records[record.id] = record
            self._hash_index[key] = record.id
            return record

    def find_by_id(self, image_id: int) -> Optional[ImageRecord]:
        with self._lock:
            return self._records.get(image_id)

    def find_by_hash(self, owner_id: int, content_hash: str) -> Optional[ImageRecord]:
        with self._lock:
            image_id = self._hash_index.get((owner_id, content_hash))
            return self._records.get(image_id) if image_id is not None else None

    def update(self, image_id: int, fields: Mapping[str, Any]) -> ImageRecord:
        _check_fields(fields)
        with self._lock:
            current = self._records.get(image_id)
            if current is None:
                raise RecordNotFoundError(image_id)
            data = current.model_dump()
            data.update(fields)
            data["updated_at"] = self._clock()
            updated = ImageRecord.model_validate(data)
            self._records[image_id] = updated
            return updated

    def delete(self, image_id: int) -> bool:
        with self._lock:
            record = self._records.pop(image_id, None)
            if record is None:
                return False
            self._hash_index.pop((record.owner_id, record.content_hash), None)
            return True

    def query(self, criteria: RecordQuery) -> List[ImageRecord]:
        with self._lock:
            records = list(self._records.values())
        return criteria.apply(records)

    def list_for_owner(self, owner_id: int, offset: int = 0, limit: int = 20) -> List[ImageRecord]:
        with self._lock:
            owned = [r for r in self._records.values() if r.owner_id == owner_id]
        owned.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return owned[offset : offset + limit]

    def count_for_owner(self, owner_id: int) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.owner_id == owner_id)


class RedisImageRecordStore:
    """Stores each record as a Redis hash of JSON-encoded field values."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "webp_pipeline",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self._clock = clock

    def _record_key(self, image_id: int) -> str:
        return f"{self.prefix}:image:{image_id}"

    def _hash_key(self, owner_id: int, content_hash: str) -> str:
        return f"{self.prefix}:image:hash:{owner_id}:{content_hash}"

    def _owner_key(self, owner_id: int) -> str:
        return f"{self.prefix}:owner:{owner_id}:images"

    @property
    def _ids_key(self) -> str:
        return f"{self.prefix}:image:ids"

    @property
    def _seq_key(self) -> str:
        return f"{self.prefix}:image:seq"

    @staticmethod
    def _encode(fields: Mapping[str, Any]) -> Dict[str, str]:
        return {name: json.dumps(to_jsonable_python(value)) for name, value in fields.items()}

    @staticmethod
    def _decode(raw: Mapping[str, str]) -> ImageRecord:
        return ImageRecord.model_validate({name: json.loads(value) for name, value in raw.items()})

    def create(self, image: NewImage) -> ImageRecord:
        hash_key = self._hash_key(image.owner_id, image.content_hash)
        image_id = int(self.client.incr(self._seq_key))
        if not self.client.set(hash_key, image_id, nx=True):
            existing = self.client.get(hash_key)
            raise DuplicateImageError(image.owner_id, image.content_hash, int(existing))

        now = self._clock()
        record = ImageRecord(id=image_id, created_at=now, updated_at=now, **image.model_dump())
        self.client.hset(self._record_key(image_id), mapping=self._encode(record.model_dump()))
        self.client.zadd(self._ids_key, {str(image_id): image_id})
        self.client.zadd(self._owner_key(image.owner_id), {str(image_id): now.timestamp()})
        return record

    def find_by_id(self, image_id: int) -> Optional[ImageRecord]:
        raw = self.client.hgetall(self._record_key(image_id))
        if not raw:
            return None
        return self._decode(raw)

    def find_by_hash(self, owner_id: int, content_hash: str) -> Optional[ImageRecord]:
        image_id = self.client.get(self._hash_key(owner_id, content_hash))
        if image_id is None:
            return None
        return self.find_by_id(int(image_id))

    def update(self, image_id: int, fields: Mapping[str, Any]) -> ImageRecord:
        _check_fields(fields)
        key = self._record_key(image_id)
        # Validate the merged state before writing anything.
        current = self.find_by_id(image_id)
        if current is None:
            raise RecordNotFoundError(image_id)
        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = self._clock()
        updated = ImageRecord.model_validate(data)
        changed = {name: getattr(updated, name) for name in (*fields, "updated_at")}
        self.client.hset(key, mapping=self._encode(changed))
        return updated

    def delete(self, image_id: int) -> bool:
        record = self.find_by_id(image_id)
        if record is None:
            return False
        self.client.delete(self._record_key(image_id), self._hash_key(record.owner_id, record.content_hash))
        self.client.zrem(self._ids_key, str(image_id))
        self.client.zrem(self._owner_key(record.owner_id), str(image_id))
        return True

    def query(self, criteria: RecordQuery) -> List[ImageRecord]:
        records = []
        for image_id in self.client.zrange(self._ids_key, 0, -1):
            record = self.find_by_id(int(image_id))
            if record is not None:
                records.append(record)
        return criteria.apply(records)

    def list_for_owner(self, owner_id: int, offset: int = 0, limit: int = 20) -> List[ImageRecord]:
        if limit <= 0:
            return []
        ids = self.client.zrevrange(self._owner_key(owner_id), offset, offset + limit - 1)
        records = [self.find_by_id(int(image_id)) for image_id in ids]
        return [r for r in records if r is not None]

    def count_for_owner(self, owner_id: int) -> int:
        return int(self.client.zcard(self._owner_key(owner_id)))


def build_record_store(config: Settings) -> ImageRecordStore:
    """Create the record store selected by configuration."""

    if config.record_store_backend == "redis":
        client = redis.Redis.from_url(config.redis_url, decode_responses=True)
        return RedisImageRecordStore(client, prefix=config.redis_key_prefix)
    return InMemoryImageRecordStore()


record_store = build_record_store(settings)
