from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from webp_pipeline.models.image import ConversionStatus, NewImage
from webp_pipeline.services.record_store import (
    DuplicateImageError,
    InMemoryImageRecordStore,
    RecordNotFoundError,
    RecordQuery,
    RedisImageRecordStore,
)


class FakeRedis:
    """Just enough of redis-py (decode_responses=True) for the record store."""

    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.zsets = {}

    def incr(self, key):
        self.strings[key] = str(int(self.strings.get(key, 0)) + 1)
        return int(self.strings[key])

    def set(self, key, value, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        return True

    def get(self, key):
        return self.strings.get(key)

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def exists(self, key):
        return int(key in self.hashes or key in self.strings)

    def delete(self, *keys):
        for key in keys:
            self.hashes.pop(key, None)
            self.strings.pop(key, None)

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    def zrem(self, key, member):
        self.zsets.get(key, {}).pop(member, None)

    def _sorted(self, key):
        return [m for m, _ in sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))]

    def zrange(self, key, start, end):
        members = self._sorted(key)
        return members[start:] if end == -1 else members[start : end + 1]

    def zrevrange(self, key, start, end):
        return list(reversed(self._sorted(key)))[start : end + 1]

    def zcard(self, key):
        return len(self.zsets.get(key, {}))


def new_image(owner_id=1, content_hash="abc", path="images/1/a.jpg"):
    return NewImage(
        owner_id=owner_id,
        path=path,
        original_name="a.jpg",
        mime="image/jpeg",
        size=1234,
        content_hash=content_hash,
    )


@pytest.fixture(params=["memory", "redis"])
def store(request, clock):
    if request.param == "memory":
        return InMemoryImageRecordStore(clock=clock)
    return RedisImageRecordStore(FakeRedis(), prefix="test", clock=clock)


def test_create_and_find(store):
    record = store.create(new_image())

    assert record.conversion_status == ConversionStatus.pending
    assert record.conversion_attempts == 0
    assert store.find_by_id(record.id) == record
    assert store.find_by_hash(1, "abc") == record
    assert store.find_by_hash(2, "abc") is None


def test_hash_unique_per_owner(store):
    first = store.create(new_image(owner_id=1))
    store.create(new_image(owner_id=2))

    with pytest.raises(DuplicateImageError) as excinfo:
        store.create(new_image(owner_id=1))

    assert excinfo.value.existing_id == first.id


def test_update_round_trips_typed_fields(store):
    record = store.create(new_image())

    updated = store.update(
        record.id,
        {
            "conversion_status": "failed",
            "conversion_failed_at": FIXED_NOW,
            "conversion_error": "boom",
            "conversion_attempts": 2,
            "compression_ratio": 12.5,
        },
    )

    assert updated.conversion_status == ConversionStatus.failed
    reloaded = store.find_by_id(record.id)
    assert reloaded.conversion_status == ConversionStatus.failed
    assert reloaded.conversion_failed_at == FIXED_NOW
    assert reloaded.conversion_attempts == 2
    assert reloaded.compression_ratio == 12.5
    assert reloaded.path == record.path


def test_update_rejects_unknown_and_immutable_fields(store):
    record = store.create(new_image())

    with pytest.raises(ValueError):
        store.update(record.id, {"nonsense": 1})
    with pytest.raises(ValueError):
        store.update(record.id, {"content_hash": "other"})
    with pytest.raises(RecordNotFoundError):
        store.update(9999, {"conversion_attempts": 1})


def test_delete_releases_hash(store):
    record = store.create(new_image())

    assert store.delete(record.id) is True
    assert store.find_by_id(record.id) is None
    assert store.delete(record.id) is False
    assert store.create(new_image()).id != record.id


def test_query_filters_orders_and_limits(store):
    a = store.create(new_image(content_hash="a"))
    b = store.create(new_image(content_hash="b"))
    c = store.create(new_image(content_hash="c"))
    store.update(a.id, {"conversion_status": "failed", "conversion_failed_at": FIXED_NOW - timedelta(hours=1)})
    store.update(b.id, {"conversion_status": "failed", "conversion_failed_at": FIXED_NOW - timedelta(hours=5)})
    store.update(c.id, {"conversion_status": "completed", "converted_at": FIXED_NOW})

    query = RecordQuery(
        statuses=frozenset({ConversionStatus.failed}),
        timestamp_fields=("conversion_failed_at",),
        since=FIXED_NOW - timedelta(hours=24),
        until=FIXED_NOW,
    )

    assert [r.id for r in store.query(query)] == [b.id, a.id]


def test_list_for_owner_latest_first(clock):
    ticks = iter(FIXED_NOW + timedelta(minutes=i) for i in range(100))
    store = InMemoryImageRecordStore(clock=lambda: next(ticks))
    first = store.create(new_image(content_hash="1"))
    second = store.create(new_image(content_hash="2"))
    store.create(new_image(owner_id=2, content_hash="3"))

    assert [r.id for r in store.list_for_owner(1)] == [second.id, first.id]
    assert [r.id for r in store.list_for_owner(1, offset=1, limit=1)] == [first.id]
    assert store.count_for_owner(1) == 2


def test_query_nulls_sort_first():
    query = RecordQuery(order_by="conversion_failed_at")
    store = InMemoryImageRecordStore()
    failed = store.create(new_image(content_hash="f"))
    skipped = store.create(new_image(content_hash="s"))
    store.update(failed.id, {"conversion_failed_at": FIXED_NOW})

    assert [r.id for r in store.query(query)] == [skipped.id, failed.id]


class DeletingRedis(FakeRedis):
    """Drops a record's hash the first time it is read, like a concurrent delete."""

    victim = None

    def hgetall(self, key):
        if key == self.victim:
            self.hashes.pop(key, None)
        return super().hgetall(key)


def test_redis_update_after_concurrent_delete_raises_not_found(clock):
    client = DeletingRedis()
    store = RedisImageRecordStore(client, prefix="test", clock=clock)
    record = store.create(new_image())
    client.victim = f"test:image:{record.id}"

    with pytest.raises(RecordNotFoundError):
        store.update(record.id, {"conversion_attempts": 1})
    assert f"test:image:{record.id}" not in client.hashes
