import hashlib
import io
import os

import pytest

from remotecache.cache import CacheError, EntryKind
from remotecache.disk import DiskCache
from remotecache.findmissing import Digest
from remotecache.metrics import (
    AC_KIND,
    CAS_KIND,
    CONTAINS_METHOD,
    GET_METHOD,
    HIT_STATUS,
    MISS_STATUS,
    RAW_KIND,
    MetricsDecorator,
    RequestCounter,
)

FAKE_ACTION_HASH = "8f279f9d8bc605b4d733d0ba9386de2376004ab628fee6b000144fdc7b30a6a1"


def random_data_and_hash(size):
    data = os.urandom(size)
    return data, hashlib.sha256(data).hexdigest()


def count(counter, kind, status):
    return counter.value(GET_METHOD, kind, status) + counter.value(
        CONTAINS_METHOD, kind, status
    )


@pytest.fixture
def metrics_cache(tmp_path):
    cache = MetricsDecorator(DiskCache(tmp_path / "cache", 100000))
    yield cache
    cache.close()


def test_counter_starts_at_zero_and_increments():
    counter = RequestCounter()
    assert counter.value(GET_METHOD, CAS_KIND, HIT_STATUS) == 0
    counter.inc(GET_METHOD, CAS_KIND, HIT_STATUS)
    counter.inc(GET_METHOD, EntryKind.CAS, HIT_STATUS, 3)
    assert counter.value(GET_METHOD, CAS_KIND, HIT_STATUS) == 4
    assert counter.value(GET_METHOD, CAS_KIND, MISS_STATUS) == 0


def test_counter_rejects_negative_amount():
    counter = RequestCounter()
    with pytest.raises(ValueError):
        counter.inc(GET_METHOD, CAS_KIND, HIT_STATUS, -1)


def test_metrics_unvalidated_ac(metrics_cache):
    ar_data = os.urandom(100)
    metrics_cache.put(EntryKind.AC, FAKE_ACTION_HASH, len(ar_data), io.BytesIO(ar_data))

    found, size = metrics_cache.contains(EntryKind.AC, FAKE_ACTION_HASH, -1)
    assert found
    assert size == len(ar_data)

    counter = metrics_cache.counter
    assert count(counter, AC_KIND, HIT_STATUS) == 1
    assert count(counter, AC_KIND, MISS_STATUS) == 0
    assert count(counter, CAS_KIND, HIT_STATUS) == 0
    assert count(counter, CAS_KIND, MISS_STATUS) == 0
    assert count(counter, RAW_KIND, HIT_STATUS) == 0
    assert count(counter, RAW_KIND, MISS_STATUS) == 0

    rc, _ = metrics_cache.get(EntryKind.AC, FAKE_ACTION_HASH, -1, 0)
    assert rc is not None
    with rc:
        assert rc.read() == ar_data

    assert count(counter, AC_KIND, HIT_STATUS) == 2
    assert count(counter, AC_KIND, MISS_STATUS) == 0
    assert count(counter, CAS_KIND, HIT_STATUS) == 0
    assert count(counter, CAS_KIND, MISS_STATUS) == 0
    assert count(counter, RAW_KIND, HIT_STATUS) == 0
    assert count(counter, RAW_KIND, MISS_STATUS) == 0


def test_get_miss_is_counted(metrics_cache):
    _, hash = random_data_and_hash(50)
    rc, size = metrics_cache.get(EntryKind.CAS, hash, 50, 0)
    assert rc is None
    assert size == -1
    assert metrics_cache.counter.value(GET_METHOD, CAS_KIND, MISS_STATUS) == 1
    assert metrics_cache.counter.value(GET_METHOD, CAS_KIND, HIT_STATUS) == 0


def test_get_zstd_hit_is_counted_as_cas_get(metrics_cache):
    data, hash = random_data_and_hash(300)
    metrics_cache.put(EntryKind.CAS, hash, len(data), io.BytesIO(data))

    rc, size = metrics_cache.get_zstd(hash, len(data), 0)
    assert rc is not None
    rc.close()
    assert size == len(data)
    assert metrics_cache.counter.value(GET_METHOD, CAS_KIND, HIT_STATUS) == 1


def test_errors_are_not_counted(metrics_cache):
    with pytest.raises(CacheError):
        metrics_cache.get(EntryKind.CAS, "abc", -1, 0)
    assert count(metrics_cache.counter, CAS_KIND, HIT_STATUS) == 0
    assert count(metrics_cache.counter, CAS_KIND, MISS_STATUS) == 0


def test_contains_miss_is_counted(metrics_cache):
    _, hash = random_data_and_hash(10)
    found, size = metrics_cache.contains(EntryKind.RAW, hash, 10)
    assert not found
    assert size == -1
    assert metrics_cache.counter.value(CONTAINS_METHOD, RAW_KIND, MISS_STATUS) == 1


def test_find_missing_counts_hits_and_misses(metrics_cache):
    data, hash = random_data_and_hash(100)
    metrics_cache.put(EntryKind.CAS, hash, len(data), io.BytesIO(data))
    _, other_hash = random_data_and_hash(200)

    present = Digest(hash, len(data))
    absent = Digest(other_hash, 200)
    missing = metrics_cache.find_missing_cas_blobs([present, absent])

    assert missing == [absent]
    counter = metrics_cache.counter
    assert counter.value(CONTAINS_METHOD, CAS_KIND, HIT_STATUS) == 1
    assert counter.value(CONTAINS_METHOD, CAS_KIND, MISS_STATUS) == 1


def test_stats_delegates_to_cache(metrics_cache):
    data, hash = random_data_and_hash(100)
    metrics_cache.put(EntryKind.CAS, hash, len(data), io.BytesIO(data))
    _, reserved, num_items, _ = metrics_cache.stats()
    assert num_items == 1
    assert reserved == 0
    assert metrics_cache.max_size == 100000