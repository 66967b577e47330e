"""Request counting for a disk cache, labelled by method, kind and status."""

from __future__ import annotations

import threading
from collections import Counter
from typing import BinaryIO, List, Optional, Sequence, Tuple, Union

from remotecache.cache import EntryKind
from remotecache.disk import DiskCache
from remotecache.findmissing import Digest

HIT_STATUS = "hit"
MISS_STATUS = "miss"

CONTAINS_METHOD = "contains"
GET_METHOD = "get"

AC_KIND = "ac"
CAS_KIND = "cas"
RAW_KIND = "raw"

Kind = Union[EntryKind, str]


class RequestCounter:
    """Thread-safe counts of incoming cache requests."""

    name = "bazel_remote_incoming_requests_total"
    help = "The number of incoming cache requests"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: "Counter[Tuple[str, str, str]]" = Counter()

    def inc(self, method: str, kind: Kind, status: str, amount: float = 1) -> None:
        """Add ``amount`` to the count for the given labels."""
        if amount < 0:
            raise ValueError(f"counters cannot decrease, got {amount}")
        with self._lock:
            self._counts[(method, str(kind), status)] += amount

    def value(self, method: str, kind: Kind, status: str) -> float:
        """Return the current count for the given labels."""
        with self._lock:
            return self._counts[(method, str(kind), status)]


def _status(hit: bool) -> str:
    return HIT_STATUS if hit else MISS_STATUS


class MetricsDecorator:
    """Wraps a DiskCache and counts hits and misses of its lookups.

    Requests that fail with an error are not counted.
    """

    def __init__(self, cache: DiskCache) -> None:
        self.cache = cache
        self.counter = RequestCounter()

    def get(
        self, kind: EntryKind, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Like DiskCache.get, counting the lookup."""
        rc, found_size = self.cache.get(kind, hash, size, offset)
        self.counter.inc(GET_METHOD, kind, _status(rc is not None))
        return rc, found_size

    def get_zstd(
        self, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Like DiskCache.get_zstd, counting the lookup as a CAS get."""
        rc, found_size = self.cache.get_zstd(hash, size, offset)
        self.counter.inc(GET_METHOD, CAS_KIND, _status(rc is not None))
        return rc, found_size

    def put(self, kind: EntryKind, hash: str, size: int, stream: BinaryIO) -> None:
        """Store an item; uploads are not counted."""
        self.cache.put(kind, hash, size, stream)

    def contains(self, kind: EntryKind, hash: str, size: int = -1) -> Tuple[bool, int]:
        """Like DiskCache.contains, counting the lookup."""
        found, found_size = self.cache.contains(kind, hash, size)
        self.counter.inc(CONTAINS_METHOD, kind, _status(found))
        return found, found_size

    def find_missing_cas_blobs(self, blobs: Sequence[Digest]) -> List[Digest]:
        """Like DiskCache.find_missing_cas_blobs, counting each digest."""
        looking = len(blobs)
        missing = self.cache.find_missing_cas_blobs(blobs)
        self.counter.inc(CONTAINS_METHOD, CAS_KIND, HIT_STATUS, looking - len(missing))
        self.counter.inc(CONTAINS_METHOD, CAS_KIND, MISS_STATUS, len(missing))
        return missing

    def stats(self) -> Tuple[int, int, int, int]:
        """Return the wrapped cache's statistics."""
        return self.cache.stats()

    @property
    def max_size(self) -> int:
        """The maximum cache size in bytes."""
        return self.cache.max_size

    def close(self) -> None:
        """Close the wrapped cache."""
        self.cache.close()

    def __enter__(self) -> "MetricsDecorator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()