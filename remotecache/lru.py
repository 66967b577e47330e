"""A size-bounded LRU index that evicts items to stay under a maximum size."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Tuple

BLOCK_SIZE = 4096
"""File sizes are rounded up to a multiple of this to estimate disk usage."""

_INT64_MAX = (1 << 63) - 1


@dataclass
class LruItem:
    """Bookkeeping for one cached blob."""

    size: int
    """Size of the blob in uncompressed form."""

    size_on_disk: int
    """Size of the blob on disk, possibly with header and compression."""

    random: str = ""
    """Random string included in the filename."""

    legacy: bool = False
    """True for raw, uncompressed CAS files without a header."""


EvictCallback = Callable[[Hashable, LruItem], None]


class ReservationError(Exception):
    """Raised when space reservation bookkeeping becomes inconsistent."""


def round_up_4k(n: int) -> int:
    """Round ``n`` up to the nearest multiple of BLOCK_SIZE."""
    return (n + BLOCK_SIZE - 1) & -BLOCK_SIZE


def _sum_larger_than(a: int, b: int, limit: int) -> bool:
    total = a + b
    # A sum beyond the 64-bit range counts as too large.
    return total > limit or total > _INT64_MAX


class SizedLRU:
    """LRU cache that keeps its total size at or below ``max_size``.

    Not thread-safe; callers hold their own lock.
    """

    def __init__(self, max_size: int, on_evict: Optional[EvictCallback] = None) -> None:
        self.max_size = max_size
        self.on_evict = on_evict
        # Least recently used first, most recently used last.
        self._items: "OrderedDict[Hashable, LruItem]" = OrderedDict()
        self.total_size = 0
        """Total size including reserved bytes and estimated block overhead."""
        self.uncompressed_size = 0
        """Total size of all blobs uncompressed, excluding reservations."""
        self.reserved_size = 0
        self.evicted_bytes = 0
        self.overwritten_bytes = 0

    def add(self, key: Hashable, value: LruItem) -> bool:
        """Add or replace an item, evicting others as needed.

        Returns False, leaving the cache unchanged, if the item is larger
        than the cache or cannot fit alongside the reserved space.
        """
        rounded = round_up_4k(value.size_on_disk)
        if rounded > self.max_size:
            return False

        previous = self._items.get(key)
        if previous is not None:
            size_delta = rounded - round_up_4k(previous.size_on_disk)
            if self.reserved_size + size_delta > self.max_size:
                return False
            uncompressed_delta = round_up_4k(value.size) - round_up_4k(previous.size)
            self._items.move_to_end(key)
            self.overwritten_bytes += previous.size_on_disk
            if self.on_evict is not None:
                self.on_evict(key, previous)
            self._items[key] = value
        else:
            size_delta = rounded
            if self.reserved_size + size_delta > self.max_size:
                return False
            uncompressed_delta = round_up_4k(value.size)
            self._items[key] = value

        # Needed even when replacing, since the new value may be larger.
        while self.total_size + size_delta > self.max_size and self._items:
            self._evict_oldest()

        self.total_size += size_delta
        self.uncompressed_size += uncompressed_delta
        return True

    def get(self, key: Hashable) -> Optional[LruItem]:
        """Return the item for ``key`` and mark it recently used, or None."""
        item = self._items.get(key)
        if item is not None:
            self._items.move_to_end(key)
        return item

    def remove(self, key: Hashable) -> None:
        """Remove ``key`` if present, invoking the eviction callback."""
        if key in self._items:
            self._remove(key)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def reserve(self, size: int) -> bool:
        """Reserve ``size`` bytes for an incoming blob, evicting as needed.

        Returns False if the space cannot be made available.
        """
        if size == 0:
            return True
        if size < 0 or size > self.max_size:
            return False
        if _sum_larger_than(size, self.reserved_size, self.max_size):
            # Evicting everything would still not make enough room.
            return False

        while _sum_larger_than(size, self.total_size, self.max_size):
            if not self._items:
                raise ReservationError("internal reservation error")
            self._evict_oldest()

        self.total_size += size
        self.reserved_size += size
        return True

    def unreserve(self, size: int) -> None:
        """Release ``size`` previously reserved bytes."""
        if size == 0:
            return
        if size < 0:
            raise ReservationError(
                f"INTERNAL ERROR: should not try to unreserve negative value: {size}"
            )
        new_total = self.total_size - size
        new_reserved = self.reserved_size - size
        if new_total < 0 or new_reserved < 0:
            raise ReservationError(f"INTERNAL ERROR: failed to unreserve: {size}")
        self.total_size = new_total
        self.reserved_size = new_reserved

    def tail_item(self) -> Optional[Tuple[Hashable, LruItem]]:
        """Return the least recently used ``(key, item)``, or None if empty."""
        for key, value in self._items.items():
            return key, value
        return None

    def _evict_oldest(self) -> None:
        key = next(iter(self._items))
        self._remove(key)

    def _remove(self, key: Hashable) -> None:
        value = self._items.pop(key)
        self.total_size -= round_up_4k(value.size_on_disk)
        self.uncompressed_size -= round_up_4k(value.size)
        self.evicted_bytes += value.size_on_disk
        if self.on_evict is not None:
            self.on_evict(key, value)