"""Core cache types: entry kinds, structured errors and the proxy protocol."""

from __future__ import annotations

import hashlib
import logging
from enum import Enum
from typing import BinaryIO, Optional, Protocol, Tuple, runtime_checkable


class EntryKind(Enum):
    """The keyspace a cache entry belongs to."""

    AC = 0
    """Action Cache."""

    CAS = 1
    """Content Addressable Storage."""

    RAW = 2
    """Unvalidated items, only used for HTTP with AC validation disabled."""

    def __str__(self) -> str:
        return self.name.lower()

    def dir_name(self) -> str:
        """Name of the directory holding entries of this kind."""
        return f"{self}.v2"


class CacheError(Exception):
    """A cache failure carrying an HTTP status code and a readable message."""

    def __init__(self, code: int, text: str) -> None:
        super().__init__(text)
        self.code = code
        self.text = text

    def __str__(self) -> str:
        return self.text


@runtime_checkable
class Proxy(Protocol):
    """A backend that a disk cache can forward requests to.

    Implementations are expected to be safe for concurrent use. Data passed
    through ``put`` and ``get`` is in the same format the disk cache stores.
    """

    def put(self, kind: EntryKind, hash: str, size: int, stream: BinaryIO) -> None:
        """Make a reasonable, possibly asynchronous, effort to upload an item.

        May fail silently, for example when under heavy load.
        """

    def get(self, kind: EntryKind, hash: str) -> Tuple[Optional[BinaryIO], int]:
        """Return a readable stream for the item and its logical size.

        A missing item is reported as ``(None, -1)``; failures raise.
        """

    def contains(self, kind: EntryKind, hash: str) -> Tuple[bool, int]:
        """Report whether the item exists remotely, and its size (-1 if unknown)."""


def transform_action_cache_key(
    key: str, instance: str, logger: Optional[logging.Logger] = None
) -> str:
    """Return the action cache key to use for ``key`` under an instance name.

    An empty instance name leaves the key unchanged.
    """
    if not instance:
        return key

    digest = hashlib.sha256()
    digest.update(key.encode())
    digest.update(instance.encode())
    new_key = digest.hexdigest()

    if logger is not None:
        logger.info("REMAP AC HASH %s : %s => %s", key, instance, new_key)

    return new_key


def lookup_key(kind: EntryKind, hash: str) -> str:
    """Return the index key ``<kind>/<hash>`` for an entry."""
    return f"{kind}/{hash}"