"""A filesystem-backed LRU cache for CAS, AC and RAW blobs, with an optional proxy."""

from __future__ import annotations

import concurrent.futures
import contextlib
import io
import logging
import os
import sys
import threading
import time
from http import HTTPStatus
from typing import BinaryIO, List, Optional, Sequence, Tuple

from remotecache import casblob
from remotecache.cache import CacheError, EntryKind, Proxy, lookup_key
from remotecache.casblob import CasBlobError, CompressionType
from remotecache.findmissing import (
    ContainsWorkerPool,
    Digest,
    MissingBlobError,
    ProxyCheck,
    filter_non_nil,
)
from remotecache.lru import LruItem, ReservationError, SizedLRU
from remotecache.storage import (
    create_tempfile,
    file_location,
    file_location_base,
    mark_complete,
    migrate_directories,
    scan_existing_files,
)

_log = logging.getLogger(__name__)

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
"""The sha256 hash of the empty blob."""

EMPTY_ZSTD_BLOB = bytes([40, 181, 47, 253, 32, 0, 1, 0, 0])
"""A zstd frame holding no data."""

_SHA256_HEX_SIZE = 64
_SHA256_SIZE = 32
_BATCH_SIZE = 20
_COPY_CHUNK = 1024 * 1024
_UNLIMITED = sys.maxsize


def is_size_mismatch(requested_size: int, found_size: int) -> bool:
    """True if both sizes are known and they differ."""
    return requested_size > -1 and found_size > -1 and requested_size != found_size


def _internal_error(exc: BaseException) -> CacheError:
    return CacheError(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))


def _bad_request(text: str) -> CacheError:
    return CacheError(HTTPStatus.BAD_REQUEST, text)


def _check_hash_length(hash: str) -> None:
    # The hash format is checked properly by the protocol layers; this is a
    # cheap guard against bad callers.
    if len(hash) != _SHA256_HEX_SIZE:
        raise _bad_request(
            f"Invalid hash size: {len(hash)}, expected: {_SHA256_SIZE}"
        )


def _drain(stream: Optional[BinaryIO]) -> None:
    if stream is None:
        return
    with contextlib.suppress(Exception):
        while stream.read(_COPY_CHUNK):
            pass


class DiskCache:
    """A filesystem-based LRU cache with an optional proxy backend.

    Safe for concurrent use.
    """

    def __init__(
        self,
        directory,
        max_size_bytes: int,
        *,
        storage_mode: str = "zstd",
        max_blob_size: Optional[int] = None,
        proxy: Optional[Proxy] = None,
        max_proxy_blob_size: Optional[int] = None,
        access_logger: Optional[logging.Logger] = None,
    ) -> None:
        if storage_mode == "zstd":
            self.storage_mode = CompressionType.ZSTANDARD
        elif storage_mode == "uncompressed":
            self.storage_mode = CompressionType.IDENTITY
        else:
            raise ValueError(f"Unsupported storage mode: {storage_mode}")

        if max_blob_size is not None and max_blob_size <= 0:
            raise ValueError(f"Invalid MaxBlobSize: {max_blob_size}")
        if max_proxy_blob_size is not None and max_proxy_blob_size <= 0:
            raise ValueError(f"Invalid MaxProxyBlobSize: {max_proxy_blob_size}")

        self.max_blob_size = max_blob_size if max_blob_size is not None else _UNLIMITED
        self.max_proxy_blob_size = (
            max_proxy_blob_size if max_proxy_blob_size is not None else _UNLIMITED
        )
        self.access_logger = access_logger or logging.getLogger("remotecache.access")
        self.proxy = proxy

        os.makedirs(directory, exist_ok=True)
        self.dir = os.path.realpath(directory)

        self._lock = threading.Lock()
        self._lru = SizedLRU(max_size_bytes, self._on_evict)

        hex_letters = "0123456789abcdef"
        for kind in (EntryKind.CAS, EntryKind.AC, EntryKind.RAW):
            for c1 in hex_letters:
                for c2 in hex_letters:
                    os.makedirs(
                        os.path.join(self.dir, kind.dir_name(), c1 + c2), exist_ok=True
                    )

        try:
            migrate_directories(self.dir)
        except (OSError, ValueError) as exc:
            raise OSError(
                f"Attempting to migrate the old directory structure failed: {exc}"
            ) from exc

        try:
            self._load_existing_files()
        except (OSError, ValueError) as exc:
            raise OSError(
                f"Loading of existing cache entries failed due to error: {exc}"
            ) from exc

        self._pool = ContainsWorkerPool(proxy, self.access_logger) if proxy else None

    # -- housekeeping -----------------------------------------------------

    def _element_path(self, key: str, value: LruItem) -> str:
        kind_name, hash = key.split("/", 1)
        kind = EntryKind[kind_name.upper()]
        return os.path.join(
            self.dir, file_location(kind, value.legacy, hash, value.size, value.random)
        )

    def _on_evict(self, key, value: LruItem) -> None:
        path = self._element_path(key, value)
        try:
            os.remove(path)
        except OSError:
            _log.error("failed to remove evicted cache file: %s", path)

    def _load_existing_files(self) -> None:
        _log.info("Loading existing files in %s.", self.dir)
        for found in scan_existing_files(self.dir):
            item = LruItem(
                size=found.size,
                size_on_disk=found.size_on_disk,
                random=found.random,
                legacy=found.legacy,
            )
            if not self._lru.add(found.key, item):
                os.remove(found.path)
        _log.info("Finished loading disk cache files.")

    @property
    def max_size(self) -> int:
        """The maximum cache size in bytes."""
        return self._lru.max_size

    def stats(self) -> Tuple[int, int, int, int]:
        """Return (total size, reserved size, number of items, uncompressed size)."""
        with self._lock:
            return (
                self._lru.total_size,
                self._lru.reserved_size,
                len(self._lru),
                self._lru.uncompressed_size,
            )

    def cache_age(self) -> Optional[float]:
        """Seconds since the least recently used item was accessed.

        Returns 0.0 for an empty cache and None if the file cannot be examined.
        """
        with self._lock:
            tail = self._lru.tail_item()
            if tail is None:
                return 0.0
            path = self._element_path(*tail)
            try:
                atime = os.stat(path).st_atime
            except OSError as exc:
                _log.error(
                    "failed to determine time of least recently used cache item: "
                    "%s, unable to stat %s", exc, path
                )
                return None
        return max(0.0, time.time() - atime)

    def close(self) -> None:
        """Stop the proxy lookup workers, if any."""
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    def __enter__(self) -> "DiskCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- shared write helpers ---------------------------------------------

    def _cleanup(self, blob_file: Optional[str], remove: bool, unreserve: int) -> None:
        if blob_file:
            if remove:
                with contextlib.suppress(OSError):
                    os.remove(blob_file)
            else:
                try:
                    mark_complete(blob_file)
                except OSError as exc:
                    _log.error("Failed to mark %s as complete: %s", blob_file, exc)
        if unreserve > 0:
            with self._lock:
                try:
                    self._lru.unreserve(unreserve)
                except ReservationError as exc:
                    _log.error("%s", exc)
                    raise _internal_error(exc) from exc

    def _commit(
        self, key: str, legacy: bool, reserved: int, logical: int, on_disk: int, random: str
    ) -> None:
        with self._lock:
            if reserved > 0:
                self._lru.unreserve(reserved)
            item = LruItem(size=logical, size_on_disk=on_disk, random=random, legacy=legacy)
            if not self._lru.add(key, item):
                raise CacheError(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    f"INTERNAL ERROR: failed to add: {key}, size {logical} "
                    f"(on disk: {on_disk})",
                )

    def _write_and_close(
        self, stream: BinaryIO, kind: EntryKind, hash: str, size: int, f: BinaryIO
    ) -> int:
        if kind is EntryKind.CAS and self.storage_mode is not CompressionType.IDENTITY:
            return casblob.write_blob(stream, f, self.storage_mode, hash, size)
        with f:
            written = 0
            while True:
                chunk = stream.read(_COPY_CHUNK)
                if not chunk:
                    break
                f.write(chunk)
                written += len(chunk)
            if is_size_mismatch(written, size):
                raise ValueError(
                    f"sizes don't match. Expected {size}, found {written}"
                )
            f.flush()
            os.fsync(f.fileno())
        return written

    # -- put --------------------------------------------------------------

    def put(self, kind: EntryKind, hash: str, size: int, stream: BinaryIO) -> None:
        """Store ``size`` bytes read from ``stream`` under ``hash``.

        CAS contents must match the hash. All data is read from ``stream``
        before this returns. Raises CacheError on failure.
        """
        pending: Optional[BinaryIO] = stream
        try:
            self._put(kind, hash, size, stream)
            pending = None
        finally:
            _drain(pending)

    def _put(self, kind: EntryKind, hash: str, size: int, stream: BinaryIO) -> None:
        if size < 0:
            raise _bad_request(f"Invalid (negative) size: {size}")
        if size > self.max_blob_size:
            raise _bad_request(
                f"Blob size {size} too large, max blob size is {self.max_blob_size}"
            )
        _check_hash_length(hash)
        if kind is EntryKind.CAS and size == 0 and hash == EMPTY_SHA256:
            return

        key = lookup_key(kind, hash)
        unreserve = 0
        remove_tempfile = False
        blob_file: Optional[str] = None

        try:
            if size > 0:
                with self._lock:
                    try:
                        ok = self._lru.reserve(size)
                    except ReservationError as exc:
                        raise _internal_error(exc) from exc
                    if not ok:
                        raise CacheError(
                            HTTPStatus.INSUFFICIENT_STORAGE,
                            f"The item ({size}) + reserved space is larger than the "
                            f"cache's maximum size ({self._lru.max_size}).",
                        )
                unreserve = size

            legacy = kind is EntryKind.CAS and self.storage_mode is CompressionType.IDENTITY
            base = os.path.join(self.dir, file_location_base(kind, legacy, hash, size))
            try:
                tf, random = create_tempfile(base, legacy)
            except OSError as exc:
                raise _internal_error(exc) from exc
            blob_file = tf.name
            remove_tempfile = True

            try:
                size_on_disk = self._write_and_close(stream, kind, hash, size, tf)
            except (OSError, ValueError, CasBlobError) as exc:
                raise _internal_error(exc) from exc

            if self.proxy is not None:
                try:
                    proxied = open(blob_file, "rb")
                except OSError as exc:
                    _log.error("Failed to proxy Put: %s", exc)
                else:
                    self.proxy.put(kind, hash, size_on_disk, proxied)

            unreserve = 0
            try:
                self._commit(key, legacy, size, size, size_on_disk, random)
            except ReservationError as exc:
                raise _internal_error(exc) from exc
            remove_tempfile = False
        finally:
            self._cleanup(blob_file, remove_tempfile, unreserve)

    # -- get --------------------------------------------------------------

    def get(
        self, kind: EntryKind, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Return a stream of the item's data from ``offset`` and its size.

        A miss is reported as ``(None, -1)``. Pass ``size=-1`` if unknown.
        """
        return self._get(kind, hash, size, offset, zstd=False)

    def get_zstd(
        self, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Like ``get`` for a CAS blob, but the stream is zstd-compressed.

        The returned size is still the uncompressed size.
        """
        return self._get(EntryKind.CAS, hash, size, offset, zstd=True)

    def _open_local(
        self, kind: EntryKind, item: LruItem, path: str, size: int, offset: int, zstd: bool
    ) -> Tuple[Optional[BinaryIO], int]:
        f = open(path, "rb")
        if kind is EntryKind.CAS:
            try:
                if item.legacy:
                    f.seek(offset)
                    return (casblob.legacy_zstd_stream(f) if zstd else f), item.size
            except OSError:
                f.close()
                raise
            opener = casblob.open_zstd if zstd else casblob.open_uncompressed
            return opener(f, size, offset), item.size

        found_size = os.fstat(f.fileno()).st_size
        if is_size_mismatch(size, found_size):
            _log.warning(
                "expected %s on disk to have size %d, found %d", path, size, found_size
            )
            f.close()
            return None, -1
        f.seek(offset)
        return f, found_size

    def _available_or_try_proxy(
        self, kind: EntryKind, hash: str, size: int, offset: int, zstd: bool
    ) -> Tuple[Optional[BinaryIO], int, bool]:
        key = lookup_key(kind, hash)
        with self._lock:
            item = self._lru.get(key)

        if item is not None and not is_size_mismatch(size, item.size):
            path = os.path.join(
                self.dir, file_location(kind, item.legacy, hash, item.size, item.random)
            )
            try:
                try:
                    rc, found = self._open_local(kind, item, path, size, offset, zstd)
                except FileNotFoundError:
                    # The file may have been replaced before it could be opened.
                    with self._lock:
                        item = self._lru.get(key)
                    if item is None:
                        raise
                    path = os.path.join(
                        self.dir,
                        file_location(kind, item.legacy, hash, item.size, item.random),
                    )
                    rc, found = self._open_local(kind, item, path, size, offset, zstd)
                if rc is not None:
                    return rc, found, False
            except (OSError, CasBlobError) as exc:
                _log.warning(
                    "expected %r to be readable on disk, undersized cache? %s", path, exc
                )

        try_proxy = False
        if self.proxy is not None and size <= self.max_proxy_blob_size:
            if size > 0:
                with self._lock:
                    try:
                        try_proxy = self._lru.reserve(size)
                    except ReservationError as exc:
                        raise _internal_error(exc) from exc
            else:
                try_proxy = True
        return None, -1, try_proxy

    def _get(
        self, kind: EntryKind, hash: str, size: int, offset: int, zstd: bool
    ) -> Tuple[Optional[BinaryIO], int]:
        _check_hash_length(hash)

        if kind is EntryKind.CAS and size <= 0 and hash == EMPTY_SHA256:
            return io.BytesIO(EMPTY_ZSTD_BLOB if zstd else b""), 0

        if kind is not EntryKind.CAS and zstd:
            raise _bad_request("Only CAS blobs are available in compressed form")
        if offset < 0:
            raise _bad_request(f"Invalid offset: {offset}")
        if size > 0 and offset >= size:
            raise _bad_request(f"Invalid offset: {offset} for size {size}")

        unreserve = 0
        remove_tempfile = False
        blob_file: Optional[str] = None
        try:
            rc, found_size, try_proxy = self._available_or_try_proxy(
                kind, hash, size, offset, zstd
            )
            if try_proxy and size > 0:
                unreserve = size
            if rc is not None:
                return rc, found_size
            if not try_proxy:
                return None, -1

            try:
                remote, found_size = self.proxy.get(kind, hash)
            except CacheError:
                raise
            except Exception as exc:
                raise _internal_error(exc) from exc
            if remote is None:
                return None, -1

            with remote:
                if (
                    found_size > self.max_proxy_blob_size
                    or found_size < 0
                    or is_size_mismatch(size, found_size)
                ):
                    return None, -1

                legacy = (
                    kind is EntryKind.CAS and self.storage_mode is CompressionType.IDENTITY
                )
                base = os.path.join(
                    self.dir, file_location_base(kind, legacy, hash, found_size)
                )
                try:
                    tf, random = create_tempfile(base, legacy)
                    remove_tempfile = True
                    blob_file = tf.name
                    size_on_disk = 0
                    with tf:
                        while True:
                            chunk = remote.read(_COPY_CHUNK)
                            if not chunk:
                                break
                            tf.write(chunk)
                            size_on_disk += len(chunk)
                    rcf = open(blob_file, "rb")
                except OSError as exc:
                    raise _internal_error(exc) from exc

            try:
                if kind is not EntryKind.CAS or self.storage_mode is CompressionType.IDENTITY:
                    try:
                        if offset > 0:
                            rcf.seek(offset)
                    except OSError:
                        rcf.close()
                        raise
                    rc = casblob.legacy_zstd_stream(rcf) if zstd else rcf
                elif zstd:
                    rc = casblob.open_zstd(rcf, found_size, offset)
                else:
                    rc = casblob.open_uncompressed(rcf, found_size, offset)
            except (OSError, CasBlobError) as exc:
                raise _internal_error(exc) from exc

            reserved, unreserve = unreserve, 0
            try:
                self._commit(
                    lookup_key(kind, hash), legacy, reserved, found_size, size_on_disk, random
                )
            except (CacheError, ReservationError) as exc:
                rc.close()
                raise _internal_error(exc) from exc
            remove_tempfile = False
            return rc, found_size
        finally:
            self._cleanup(blob_file, remove_tempfile, unreserve)

    # -- contains ---------------------------------------------------------

    def contains(self, kind: EntryKind, hash: str, size: int = -1) -> Tuple[bool, int]:
        """Report whether the item exists, locally or in the proxy, and its size."""
        if len(hash) != _SHA256_HEX_SIZE:
            return False, -1
        if kind is EntryKind.CAS and size <= 0 and hash == EMPTY_SHA256:
            return True, 0

        with self._lock:
            item = self._lru.get(lookup_key(kind, hash))
        if item is not None and not is_size_mismatch(size, item.size):
            return True, item.size

        if self.proxy is not None and size <= self.max_proxy_blob_size:
            exists, found_size = self.proxy.contains(kind, hash)
            if (
                exists
                and found_size <= self.max_proxy_blob_size
                and not is_size_mismatch(size, found_size)
            ):
                return True, found_size
        return False, -1

    # -- find missing -----------------------------------------------------

    def find_missing_cas_blobs(self, blobs: Sequence[Digest]) -> List[Digest]:
        """Return the digests, in order, that are neither local nor in the proxy."""
        pending: List[Optional[Digest]] = list(blobs)
        self.find_missing_cas_blobs_internal(pending, False)
        return filter_non_nil(pending)

    def _find_missing_local(self, blobs: List[Optional[Digest]], start: int, end: int) -> int:
        missing = 0
        with self._lock:
            for index, digest in enumerate(blobs[start:end], start):
                if digest is None:
                    continue
                if digest.size_bytes == 0 and digest.hash == EMPTY_SHA256:
                    self.access_logger.info("GRPC CAS HEAD %s OK", digest.hash)
                    blobs[index] = None
                    continue
                item = self._lru.get(lookup_key(EntryKind.CAS, digest.hash))
                if item is not None and not is_size_mismatch(digest.size_bytes, item.size):
                    self.access_logger.info("GRPC CAS HEAD %s OK", digest.hash)
                    blobs[index] = None
                else:
                    missing += 1
        return missing

    def find_missing_cas_blobs_internal(
        self, blobs: List[Optional[Digest]], fail_fast: bool
    ) -> None:
        """Replace the entries of ``blobs`` that are available with None.

        With ``fail_fast``, stop at the first blob found nowhere and raise
        MissingBlobError; ``blobs`` is then only partly updated.
        """
        missed = threading.Event()
        on_miss = missed.set if fail_fast else None
        futures = []

        for start in range(0, len(blobs), _BATCH_SIZE):
            if missed.is_set():
                raise MissingBlobError()
            end = min(start + _BATCH_SIZE, len(blobs))
            if self._find_missing_local(blobs, start, end) == 0:
                continue

            pool = self._pool
            if pool is None:
                if fail_fast:
                    raise MissingBlobError()
                continue

            for index, digest in enumerate(blobs[start:end], start):
                if digest is None:
                    continue
                if digest.size_bytes > self.max_proxy_blob_size:
                    if fail_fast:
                        raise MissingBlobError()
                    continue
                if missed.is_set():
                    raise MissingBlobError()
                check = ProxyCheck(
                    blobs, index, missed if fail_fast else None, on_miss
                )
                futures.append(pool.submit(check))

        if futures:
            concurrent.futures.wait(futures)
        if missed.is_set():
            raise MissingBlobError()