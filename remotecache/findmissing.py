"""Digests, and a pool of workers that check a proxy for locally missing blobs."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from remotecache.cache import EntryKind, Proxy

_log = logging.getLogger(__name__)

QUEUE_SIZE = 2048
"""Default number of pending proxy checks before submitters block."""

NUM_WORKERS = 512
"""Default number of concurrent proxy checks."""


@dataclass(frozen=True)
class Digest:
    """Identifies a blob by its hex sha256 hash and size in bytes."""

    hash: str
    size_bytes: int


class MissingBlobError(Exception):
    """A blob could be found neither locally nor in the proxy backend."""

    def __init__(self, message: str = "a blob could not be found") -> None:
        super().__init__(message)


class RequestCancelledError(Exception):
    """The request was cancelled before it completed."""

    def __init__(self, message: str = "Request was cancelled") -> None:
        super().__init__(message)


@dataclass
class ProxyCheck:
    """A request to look up ``blobs[index]`` in the proxy backend.

    When the blob is found, ``blobs[index]`` is replaced with None.
    """

    blobs: List[Optional[Digest]]
    index: int
    cancelled: Optional[threading.Event] = None
    """When set, the check is skipped."""

    on_proxy_miss: Optional[Callable[[], None]] = None
    """Called when the proxy does not have the blob."""

    @property
    def digest(self) -> Optional[Digest]:
        return self.blobs[self.index]


class ContainsWorkerPool:
    """Threads that process ProxyChecks against a proxy backend."""

    def __init__(
        self,
        proxy: Proxy,
        access_logger: Optional[logging.Logger] = None,
        num_workers: int = NUM_WORKERS,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self._proxy = proxy
        self._access_logger = access_logger or _log
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._closed = False
        self._threads = [
            threading.Thread(target=self._run, name=f"contains-worker-{n}", daemon=True)
            for n in range(num_workers)
        ]
        for thread in self._threads:
            thread.start()

    def submit(self, check: ProxyCheck) -> "Future[Optional[bool]]":
        """Queue a check, blocking while the queue is full.

        The returned future resolves to True if the proxy has the blob,
        False if it does not, and None if the check was cancelled.
        """
        if self._closed:
            raise RuntimeError("worker pool is closed")
        future: "Future[Optional[bool]]" = Future()
        self._queue.put((check, future))
        return future

    def close(self) -> None:
        """Finish the queued checks and stop the workers."""
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join()

    def __enter__(self) -> "ContainsWorkerPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                return
            check, future = job
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = self._process(check)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    def _process(self, check: ProxyCheck) -> Optional[bool]:
        digest = check.digest
        if digest is None:
            return True

        if check.cancelled is not None and check.cancelled.is_set():
            self._access_logger.info("GRPC CAS HEAD %s CANCELLED", digest.hash)
            return None

        try:
            found, _ = self._proxy.contains(EntryKind.CAS, digest.hash)
        except Exception as exc:
            _log.error("proxy lookup of %s failed: %s", digest.hash, exc)
            found = False

        if found:
            self._access_logger.info("GRPC CAS HEAD %s OK", digest.hash)
            check.blobs[check.index] = None
            return True

        self._access_logger.info("GRPC CAS HEAD %s NOT FOUND", digest.hash)
        if check.on_proxy_miss is not None:
            check.on_proxy_miss()
        return False


def filter_non_nil(blobs: Sequence[Optional[Digest]]) -> List[Digest]:
    """Return the entries of ``blobs`` that are not None, in order."""
    return [blob for blob in blobs if blob is not None]