# remotecache

A disk-backed cache for build outputs. It has two main keyspaces: the
action cache (AC) and content-addressable storage (CAS). A third RAW
keyspace holds unvalidated items. When the configured size limit is
reached, entries are evicted in least-recently-used order. Sizes are
estimated in 4 KiB blocks.

CAS blobs are checked against their SHA-256 hash when they are stored.
By default they are kept on disk zstd-compressed, in independently
compressed 1 MiB chunks. A partial read can then start at any offset
without decompressing the whole blob.

A proxy backend can be attached. Local misses are then looked up
through the proxy, and local writes are forwarded to it. At startup
the cache indexes the files already in its directory, oldest access
first. It moves files from older directory layouts into the current
one and deletes files left incomplete by interrupted writes.

## Installation

```
pip install remotecache
```

## Usage

```python
import hashlib
import io

from remotecache.cache import EntryKind
from remotecache.disk import DiskCache

data = b"hello"
digest = hashlib.sha256(data).hexdigest()

cache = DiskCache("/tmp/build-cache", 64 * 1024 * 1024)
cache.put(EntryKind.CAS, digest, len(data), io.BytesIO(data))

found, size = cache.contains(EntryKind.CAS, digest, len(data))

stream, size = cache.get(EntryKind.CAS, digest, len(data), 0)
with stream:
    assert stream.read() == data

total_size, reserved_size, num_items, uncompressed_size = cache.stats()
cache.close()
```

`DiskCache` can also be used as a context manager, which calls `close`
on exit.

`get` and `get_zstd` return `(None, -1)` on a miss. Pass `size=-1` if
the size is unknown. `get_zstd` returns a zstd-compressed stream of a
CAS blob, but the size it reports is the uncompressed size.

`put`, `get` and `get_zstd` raise `remotecache.cache.CacheError` for
these failures, among others:

- bad hash lengths
- negative sizes or offsets
- blobs larger than `max_blob_size` or than the cache
- hash and size mismatches

The error's HTTP-style status code is in its `code` attribute.

`cache_age()` returns the seconds since the least recently used item
was last accessed.

### Options

`DiskCache` takes these keyword arguments:

- `storage_mode`: `"zstd"` (the default) or `"uncompressed"`
- `max_blob_size`: the largest blob that `put` accepts
- `proxy`: an object implementing the `remotecache.cache.Proxy`
  protocol, that is, `put`, `get` and `contains`
- `max_proxy_blob_size`: the largest blob that is fetched from or
  checked against the proxy
- `access_logger`: a `logging.Logger` that receives per-blob access
  lines

An unknown storage mode, or a size limit that is not positive, raises
`ValueError`.

### Finding missing blobs

```python
from remotecache.findmissing import Digest

missing = cache.find_missing_cas_blobs([Digest(digest, len(data))])
```

The call returns the digests that are available neither locally nor
through the proxy, in their original order. When a proxy is
configured, local misses are checked against it concurrently by a
worker pool (`remotecache.findmissing.ContainsWorkerPool`).

`find_missing_cas_blobs_internal(blobs, fail_fast=True)` replaces the
entries it finds with `None`. It raises `MissingBlobError` at the
first blob it cannot find anywhere.

### Request metrics

`remotecache.metrics.MetricsDecorator` wraps a cache. It counts hits
and misses of `get`, `get_zstd`, `contains` and
`find_missing_cas_blobs`, keyed by method and keyspace:

```python
from remotecache.metrics import MetricsDecorator

counted = MetricsDecorator(cache)
counted.contains(EntryKind.CAS, digest, -1)
hits = counted.counter.value("contains", "cas", "hit")
```

Requests that raise are not counted.

### Blob format and layout

`remotecache.casblob` reads and writes the on-disk CAS blob format on
its own:

- `write_blob` stores data and verifies its hash and size.
- `open_uncompressed` and `open_zstd` read a blob back from any offset.
- `extract_logical_size` peeks at a blob's uncompressed size from the
  start of a stream.

`remotecache.storage` holds the file naming scheme and the migration of
older layouts. It also has the directory scan that the cache uses at
startup.

`remotecache.lru.SizedLRU` is the size-bounded index underneath. It can
be used directly, and supports reserving space for incoming blobs.

## What it does not do

This package is a library only. It has:

- no command-line program
- no HTTP or gRPC server in front of the cache
- no ready-made proxy backends for HTTP, cloud storage or object
  stores; you supply your own `Proxy` implementation

Counters are kept in memory and are not exported to a monitoring
system. Action results stored in the AC are not parsed or validated
against the CAS blobs they refer to.

## Running the tests

```
pip install -e ".[test]"
pytest
```