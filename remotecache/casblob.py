"""On-disk format for CAS blobs: a zstd skippable-frame header plus chunked data.

A blob file starts with a zstd skippable frame holding the logical size, the
compression type, the chunk size and a table of chunk offsets. The data that
follows is either stored as is, or as a sequence of independently compressed
zstd frames, one per chunk, so that reads can start at any offset without
decompressing the whole blob.
"""

from __future__ import annotations

import hashlib
import io
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Iterable, List, Tuple

import zstandard


class CompressionType(IntEnum):
    """How the data after the header is stored."""

    IDENTITY = 0
    ZSTANDARD = 1


class CasBlobError(Exception):
    """Raised for malformed blobs and data that does not match its digest."""


DEFAULT_CHUNK_SIZE = 1024 * 1024
"""Amount of uncompressed data in each independently compressed chunk."""

SKIPPABLE_FRAME_MAGIC = 0x184D2A50
"""Magic number of a zstd skippable frame, stored little-endian."""

CHUNK_TABLE_OFFSET = 4 + 4 + 8 + 1 + 4 + 8
"""File offset of the first entry in the chunk offset table."""

_FIXED_HEADER = struct.Struct("<IIqBIq")
_EARLY_HEADER_SIZE = 16


@dataclass
class _Header:
    uncompressed_size: int
    compression: int
    chunk_size: int
    chunk_offsets: List[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        """Size of the header itself, in bytes."""
        return CHUNK_TABLE_OFFSET + 8 * len(self.chunk_offsets)

    @property
    def frame_size(self) -> int:
        return self.size - 8

    @property
    def num_chunks(self) -> int:
        return len(self.chunk_offsets) - 1

    def pack(self) -> bytes:
        fixed = _FIXED_HEADER.pack(
            SKIPPABLE_FRAME_MAGIC,
            self.frame_size,
            self.uncompressed_size,
            self.compression,
            self.chunk_size,
            len(self.chunk_offsets),
        )
        return fixed + _pack_offsets(self.chunk_offsets)


def _pack_offsets(offsets: List[int]) -> bytes:
    return struct.pack(f"<{len(offsets)}q", *offsets)


def _compressor() -> zstandard.ZstdCompressor:
    return zstandard.ZstdCompressor(level=1)


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    """Read up to ``n`` bytes, stopping early only at end of stream."""
    parts = []
    remaining = n
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def _sync(f: BinaryIO) -> None:
    f.flush()
    try:
        os.fsync(f.fileno())
    except (AttributeError, OSError):
        pass


class _ChainedReader(io.RawIOBase):
    """Reads several streams one after another; closing closes them all."""

    def __init__(self, parts: Iterable[BinaryIO]) -> None:
        super().__init__()
        self._parts = list(parts)
        self._index = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        view = memoryview(buffer).cast("B")
        if not len(view):
            return 0
        while self._index < len(self._parts):
            data = self._parts[self._index].read(len(view))
            if data:
                n = len(data)
                view[:n] = data
                return n
            self._index += 1
        return 0

    def close(self) -> None:
        if not self.closed:
            for part in self._parts:
                part.close()
        super().close()


def _read_header(f: BinaryIO) -> _Header:
    """Parse the header and leave ``f`` positioned at the start of the data."""
    start = f.tell()
    file_size = f.seek(0, os.SEEK_END)
    f.seek(start)

    minimum = CHUNK_TABLE_OFFSET + 16
    if file_size <= minimum:
        raise CasBlobError(
            f"file too small ({file_size}) than the minimum header size ({minimum})"
        )

    fixed = _read_exact(f, _FIXED_HEADER.size)
    if len(fixed) != _FIXED_HEADER.size:
        raise CasBlobError("unable to read blob header")
    magic, frame_size, uncompressed_size, compression, chunk_size, num_offsets = (
        _FIXED_HEADER.unpack(fixed)
    )

    if magic != SKIPPABLE_FRAME_MAGIC:
        raise CasBlobError("expected magic number not found")

    if num_offsets < 2:
        raise CasBlobError(
            f"internal error: need at least one chunk, found {num_offsets - 1}"
        )

    metadata_size = num_offsets * 8 + 8 + 1 + 4 + 8
    if frame_size != metadata_size:
        raise CasBlobError(
            f"metadata frame size {frame_size}, but metadata size {metadata_size}"
        )

    raw_offsets = _read_exact(f, num_offsets * 8)
    if len(raw_offsets) != num_offsets * 8:
        raise CasBlobError("unable to read chunk offset table")
    offsets = list(struct.unpack(f"<{num_offsets}q", raw_offsets))

    previous = -1
    for offset in offsets:
        if offset <= previous:
            raise CasBlobError(
                f"offset table values should increase: {offset} -> {previous}"
            )
        previous = offset

    if previous != file_size:
        raise CasBlobError(
            f"final offset in chunk table {previous} should be file size {file_size}"
        )

    return _Header(uncompressed_size, compression, chunk_size, offsets)


def _check_expected_size(header: _Header, expected_size: int) -> None:
    if expected_size != -1 and header.uncompressed_size != expected_size:
        raise CasBlobError(
            f"expected a blob of size {expected_size}, found {header.uncompressed_size}"
        )


def _locate_chunk(f: BinaryIO, header: _Header, offset: int) -> Tuple[int, int]:
    """Seek ``f`` to the chunk holding ``offset``; return (chunk, remainder)."""
    if offset < 0 or offset > header.uncompressed_size:
        raise CasBlobError(
            f"offset {offset} out of range for blob of size {header.uncompressed_size}"
        )
    chunk_num, remainder = divmod(offset, header.chunk_size)
    if chunk_num > 0:
        f.seek(header.chunk_offsets[chunk_num])
    return chunk_num, remainder


def _decode_chunk(f: BinaryIO, header: _Header, chunk_num: int) -> bytes:
    length = header.chunk_offsets[chunk_num + 1] - header.chunk_offsets[chunk_num]
    compressed = _read_exact(f, length)
    if len(compressed) != length:
        raise CasBlobError("unexpected end of file while reading chunk")
    try:
        return zstandard.ZstdDecompressor().decompressobj().decompress(compressed)
    except zstandard.ZstdError as exc:
        raise CasBlobError(f"failed to decompress chunk {chunk_num}: {exc}") from exc


def _decompressing_reader(f: BinaryIO):
    return zstandard.ZstdDecompressor().stream_reader(
        f, read_across_frames=True, closefd=True
    )


def _check_compression(header: _Header) -> None:
    if header.compression != CompressionType.ZSTANDARD:
        raise CasBlobError(f"unsupported compression type: {header.compression}")


def open_uncompressed(f: BinaryIO, expected_size: int = -1, offset: int = 0):
    """Return a stream of the blob's uncompressed data, starting at ``offset``.

    The returned stream owns ``f``: closing it closes ``f``. On error ``f``
    is closed before the exception propagates.
    """
    try:
        header = _read_header(f)
        _check_expected_size(header, expected_size)

        if header.compression == CompressionType.IDENTITY:
            if offset > 0:
                f.seek(offset, os.SEEK_CUR)
            return f

        _check_compression(header)
        chunk_num, remainder = _locate_chunk(f, header, offset)
        if remainder == 0:
            return _decompressing_reader(f)

        first = _decode_chunk(f, header, chunk_num)[remainder:]
        if chunk_num == header.num_chunks - 1:
            f.close()
            return io.BytesIO(first)

        return _ChainedReader([io.BytesIO(first), _decompressing_reader(f)])
    except BaseException:
        f.close()
        raise


def open_zstd(f: BinaryIO, expected_size: int = -1, offset: int = 0):
    """Return a stream of zstd-compressed data for the blob from ``offset`` on.

    The returned stream owns ``f``: closing it closes ``f``. On error ``f``
    is closed before the exception propagates.
    """
    try:
        header = _read_header(f)
        _check_expected_size(header, expected_size)

        if header.compression == CompressionType.IDENTITY:
            if offset > 0:
                f.seek(offset, os.SEEK_CUR)
            return legacy_zstd_stream(f)

        _check_compression(header)
        chunk_num, remainder = _locate_chunk(f, header, offset)
        if remainder == 0:
            # The remaining chunks are already a sequence of zstd frames.
            return f

        tail = _decode_chunk(f, header, chunk_num)[remainder:]
        recompressed = io.BytesIO(_compressor().compress(tail))
        if chunk_num == header.num_chunks - 1:
            f.close()
            return recompressed

        return _ChainedReader([recompressed, f])
    except BaseException:
        f.close()
        raise


def legacy_zstd_stream(f: BinaryIO):
    """Return a stream of zstd-compressed data read from an uncompressed file.

    Compression happens as the stream is read; closing it closes ``f``.
    """
    return _compressor().stream_reader(f, closefd=True)


def extract_logical_size(stream: BinaryIO):
    """Read the logical size from the start of a blob stream.

    Returns ``(equivalent_stream, size)`` where the new stream yields every
    byte of the original, including the header bytes already consumed.
    """
    early = _read_exact(stream, _EARLY_HEADER_SIZE)
    if len(early) != _EARLY_HEADER_SIZE:
        raise CasBlobError(
            f"Tried to read {_EARLY_HEADER_SIZE} header bytes, only read {len(early)}"
        )
    (size,) = struct.unpack_from("<q", early, 8)
    if size <= 0:
        raise CasBlobError(f"Expected blob to have positive size, found {size}")
    return _ChainedReader([io.BytesIO(early), stream]), size


def write_blob(
    source: BinaryIO,
    dest: BinaryIO,
    compression: CompressionType,
    hash: str,
    size: int,
) -> int:
    """Store ``size`` bytes from ``source`` in ``dest`` and close ``dest``.

    The data must hash to ``hash`` (hex sha256) and be exactly ``size`` bytes
    long. Returns the number of bytes written to ``dest``.
    """
    try:
        return _write(source, dest, compression, hash, size)
    finally:
        dest.close()


def _check_hash(expected: str, hasher) -> None:
    actual = hasher.hexdigest()
    if actual != expected:
        raise CasBlobError(f"checksums don't match. Expected {expected}, found {actual}")


def _write(
    source: BinaryIO, dest: BinaryIO, compression, expected_hash: str, size: int
) -> int:
    if size <= 0:
        raise CasBlobError(f"invalid file size: {size}")
    try:
        compression = CompressionType(compression)
    except ValueError as exc:
        raise CasBlobError(f"unsupported compression type: {compression}") from exc

    hasher = hashlib.sha256()

    if compression is CompressionType.IDENTITY:
        data_start = CHUNK_TABLE_OFFSET + 16
        header = _Header(
            size, compression, DEFAULT_CHUNK_SIZE, [data_start, data_start + size]
        )
        dest.write(header.pack())
        copied = 0
        while True:
            chunk = source.read(DEFAULT_CHUNK_SIZE)
            if not chunk:
                break
            dest.write(chunk)
            hasher.update(chunk)
            copied += len(chunk)
        if copied != size:
            raise CasBlobError(
                f"expected to copy {size} bytes, actually copied {copied} bytes"
            )
        _check_hash(expected_hash, hasher)
        _sync(dest)
        return header.size + size

    num_chunks = -(-size // DEFAULT_CHUNK_SIZE)
    header = _Header(size, compression, DEFAULT_CHUNK_SIZE, [0] * (num_chunks + 1))
    dest.write(header.pack())

    compressor = _compressor()
    file_offset = header.size
    remaining = size
    for index in range(num_chunks):
        header.chunk_offsets[index] = file_offset
        length = min(DEFAULT_CHUNK_SIZE, remaining)
        remaining -= length

        chunk = _read_exact(source, length)
        if len(chunk) != length:
            raise CasBlobError(
                f"expected {size} bytes but the input ended after {size - remaining - length + len(chunk)}"
            )
        hasher.update(chunk)
        compressed = compressor.compress(chunk)
        dest.write(compressed)
        file_offset += len(compressed)
    header.chunk_offsets[-1] = file_offset

    extra = _read_exact(source, DEFAULT_CHUNK_SIZE)
    if extra:
        raise CasBlobError(f"expected {size} bytes but got at least {len(extra)} more")

    _check_hash(expected_hash, hasher)

    # All chunk offsets are known now; fill in the table.
    dest.seek(CHUNK_TABLE_OFFSET)
    dest.write(_pack_offsets(header.chunk_offsets))
    _sync(dest)
    return file_offset