"""On-disk layout of the cache directory: file naming, migration and scanning."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import secrets
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Tuple, Union

from remotecache.cache import EntryKind, lookup_key

_log = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

HASH_KEY_RE = re.compile(r"^[a-f0-9]{64}$")
"""A lowercase hex sha256 hash."""

_V1_DIR_RE = re.compile(r"^[a-f0-9]{2}$")

# compressed CAS items:   <hash>-<logical size>-<random>
# uncompressed CAS items: <hash>-<random>.v1
# AC and RAW items:       <hash>-<random>
_BLOB_NAME_RE = re.compile(
    r"^([a-f0-9]{64})(?:-([1-9][0-9]*))?-([0-9a-zA-Z]+)(\.v1)?$"
)

START_MODE = stat.S_ISGID | 0o664
"""Mode of a file still being written; the setgid bit marks it incomplete."""

END_MODE = 0o664
"""Mode of a completely written file."""

_RANDOM_LIMIT = 10**9

_V0_SUFFIX = "-222444666"
_V1_CAS_SUFFIX = "-556677.v1"
_V1_SUFFIX = "-112233"

_KINDS_BY_DIR = {kind.dir_name(): kind for kind in EntryKind}


@dataclass
class ExistingFile:
    """A complete blob found on disk."""

    key: str
    """Index key, ``<kind>/<hash>``."""

    path: str
    """Absolute path of the file."""

    rel_path: str
    """Path relative to the cache root, with ``/`` separators."""

    kind: EntryKind
    hash: str
    size: int
    """Logical (uncompressed) size."""

    size_on_disk: int
    random: str
    legacy: bool


def file_location_base(kind: EntryKind, legacy: bool, hash: str, size: int) -> str:
    """Relative path of a blob without its random suffix."""
    prefix = f"{kind.dir_name()}/{hash[:2]}/{hash}"
    if kind is EntryKind.CAS and not legacy:
        return f"{prefix}-{size}"
    return prefix


def file_location(
    kind: EntryKind, legacy: bool, hash: str, size: int, random: str
) -> str:
    """Relative path of a stored blob."""
    prefix = f"{kind.dir_name()}/{hash[:2]}/{hash}"
    if kind is not EntryKind.CAS:
        return f"{prefix}-{random}"
    if legacy:
        return f"{prefix}-{random}.v1"
    return f"{prefix}-{size}-{random}"


def create_tempfile(base_path: PathLike, legacy: bool) -> Tuple[BinaryIO, str]:
    """Create a new, incomplete blob file next to ``base_path``.

    The file is named ``<base_path>-<random>`` (plus ``.v1`` for legacy
    files) and opened for reading and writing. Returns the open file and
    the random string used in its name.
    """
    suffix = ".v1" if legacy else ""
    base = os.fspath(base_path)
    while True:
        random = str(secrets.randbelow(_RANDOM_LIMIT))
        path = f"{base}-{random}{suffix}"
        try:
            f = open(path, "x+b")
        except FileExistsError:
            continue
        try:
            os.chmod(path, START_MODE)
        except BaseException:
            f.close()
            with contextlib.suppress(OSError):
                os.remove(path)
            raise
        return f, random


def mark_complete(path: PathLike) -> None:
    """Mark a file created by ``create_tempfile`` as completely written."""
    os.chmod(path, END_MODE)


def migrate_directories(base_dir: PathLike) -> None:
    """Move blobs from the older directory layouts into the current one."""
    for kind in (EntryKind.AC, EntryKind.CAS, EntryKind.RAW):
        migrate_directory(base_dir, kind)


def migrate_directory(base_dir: PathLike, kind: EntryKind) -> None:
    """Migrate one keyspace's old directory, then remove it."""
    base = os.fspath(base_dir)
    source = os.path.join(base, str(kind))
    if not os.path.exists(source):
        return

    _log.info("Migrating files (if any) to new directory structure: %s", source)

    target = os.path.join(base, kind.dir_name())
    with os.scandir(source) as it:
        entries = sorted(it, key=lambda e: e.name)

    total = len(entries)
    for number, entry in enumerate(entries, 1):
        old_path = entry.path

        if entry.is_dir(follow_symlinks=False):
            if not _V1_DIR_RE.match(entry.name):
                _log.warning("unexpected directory %s", old_path)
            dest_dir = os.path.join(target, entry.name[:2])
            try:
                _migrate_v1_subdir(old_path, dest_dir, kind)
            except (OSError, ValueError) as exc:
                _log.warning("failed to read subdir %r: %s", old_path, exc)
            continue

        if not entry.is_file(follow_symlinks=False):
            _log.warning("skipping non-regular file: %s", old_path)
            continue

        if not HASH_KEY_RE.match(entry.name):
            _log.warning("skipping unexpected file: %s", old_path)
            continue

        # A fixed "random" string is fine: there is only one file per hash.
        dest = os.path.join(target, entry.name[:2], entry.name + _V0_SUFFIX)
        if kind is EntryKind.CAS:
            dest += ".v1"
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        os.rename(old_path, dest)
        _log.debug("Migrating %s item(s) %d/%d, %s", source, number, total, entry.name)

    shutil.rmtree(source)


def _migrate_v1_subdir(old_dir: str, dest_dir: str, kind: EntryKind) -> None:
    with os.scandir(old_dir) as it:
        names = sorted(e.name for e in it)

    os.makedirs(dest_dir, exist_ok=True)
    suffix = _V1_CAS_SUFFIX if kind is EntryKind.CAS else _V1_SUFFIX

    for name in names:
        old_path = os.path.join(old_dir, name)
        if not HASH_KEY_RE.match(name):
            raise ValueError(f"Unexpected file: {old_path}")
        try:
            os.rename(old_path, os.path.join(dest_dir, name) + suffix)
        except OSError as exc:
            raise OSError(f"Failed to migrate blob {old_path}: {exc}") from exc

    if kind is EntryKind.CAS:
        os.rmdir(old_dir)


def _raise(exc: OSError) -> None:
    raise exc


def scan_existing_files(root: PathLike) -> List[ExistingFile]:
    """List the complete blobs under ``root``, least recently accessed first.

    Incomplete files left behind by interrupted writes are deleted. Raises
    ValueError for a file whose name or location is not recognised.
    """
    root_str = os.fspath(root)
    candidates = []
    for dirpath, _dirnames, filenames in os.walk(root_str, onerror=_raise):
        for name in filenames:
            full = os.path.join(dirpath, name)
            info = os.lstat(full)
            if info.st_mode & stat.S_ISGID:
                _log.info("Removing incomplete file: %s", full)
                with contextlib.suppress(OSError):
                    os.remove(full)
                continue
            candidates.append((full, info))

    candidates.sort(key=lambda item: item[1].st_atime_ns)
    return [_describe(root_str, full, info) for full, info in candidates]


def _describe(root: str, full: str, info: os.stat_result) -> ExistingFile:
    parts = Path(os.path.relpath(full, root)).parts
    rel_path = "/".join(parts)
    name = parts[-1]

    match = _BLOB_NAME_RE.match(name)
    if match is None:
        raise ValueError(f"Unrecognized file: {rel_path!r}")
    hash, size_text, random, v1 = match.groups()

    size_on_disk = info.st_size
    size = int(size_text) if size_text else size_on_disk

    kind = _KINDS_BY_DIR.get(parts[0]) if len(parts) > 1 else None
    if kind is None:
        raise ValueError(f"Unrecognised file in cache dir: {rel_path!r}")

    return ExistingFile(
        key=lookup_key(kind, hash),
        path=full,
        rel_path=rel_path,
        kind=kind,
        hash=hash,
        size=size,
        size_on_disk=size_on_disk,
        random=random,
        legacy=v1 == ".v1",
    )