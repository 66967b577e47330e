import logging

import pytest

from remotecache.cache import (
    CacheError,
    EntryKind,
    lookup_key,
    transform_action_cache_key,
)

HASH = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


@pytest.mark.parametrize(
    "kind, name, directory",
    [
        (EntryKind.AC, "ac", "ac.v2"),
        (EntryKind.CAS, "cas", "cas.v2"),
        (EntryKind.RAW, "raw", "raw.v2"),
    ],
)
def test_entry_kind_names(kind, name, directory):
    assert str(kind) == name
    assert kind.dir_name() == directory


def test_entry_kind_from_int_order():
    assert [EntryKind(i) for i in range(3)] == [EntryKind.AC, EntryKind.CAS, EntryKind.RAW]


def test_lookup_key_prefixes_kind():
    assert lookup_key(EntryKind.CAS, HASH) == "cas/" + HASH
    assert lookup_key(EntryKind.AC, HASH) == "ac/" + HASH
    assert lookup_key(EntryKind.RAW, HASH) == "raw/" + HASH


def test_cache_error_carries_code_and_text():
    err = CacheError(507, "too big")
    assert err.code == 507
    assert str(err) == "too big"
    with pytest.raises(CacheError) as info:
        raise err
    assert info.value.text == "too big"


def test_transform_empty_instance_returns_key_unchanged():
    assert transform_action_cache_key(HASH, "", None) == HASH


def test_transform_produces_hex_sha256():
    result = transform_action_cache_key(HASH, "instance", None)
    assert len(result) == 64
    assert all(c in "0123456789abcdef" for c in result)
    assert result != HASH


def test_transform_is_deterministic_and_instance_dependent():
    a = transform_action_cache_key(HASH, "one", None)
    b = transform_action_cache_key(HASH, "one", None)
    c = transform_action_cache_key(HASH, "two", None)
    assert a == b
    assert a != c


def test_transform_hashes_concatenation():
    # The key and instance are hashed back to back, so the split point
    # between them does not matter.
    assert transform_action_cache_key("abc", "def", None) == transform_action_cache_key(
        "abcd", "ef", None
    )


def test_transform_logs_remap(caplog):
    logger = logging.getLogger("remotecache.test")
    with caplog.at_level(logging.INFO, logger="remotecache.test"):
        new_key = transform_action_cache_key(HASH, "inst", logger)
    assert f"REMAP AC HASH {HASH} : inst => {new_key}" in caplog.messages