"""Testing lock record serialization and the lock store's file handling."""

import os

import pytest

from labbook import hashing
from labbook.lockfile import LockFileFormatError, LockRecord, LockStore

STORE_DIR = "test/examples/data/store"


@pytest.fixture()
def store(clear_filesystem):
    os.makedirs(STORE_DIR, exist_ok=True)
    return LockStore(STORE_DIR)


@pytest.fixture()
def record():
    return LockRecord(
        own_signature=hashing.compute_content_signature("own"),
        dependency_signatures={
            "corpus": hashing.compute_content_signature("corpus"),
            "sample": hashing.compute_content_signature("sample"),
        },
    )


def test_save_then_load_round_trips(store, record):
    store.save(record)
    assert store.load() == record


def test_round_trip_with_empty_own_signature(store):
    """Experiment records have no own signature, which should survive a round trip."""
    record = LockRecord(dependency_signatures={"config": "ab" * 64})
    store.save(record)
    loaded = store.load()
    assert loaded == record
    assert loaded.own_signature == ""


def test_serialized_shape(record):
    raw = record.to_json()
    assert b'"ownSignature"' in raw
    assert b'"dependencySignatures"' in raw
    assert LockRecord.from_json(raw) == record


def test_record_copies_dependency_dict():
    """Changing the dictionary a record was built from shouldn't change the record."""
    signatures = {"corpus": "aa"}
    record = LockRecord("bb", signatures)
    signatures["corpus"] = "cc"
    assert record.dependency_signatures == {"corpus": "aa"}


def test_load_missing_returns_none(store):
    assert store.load() is None
    assert not store.exists()


def test_save_leaves_no_temp_files(store, record):
    store.save(record)
    store.save(record)
    assert os.listdir(STORE_DIR) == ["LOCKFILE"]


def test_delete_returns_previous_bytes(store, record):
    store.save(record)
    with open(store.path, "rb") as infile:
        expected = infile.read()

    previous = store.delete()
    assert previous == expected
    assert not store.exists()


def test_delete_missing_returns_none(store):
    assert store.delete() is None


def test_restore_is_byte_identical(store, record):
    """Restoring should put back exactly the bytes that were deleted, even when they
    aren't what this version would serialize."""
    hand_written = b'{"dependencySignatures": {"corpus": "aa"},   "ownSignature": "bb"}'
    with open(store.path, "wb") as outfile:
        outfile.write(hand_written)

    previous = store.delete()
    store.restore(previous)
    with open(store.path, "rb") as infile:
        assert infile.read() == hand_written


def test_restore_none_removes_lock(store, record):
    store.save(record)
    store.restore(None)
    assert not store.exists()


def test_save_creates_directory(clear_filesystem, record):
    store = LockStore("test/examples/data/new/stage")
    store.save(record)
    assert store.load() == record


@pytest.mark.parametrize(
    "contents",
    [
        b"not json at all",
        b"[1, 2, 3]",
        b'{"ownSignature": 5, "dependencySignatures": {}}',
        b'{"ownSignature": "", "dependencySignatures": {"corpus": 7}}',
        b'{"ownSignature": "", "dependencySignatures": ["corpus"]}',
    ],
)
def test_malformed_lock_raises(store, contents):
    """A lock file that can't be parsed should be an IOError, never a guess."""
    with open(store.path, "wb") as outfile:
        outfile.write(contents)
    with pytest.raises(LockFileFormatError):
        store.load()
    with pytest.raises(IOError):
        store.load()


def test_is_lock_file(store):
    assert store.is_lock_file("LOCKFILE")
    assert store.is_lock_file(".LOCKFILE.tmp-123-456")
    assert not store.is_lock_file("LOCKFILE.txt")
    assert not store.is_lock_file("chunk-0.txt")


def test_custom_filename(clear_filesystem, record):
    store = LockStore(STORE_DIR, filename="lock.json")
    store.save(record)
    assert os.path.exists(os.path.join(STORE_DIR, "lock.json"))
    assert store.load() == record


def test_is_lock_file_only_at_stage_root(store):
    assert not store.is_lock_file(os.path.join("nested", "LOCKFILE"))
    assert not store.is_lock_file(os.path.join("nested", ".LOCKFILE.tmp-123-456"))


@pytest.mark.parametrize("failing", ["replace", "fsync"])
def test_failed_save_keeps_old_record(store, record, mocker, failing):
    """If writing the new record fails partway, the old record should still be on
    disk untouched and no temporary file should be left behind."""
    old = LockRecord(hashing.compute_content_signature("old"), {})
    store.save(old)
    before = store.load_raw()

    mocker.patch(f"labbook.lockfile.os.{failing}", side_effect=OSError("disk full"))
    with pytest.raises(OSError):
        store.save(record)
    mocker.stopall()

    assert store.load_raw() == before
    assert store.load() == old
    assert os.listdir(STORE_DIR) == ["LOCKFILE"]


def test_failed_restore_keeps_directory_clean(store, record, mocker):
    store.save(record)
    previous = store.delete()

    mocker.patch("labbook.lockfile.os.replace", side_effect=OSError("disk full"))
    with pytest.raises(OSError):
        store.restore(previous)
    mocker.stopall()

    assert not store.exists()
    assert os.listdir(STORE_DIR) == []
