import os
import threading

import pytest

from sftpjail.constants import HANDLE_SIZE, MAX_HANDLES
from sftpjail.filesystem.handles import (
    DirectoryRecord,
    FileRecord,
    HandleExhaustedError,
    HandleTable,
    HandleTableClosedError,
    ListingState,
)
from sftpjail.protocol import NameEntry, OpenFlags


def open_file(tmp_path, name="f", flags=OpenFlags.READ):
    path = str(tmp_path / name)

    with open(path, "wb"):
        pass

    return FileRecord(fd=os.open(path, os.O_RDONLY), path=path, flags=flags)


def entries(*names):
    return [NameEntry(filename=name, longname=name) for name in names]


def test_allocate_distinct():
    table = HandleTable()

    handles = [table.allocate() for _ in range(100)]

    assert len(set(handles)) == 100
    assert all(len(handle) == HANDLE_SIZE for handle in handles)
    assert handles[0] == b"\x00\x00\x00\x00"
    assert handles[1] == b"\x00\x00\x00\x01"


def test_allocate_concurrent():
    table = HandleTable()
    handles = []
    lock = threading.Lock()

    def allocate():
        for _ in range(100):
            handle = table.allocate()

            with lock:
                handles.append(handle)

    threads = [threading.Thread(target=allocate) for _ in range(4)]

    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(handles)) == 400


def test_allocate_exhausted():
    table = HandleTable()
    table._next_handle = MAX_HANDLES - 1

    assert table.allocate() == b"\xff\xff\xff\xff"

    with pytest.raises(HandleExhaustedError):
        table.allocate()


def test_bind_and_lookup(tmp_path):
    table = HandleTable()
    record = open_file(tmp_path)

    handle = table.allocate()
    table.bind(handle, record)

    assert table.lookup(handle) is record
    assert len(table) == 1

    table.close_all()


def test_bind_invalid(tmp_path):
    table = HandleTable()
    record = DirectoryRecord(path=str(tmp_path))

    with pytest.raises(ValueError):
        table.bind(b"\x00", record)

    with pytest.raises(ValueError):
        table.bind(b"\x00\x00\x00\x00", record)

    handle = table.add(record)

    with pytest.raises(ValueError):
        table.bind(handle, record)


def test_lookup_unknown():
    assert HandleTable().lookup(b"\x00\x00\x00\x07") is None


def test_release(tmp_path):
    table = HandleTable()
    record = open_file(tmp_path)

    handle = table.add(record)

    assert table.release(handle) is record
    assert table.lookup(handle) is None
    assert len(table) == 0

    with pytest.raises(OSError):
        os.fstat(record.fd)

    with pytest.raises(KeyError):
        table.release(handle)


def test_released_handle_not_reused(tmp_path):
    table = HandleTable()

    first = table.add(DirectoryRecord(path=str(tmp_path)))
    table.release(first)

    second = table.add(DirectoryRecord(path=str(tmp_path)))

    assert first != second
    assert table.lookup(first) is None


def test_locked(tmp_path):
    table = HandleTable()
    record = DirectoryRecord(path=str(tmp_path))
    handle = table.add(record)

    with table.locked(handle) as locked_record:
        assert locked_record is record

    with table.locked(b"\x00\x00\x00\x09") as locked_record:
        assert locked_record is None


def test_close_all(tmp_path):
    table = HandleTable()

    records = [open_file(tmp_path, f"f{i}") for i in range(3)]

    for record in records:
        table.add(record)
    table.add(DirectoryRecord(path=str(tmp_path)))

    assert table.close_all() == 4
    assert len(table) == 0

    for record in records:
        with pytest.raises(OSError):
            os.fstat(record.fd)


def test_close_all_logs_errors(tmp_path, caplog):
    table = HandleTable()
    record = open_file(tmp_path)

    table.add(record)
    os.close(record.fd)

    assert table.close_all() == 1
    assert len(table) == 0
    assert "failed to close handle" in caplog.text


def test_closed_table_refuses_handles(tmp_path):
    table = HandleTable()
    handle = table.allocate()

    assert not table.closed
    assert table.close_all() == 0
    assert table.closed

    with pytest.raises(HandleTableClosedError):
        table.bind(handle, DirectoryRecord(path=str(tmp_path)))
    with pytest.raises(HandleTableClosedError):
        table.allocate()
    with pytest.raises(HandleTableClosedError):
        table.add(DirectoryRecord(path=str(tmp_path)))

    assert len(table) == 0


def test_file_record_writable():
    assert not FileRecord(0, "f", OpenFlags.READ).writable
    assert FileRecord(0, "f", OpenFlags.WRITE).writable
    assert FileRecord(0, "f", OpenFlags.READ | OpenFlags.WRITE).writable


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        HandleTable(batch_size=0)


def test_next_batch_pagination():
    table = HandleTable(batch_size=2)
    record = DirectoryRecord(path="/d")

    snapshots = []

    def snapshot(path):
        snapshots.append(path)
        return entries("a", "b", "c", "d", "e")

    batches = []

    while True:
        batch = table.next_batch(record, snapshot)

        if batch is None:
            break

        batches.append([entry.filename for entry in batch])

    assert batches == [["a", "b"], ["c", "d"], ["e"]]
    assert snapshots == ["/d"]
    assert record.state == ListingState.EXHAUSTED
    assert record.entries is None


def test_next_batch_empty_directory():
    table = HandleTable()
    record = DirectoryRecord(path="/d")

    assert table.next_batch(record, lambda path: []) is None
    assert record.state == ListingState.EXHAUSTED


def test_next_batch_uses_snapshot():
    table = HandleTable(batch_size=1)
    record = DirectoryRecord(path="/d")

    listing = entries("a", "b")

    assert table.next_batch(record, lambda path: list(listing))[0].filename == "a"

    # Changes after the first read don't show up in the listing
    listing.append(NameEntry("c", "c"))

    assert table.next_batch(record, lambda path: list(listing))[0].filename == "b"
    assert table.next_batch(record, lambda path: list(listing)) is None


def test_next_batch_after_exhaustion_resnapshots():
    table = HandleTable()
    record = DirectoryRecord(path="/d")

    assert len(table.next_batch(record, lambda path: entries("a"))) == 1
    assert table.next_batch(record, lambda path: entries("a")) is None

    batch = table.next_batch(record, lambda path: entries("a", "b"))

    assert [entry.filename for entry in batch] == ["a", "b"]
    assert record.state == ListingState.SNAPSHOTTED
