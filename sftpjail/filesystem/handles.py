"""
Module with the per-session table of open handles.

A handle is an opaque 4-byte token that clients use to refer to an open file or an
open directory listing in subsequent requests. Tokens are the big-endian encoding of a
counter that only ever goes up within a session, so a token that has been closed can
never start referring to a different file. Requests carrying such a stale token simply
fail to find a record.

Requests can be pipelined, which means that multiple requests for the same session may
be handled at the same time by different worker threads. The table itself is protected
by a single lock, and each handle has its own lock that callers hold while operating on
the record (see locked()). This serializes requests against the same handle without
making requests against different handles wait for each other.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import auto, Enum
import os
import threading
from typing import Callable, Dict, Iterator, List, Optional, Union

from sftpjail.constants import HANDLE_SIZE, MAX_HANDLES
from sftpjail.filesystem.common import LockIndex
from sftpjail.logger import log
from sftpjail.protocol import NameEntry, OpenFlags


class HandleExhaustedError(RuntimeError):
    """Exception raised when a session has used up all possible handle tokens."""


class HandleTableClosedError(RuntimeError):
    """Exception raised when a handle is added to a table that has been torn down."""


class ListingState(Enum):
    """States of a directory listing."""

    UNREAD = auto()
    SNAPSHOTTED = auto()
    EXHAUSTED = auto()


@dataclass
class FileRecord:
    """Open file, owning its file descriptor."""

    fd: int
    path: str
    flags: int

    @property
    def writable(self) -> bool:
        return bool(self.flags & OpenFlags.WRITE)


@dataclass
class DirectoryRecord:
    """
    Open directory listing.

    The entries are a snapshot of the directory taken upon the first read and the
    cursor is the index of the next entry to return.
    """

    path: str
    entries: Optional[List[NameEntry]] = None
    cursor: int = 0
    state: ListingState = ListingState.UNREAD


HandleRecord = Union[FileRecord, DirectoryRecord]


def handle_repr(handle: bytes) -> str:
    """Format a handle token for log messages."""
    return handle.hex() if isinstance(handle, bytes) else repr(handle)


class HandleTable:
    """Mapping of handle tokens to open files and directory listings of one session."""

    DEFAULT_BATCH_SIZE = 10

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE):
        """Instantiate an empty table that lists directories in the given batch size."""
        if batch_size < 1:
            raise ValueError("batch size must be positive")

        self._batch_size = batch_size

        self._lock = threading.Lock()
        self._records: Dict[bytes, HandleRecord] = {}
        self._next_handle = 0
        self._closed = False

        self._handle_locks = LockIndex()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def allocate(self) -> bytes:
        """Reserve a new handle token that has never been handed out in this table."""
        with self._lock:
            if self._closed:
                raise HandleTableClosedError("session is closed")
            elif self._next_handle >= MAX_HANDLES:
                raise HandleExhaustedError("no handle tokens left in this session")

            handle = self._next_handle.to_bytes(HANDLE_SIZE, "big")
            self._next_handle += 1

            return handle

    def bind(self, handle: bytes, record: HandleRecord) -> None:
        """Associate an allocated handle token with an open file or directory."""
        with self._lock:
            if self._closed:
                raise HandleTableClosedError("session is closed")
            elif len(handle) != HANDLE_SIZE:
                raise ValueError(f"malformed handle {handle_repr(handle)}")
            elif int.from_bytes(handle, "big") >= self._next_handle:
                raise ValueError(f"handle {handle_repr(handle)} was never allocated")
            elif handle in self._records:
                raise ValueError(f"handle {handle_repr(handle)} is already bound")

            self._records[handle] = record

    def add(self, record: HandleRecord) -> bytes:
        """Allocate a handle token and bind it to the record in one go."""
        handle = self.allocate()
        self.bind(handle, record)
        return handle

    def lookup(self, handle: bytes) -> Optional[HandleRecord]:
        """Return the record for a handle token, or None if it isn't open."""
        with self._lock:
            return self._records.get(handle)

    @contextmanager
    def locked(self, handle: bytes) -> Iterator[Optional[HandleRecord]]:
        """
        Acquire exclusive access to the record of a handle.

        Yields None if the handle isn't open (anymore) once the lock is acquired.
        """
        with self._handle_locks.lock(handle):
            yield self.lookup(handle)

    def release(self, handle: bytes) -> HandleRecord:
        """
        Remove a handle from the table and close its file descriptor.

        The record is removed even if closing the descriptor fails, in which case the
        OSError is raised afterwards. Raises KeyError if the handle isn't open.
        """
        with self._handle_locks.lock(handle):
            with self._lock:
                record = self._records.pop(handle)

            if isinstance(record, FileRecord):
                os.close(record.fd)

            return record

    def close_all(self) -> int:
        """
        Release every handle in the table, logging rather than raising errors.

        The table refuses new handles afterwards, so that a request that was still
        opening a file when the session was torn down can't leave its descriptor behind.
        Returns the number of released handles.
        """
        with self._lock:
            self._closed = True
            handles = list(self._records.keys())

        released = 0

        for handle in handles:
            try:
                self.release(handle)
                released += 1
            except KeyError:
                # Closed by a request that was still in flight
                pass
            except OSError as e:
                released += 1
                log.warning(f"failed to close handle {handle_repr(handle)}: {e}")

        return released

    def next_batch(
        self,
        record: DirectoryRecord,
        snapshot: Callable[[str], List[NameEntry]],
    ) -> Optional[List[NameEntry]]:
        """
        Return the next batch of entries of a directory listing.

        The snapshot function is called to list the directory upon the first read, and
        again upon a read after the listing has been exhausted. Returns None once all
        entries have been returned, which also discards the snapshot.

        Callers must hold the lock of the handle (see locked()).
        """
        if record.state != ListingState.SNAPSHOTTED:
            record.entries = snapshot(record.path)
            record.cursor = 0
            record.state = ListingState.SNAPSHOTTED

        assert record.entries is not None

        if record.cursor >= len(record.entries):
            record.entries = None
            record.cursor = 0
            record.state = ListingState.EXHAUSTED
            return None

        batch = record.entries[record.cursor : record.cursor + self._batch_size]
        record.cursor += len(batch)

        return batch
