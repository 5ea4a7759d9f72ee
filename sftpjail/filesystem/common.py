"""Data structures and helpers used by multiple file system components."""

import collections
from contextlib import contextmanager
import stat
import threading
import time
from typing import Any, Dict, Iterator

from sftpjail.protocol import Attributes, Status


class StatusError(Exception):
    """
    Exception raised by request handlers to answer with a specific status code.

    The reason is only logged on the server side and never sent to the client.
    """

    def __init__(self, code: Status, reason: str):
        """Instantiate with the status code to respond with and a log message."""
        super().__init__(code, reason)

        self.code = code
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.code.name}: {self.reason}"


class LockIndex:
    """
    Collection of mutexes to lock critical sections by arbitrary values.

    Used to serialize requests against the same handle while letting requests against
    different handles run in parallel. Locks are automatically garbage collected when
    no longer in use (no threads in the critical section and none waiting to enter).
    """

    def __init__(self) -> None:
        """Instantiate a LockIndex."""
        self._global_lock = threading.Lock()

        self._locks: Dict[Any, threading.Lock] = collections.defaultdict(threading.Lock)
        self._lock_users: Dict[Any, int] = collections.defaultdict(int)

    @contextmanager
    def lock(self, key: Any) -> Iterator[None]:
        """Lock a critical section based on the specified key."""
        with self._global_lock:
            self._lock_users[key] += 1
            lock = self._locks[key]

        lock.acquire()

        try:
            yield
        finally:
            lock.release()

            with self._global_lock:
                self._lock_users[key] -= 1

                if self._lock_users[key] == 0:
                    del self._lock_users[key]
                    del self._locks[key]


# Entries modified longer than this ago show the year instead of the time, like ls -l.
_RECENT_SECONDS = 365 * 24 * 60 * 60 // 2


def format_longname(filename: str, attrs: Attributes, nlink: int = 1) -> str:
    """
    Format an ls -l style line for a directory entry.

    Owners are rendered numerically to avoid exposing account names of the host.
    """
    mtime = time.localtime(attrs.mtime)

    if time.time() - _RECENT_SECONDS < attrs.mtime <= time.time():
        modtime = time.strftime("%b %d %H:%M", mtime)
    else:
        modtime = time.strftime("%b %d  %Y", mtime)

    return "{:10s} {:>4d} {:<8d} {:<8d} {:>8d} {:12s} {}".format(
        stat.filemode(attrs.mode),
        nlink,
        attrs.uid,
        attrs.gid,
        attrs.size,
        modtime,
        filename,
    )
