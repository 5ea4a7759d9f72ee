"""
Module with user records and the store that persists them.

User records are created by account management outside of this package. The session
core only reads them, except for the quota usage counter, which it bumps after writes
through add_usage().

The store is a single JSON file. Multiple server processes may share it, so every
modification happens under an inter-process lock and starts by rereading the file. That
way concurrent sessions of the same user in different processes never overwrite each
other's usage updates.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import os
import stat
import threading
from typing import Callable, Dict, List, Optional

import fasteners

from sftpjail.logger import log
import sftpjail.rpc as rpc


@dataclass
class Capabilities:
    """Operations a user is allowed to perform."""

    read: bool = False
    write: bool = False
    delete: bool = False
    create_dir: bool = False
    rename: bool = False


@dataclass
class Quota:
    """Storage budget of a user. A maximum of None means unlimited."""

    max_bytes: Optional[int] = None
    used_bytes: int = 0

    @property
    def unlimited(self) -> bool:
        return self.max_bytes is None


@dataclass
class User:
    """
    Account that can open sessions.

    The root is the absolute path of the directory that the user's sessions are
    confined to.
    """

    username: str
    root: str
    role: str = "user"
    capabilities: Capabilities = field(default_factory=Capabilities)
    quota: Quota = field(default_factory=Quota)

    @staticmethod
    def create(username: str, root: str, role: str = "user") -> User:
        """Instantiate a user with the default capabilities and quota of a role."""
        if role not in ROLE_DEFAULTS:
            raise ValueError(f"unknown role '{role}'")

        capabilities, max_bytes = ROLE_DEFAULTS[role]

        return User(
            username=username,
            root=os.path.abspath(root),
            role=role,
            capabilities=copy.copy(capabilities),
            quota=Quota(max_bytes=max_bytes),
        )


ROLE_DEFAULTS = {
    "admin": (Capabilities(True, True, True, True, True), None),
    "user": (Capabilities(True, True, True, True, True), 100 * 1024 * 1024),
    "readonly": (Capabilities(read=True), 0),
}


class UserStore:
    """User records persisted in a JSON file."""

    def __init__(self, path: str):
        """Instantiate a store backed by the specified file and load its records."""
        self._path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self._path), exist_ok=True)

        self._encoding = rpc.Encoding(User)

        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}

        self.load()

    @property
    def path(self) -> str:
        return self._path

    @property
    def _lock_path(self) -> str:
        """Return the path of the lock file guarding the store file."""
        return self._path + ".lock"

    def load(self) -> None:
        """Reload all user records from disk."""
        with self._lock, fasteners.InterProcessLock(self._lock_path):
            self._users = self._read_disk_users()

    def usernames(self) -> List[str]:
        with self._lock:
            return sorted(self._users.keys())

    def get(self, username: str) -> User:
        """Return a copy of a user record. Raises KeyError for unknown users."""
        with self._lock:
            return copy.deepcopy(self._users[username])

    def current(self, username: str) -> User:
        """
        Return a copy of a user record as currently persisted on disk.

        Unlike get(), this picks up changes made by other processes sharing the store,
        such as usage added by their writes. Raises KeyError for unknown users.
        """
        with self._lock, fasteners.InterProcessLock(self._lock_path):
            self._users = self._read_disk_users()

            return copy.deepcopy(self._users[username])

    def put(self, user: User) -> None:
        """Add or replace a user record and make sure that its root directory exists."""
        os.makedirs(user.root, exist_ok=True)

        def replace(users: Dict[str, User]) -> None:
            users[user.username] = copy.deepcopy(user)

        self._modify(replace)

    def remove(self, username: str) -> None:
        """Remove a user record. The user's files are left alone."""

        def delete(users: Dict[str, User]) -> None:
            del users[username]

        self._modify(delete)

    def add_usage(self, username: str, delta: int) -> int:
        """
        Atomically adjust the quota usage of a user and return the new usage.

        Usage never drops below zero.
        """
        new_usage = 0

        def adjust(users: Dict[str, User]) -> None:
            nonlocal new_usage

            quota = users[username].quota
            quota.used_bytes = max(0, quota.used_bytes + delta)
            new_usage = quota.used_bytes

        self._modify(adjust)

        return new_usage

    def set_usage(self, username: str, used_bytes: int) -> None:
        """Overwrite the quota usage of a user."""

        def assign(users: Dict[str, User]) -> None:
            users[username].quota.used_bytes = max(0, used_bytes)

        self._modify(assign)

    def recompute_usage(self, username: str) -> int:
        """
        Recalculate the quota usage of a user from the files in their root.

        Only regular files count towards the usage. Files that disappear or can't be
        inspected while walking the tree are skipped.
        """
        user = self.get(username)

        used_bytes = 0

        for dirpath, _, filenames in os.walk(user.root):
            for filename in filenames:
                try:
                    st = os.lstat(os.path.join(dirpath, filename))
                except OSError:
                    continue

                if stat.S_ISREG(st.st_mode):
                    used_bytes += st.st_size

        self.set_usage(username, used_bytes)

        log.debug(f"recomputed usage of {username}: {used_bytes} bytes")

        return used_bytes

    def _modify(self, change: Callable[[Dict[str, User]], None]) -> None:
        """
        Apply a change to the latest persisted records and save them.

        The change is applied to a fresh copy of the records on disk to pick up changes
        made by other processes in the meanwhile.
        """
        with self._lock, fasteners.InterProcessLock(self._lock_path):
            users = self._read_disk_users()

            change(users)

            self._write_disk_users(users)
            self._users = users

    def _read_disk_users(self) -> Dict[str, User]:
        """Deserialize user records from the store file."""
        try:
            with open(self._path, "r") as f:
                return self._encoding.load_json(f)
        except FileNotFoundError:
            log.info(f"no user store at {self._path}")
            return {}

    def _write_disk_users(self, users: Dict[str, User]) -> None:
        """Serialize user records to the store file, replacing it atomically."""
        tmp_path = self._path + ".tmp"

        with open(tmp_path, "w") as f:
            self._encoding.dump_json(users, f)

        os.replace(tmp_path, self._path)
