"""
Module with the state of authenticated connections and the service that manages them.

A session is created once the front-end has authenticated a user and lives until the
connection ends. It owns the handle table of the connection, so tearing a session down
closes every file and directory listing that its client left open.
"""

import os
import threading
from typing import Dict, Optional
import uuid

from semver import VersionInfo

from sftpjail.config import Config
import sftpjail.constants as constants
from sftpjail.filesystem import HandleTable, RequestDispatcher
from sftpjail.logger import log
from sftpjail.protocol import Request, Response, Status, StatusResponse
from sftpjail.users import UserStore


class Session:
    """Requests of a single authenticated connection."""

    def __init__(
        self,
        store: UserStore,
        username: str,
        config: Config,
        session_id: Optional[str] = None,
    ):
        """
        Start a session for a user. Raises KeyError if the user doesn't exist.

        The user's root directory is created if it's missing and, if enabled in the
        config, their quota usage is recalculated from the files in it.
        """
        user = store.get(username)

        os.makedirs(user.root, exist_ok=True)

        if config.quota.recompute_on_login:
            store.recompute_usage(username)

        self.id = session_id or uuid.uuid4().hex
        self.username = username

        self._closed = False

        self.handles = HandleTable(config.session.readdir_batch_size)
        self.dispatcher = RequestDispatcher(
            store,
            username,
            self.handles,
            max_read_size=config.session.max_read_size,
            max_file_size=config.storage.file_size_limit,
        )

        log.info(f"started session {self.id} for {username} in {user.root}")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def handle(self, request: Request) -> Response:
        """Handle a request of the session's client."""
        if self._closed:
            log.warning(f"request {request.id} for closed session {self.id}")
            return StatusResponse(request.id, Status.FAILURE.value)

        return self.dispatcher.handle(request)

    def close(self) -> int:
        """Release all handles that are still open and return how many there were."""
        self._closed = True

        released = self.handles.close_all()

        log.info(
            f"ended session {self.id} for {self.username}, closed {released} handles"
        )

        return released


class SessionService:
    """
    Sessions of all connections handled by a front-end, exposed over RPC.

    Methods may be called concurrently from multiple worker threads, also for the same
    session when its client pipelines requests.
    """

    def __init__(self, store: UserStore, config: Config):
        """Instantiate a service that opens sessions for users from the given store."""
        self._store = store
        self._config = config

        self._sessions: Dict[str, Session] = {}
        self._sessions_lock = threading.Lock()

    def open_session(self, username: str, protocol: str) -> str:
        """
        Start a session for an authenticated user and return its id.

        The front-end passes its protocol version, which has to have the same major
        version as the one of the core.
        """
        if (
            VersionInfo.parse(protocol).major
            != VersionInfo.parse(constants.PROTOCOL_VERSION).major
        ):
            raise ValueError(
                f"incompatible protocol ({protocol} != {constants.PROTOCOL_VERSION})"
            )

        session = Session(self._store, username, self._config)

        with self._sessions_lock:
            self._sessions[session.id] = session

        return session.id

    def request(self, session_id: str, request: Request) -> Response:
        """Handle a request within a session. Raises KeyError for unknown sessions."""
        with self._sessions_lock:
            session = self._sessions[session_id]

        return session.handle(request)

    def close_session(self, session_id: str) -> int:
        """End a session, returning the number of handles that were still open."""
        with self._sessions_lock:
            session = self._sessions.pop(session_id)

        return session.close()

    def session_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)
