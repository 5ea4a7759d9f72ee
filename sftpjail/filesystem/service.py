"""
Module that turns decoded SFTP requests into confined file system calls.

Every request is handled in the same way: validate the path(s), check the capability
of the user, check preconditions specific to the operation, perform the file system
call, and answer with exactly one response. Handlers signal failures by raising
StatusError, and file system errors are mapped onto status codes by handle(), so no
exception ever makes it past the dispatcher.

Client-visible responses never contain more than a status code. Details of a failure,
like the absolute path that a client tried to reach, only end up in the server log.
"""

import logging
import os
import stat
from typing import Callable, Dict, List, Optional

from sftpjail.filesystem.common import format_longname, StatusError
from sftpjail.filesystem.handles import (
    DirectoryRecord,
    FileRecord,
    handle_repr,
    HandleExhaustedError,
    HandleRecord,
    HandleTable,
    HandleTableClosedError,
)
from sftpjail.filesystem.paths import PathResolver, PathValidation
from sftpjail.logger import log, summarize
import sftpjail.permissions as permissions
from sftpjail.permissions import Action
from sftpjail.protocol import (
    Attributes,
    AttrsResponse,
    CloseRequest,
    DataResponse,
    FStatRequest,
    HandleResponse,
    LStatRequest,
    MkDirRequest,
    NameEntry,
    NameResponse,
    OpenDirRequest,
    OpenFlags,
    OpenRequest,
    ReadDirRequest,
    ReadRequest,
    RealPathRequest,
    RemoveRequest,
    RenameRequest,
    Request,
    Response,
    RmDirRequest,
    StatRequest,
    Status,
    StatusResponse,
    WriteRequest,
)
from sftpjail.users import User, UserStore

# Permission bits for newly created files, before the umask is applied.
FILE_CREATION_MODE = 0o666


class RequestDispatcher:
    """
    Handler of the requests of a single session.

    The dispatcher doesn't keep any state between requests itself. Open files and
    directory listings live in the handle table of the session. Capabilities are
    taken from the user record cached by the store, while the quota of a write is
    checked against the usage persisted in the store file, which other processes
    sharing the store may have increased.
    """

    DEFAULT_MAX_READ_SIZE = 256 * 1024

    def __init__(
        self,
        store: UserStore,
        username: str,
        handles: HandleTable,
        max_read_size: int = DEFAULT_MAX_READ_SIZE,
        max_file_size: Optional[int] = None,
    ):
        """
        Instantiate a dispatcher for a user, operating on the given handle table.

        Reads are capped at max_read_size bytes. Writes that would make a file grow
        beyond max_file_size bytes are refused, unless it is None.
        """
        self._store = store
        self._username = username
        self._handles = handles
        self._max_read_size = max_read_size
        self._max_file_size = max_file_size

        self._resolver = PathResolver(store.get(username).root)

        self._handlers: Dict[type, Callable[..., Response]] = {
            OpenRequest: self.open,
            ReadRequest: self.read,
            WriteRequest: self.write,
            CloseRequest: self.close,
            StatRequest: self.stat,
            LStatRequest: self.lstat,
            FStatRequest: self.fstat,
            OpenDirRequest: self.opendir,
            ReadDirRequest: self.readdir,
            RealPathRequest: self.realpath,
            RemoveRequest: self.remove,
            RmDirRequest: self.rmdir,
            MkDirRequest: self.mkdir,
            RenameRequest: self.rename,
        }

    @property
    def root(self) -> str:
        return self._resolver.root

    def handle(self, request: Request) -> Response:
        """Handle a request and return its response, whatever happens."""
        operation = request.__class__.__name__

        if log.isEnabledFor(logging.DEBUG):
            log.debug(f"{self._username}: {summarize(request)}")

        handler = self._handlers.get(type(request))

        if handler is None:
            log.error(f"{self._username}: unsupported request {operation}")
            return StatusResponse(request.id, Status.FAILURE.value)

        try:
            return handler(request)
        except StatusError as e:
            log.warning(f"{self._username}: {operation} {request.id} failed: {e}")
            return StatusResponse(request.id, e.code.value)
        except (HandleExhaustedError, HandleTableClosedError) as e:
            log.error(f"{self._username}: {operation} {request.id} failed: {e}")
            return StatusResponse(request.id, Status.FAILURE.value)
        except FileNotFoundError as e:
            log.warning(f"{self._username}: {operation} {request.id} failed: {e}")
            return StatusResponse(request.id, Status.NO_SUCH_FILE.value)
        except OSError as e:
            log.error(f"{self._username}: {operation} {request.id} failed: {e}")
            return StatusResponse(request.id, Status.FAILURE.value)
        except Exception:
            log.exception(f"{self._username}: {operation} {request.id} crashed")
            return StatusResponse(request.id, Status.FAILURE.value)

    #
    # File operations
    #

    def open(self, request: OpenRequest) -> Response:
        target = self._resolve(request.path)
        path = target.absolute_path
        user = self._user()

        if os.path.isdir(path):
            if request.flags & OpenFlags.WRITE:
                raise StatusError(Status.PERMISSION_DENIED, "write access to directory")

            self._require(user, Action.READ)

            return self._bind(request, DirectoryRecord(path=path))

        if request.flags & OpenFlags.WRITE:
            self._require(user, Action.WRITE)

            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd = os.open(path, self._write_flags(request.flags), FILE_CREATION_MODE)
        else:
            self._require(user, Action.READ)

            fd = os.open(path, os.O_RDONLY)

        try:
            return self._bind(request, FileRecord(fd=fd, path=path, flags=request.flags))
        except Exception:
            os.close(fd)
            raise

    @staticmethod
    def _write_flags(flags: int) -> int:
        """
        Translate the flags of an open request with write intent into os.open flags.

        Files opened for writing are created if they don't exist, even if the client
        didn't ask for that with the CREATE flag. Clients have come to rely on this.
        """
        os_flags = os.O_CREAT

        if flags & OpenFlags.READ:
            os_flags |= os.O_RDWR
        else:
            os_flags |= os.O_WRONLY

        if flags & OpenFlags.APPEND:
            os_flags |= os.O_APPEND
        elif flags & OpenFlags.TRUNCATE:
            os_flags |= os.O_TRUNC

        if flags & OpenFlags.CREATE and flags & OpenFlags.EXCL:
            os_flags |= os.O_EXCL

        return os_flags

    def read(self, request: ReadRequest) -> Response:
        with self._handles.locked(request.handle) as record:
            file_record = self._file_record(request.handle, record)

            if request.offset < 0 or request.length < 0:
                raise StatusError(Status.FAILURE, "negative offset or length")

            size = min(request.length, self._max_read_size)
            data = os.pread(file_record.fd, size, request.offset)

        if len(data) == 0:
            return StatusResponse(request.id, Status.EOF.value)

        return DataResponse(request.id, data)

    def write(self, request: WriteRequest) -> Response:
        length = len(request.data)

        with self._handles.locked(request.handle) as record:
            file_record = self._file_record(request.handle, record)

            if not file_record.writable:
                raise StatusError(Status.FAILURE, "handle is not open for writing")
            elif request.offset < 0:
                raise StatusError(Status.FAILURE, "negative offset")
            elif (
                self._max_file_size is not None
                and request.offset + length > self._max_file_size
            ):
                raise StatusError(Status.FAILURE, "maximum file size exceeded")

            user = self._store.current(self._username)

            if not permissions.allow_write(user, length):
                raise StatusError(
                    Status.FAILURE,
                    f"quota exceeded ({user.quota.used_bytes} + {length} bytes"
                    f" > {user.quota.max_bytes} bytes)",
                )

            size_before = os.fstat(file_record.fd).st_size

            written = 0

            while written < length:
                written += os.pwrite(
                    file_record.fd, request.data[written:], request.offset + written
                )

            growth = os.fstat(file_record.fd).st_size - size_before

        if growth > 0:
            used_bytes = self._store.add_usage(self._username, growth)
            log.debug(f"{self._username}: usage is now {used_bytes} bytes")

        return self._ok(request)

    def close(self, request: CloseRequest) -> Response:
        try:
            self._handles.release(request.handle)
        except KeyError:
            raise StatusError(
                Status.FAILURE, f"unknown handle {handle_repr(request.handle)}"
            )

        return self._ok(request)

    #
    # Metadata access
    #

    def stat(self, request: StatRequest) -> Response:
        target = self._resolve(request.path)
        return AttrsResponse(
            request.id, Attributes.from_stat(os.stat(target.absolute_path))
        )

    def lstat(self, request: LStatRequest) -> Response:
        target = self._resolve(request.path, follow_final=False)
        return AttrsResponse(
            request.id, Attributes.from_stat(os.lstat(target.absolute_path))
        )

    def fstat(self, request: FStatRequest) -> Response:
        with self._handles.locked(request.handle) as record:
            if record is None:
                raise StatusError(
                    Status.FAILURE, f"unknown handle {handle_repr(request.handle)}"
                )
            elif isinstance(record, FileRecord):
                st = os.fstat(record.fd)
            else:
                st = os.stat(record.path)

        return AttrsResponse(request.id, Attributes.from_stat(st))

    def opendir(self, request: OpenDirRequest) -> Response:
        target = self._resolve(request.path)
        self._require(self._user(), Action.READ)

        if not os.path.isdir(target.absolute_path):
            raise StatusError(Status.NO_SUCH_FILE, f"no directory {target.client_path}")

        return self._bind(request, DirectoryRecord(path=target.absolute_path))

    def readdir(self, request: ReadDirRequest) -> Response:
        with self._handles.locked(request.handle) as record:
            if record is None:
                raise StatusError(
                    Status.FAILURE, f"unknown handle {handle_repr(request.handle)}"
                )
            elif not isinstance(record, DirectoryRecord):
                raise StatusError(Status.FAILURE, "handle is not a directory")

            batch = self._handles.next_batch(record, self._snapshot)

        if batch is None:
            return StatusResponse(request.id, Status.EOF.value)

        return NameResponse(request.id, batch)

    @staticmethod
    def _snapshot(path: str) -> List[NameEntry]:
        """List the entries of a directory, sorted by name."""
        entries = []

        for name in sorted(os.listdir(path)):
            try:
                st = os.lstat(os.path.join(path, name))
            except FileNotFoundError:
                # Removed while listing
                continue

            attrs = Attributes.from_stat(st)
            longname = format_longname(name, attrs, st.st_nlink)

            entries.append(NameEntry(filename=name, longname=longname, attrs=attrs))

        return entries

    def realpath(self, request: RealPathRequest) -> Response:
        if request.path in (".", "/"):
            return NameResponse(request.id, [NameEntry(filename="/", longname="/")])

        target = self._resolve(request.path)

        if not os.path.exists(target.absolute_path):
            raise StatusError(Status.NO_SUCH_FILE, f"no such path {target.client_path}")

        client_path = target.client_path

        return NameResponse(
            request.id, [NameEntry(filename=client_path, longname=client_path)]
        )

    #
    # File system structure
    #

    def remove(self, request: RemoveRequest) -> Response:
        target = self._resolve(request.path, follow_final=False)
        self._require(self._user(), Action.DELETE)

        st = os.lstat(target.absolute_path)

        if stat.S_ISDIR(st.st_mode):
            raise StatusError(Status.FAILURE, f"{target.client_path} is a directory")

        os.unlink(target.absolute_path)

        log.info(f"{self._username}: removed {target.client_path}")

        return self._ok(request)

    def rmdir(self, request: RmDirRequest) -> Response:
        target = self._resolve(request.path, follow_final=False)
        self._require(self._user(), Action.DELETE)

        if target.is_root:
            raise StatusError(Status.PERMISSION_DENIED, "cannot remove the root")

        st = os.lstat(target.absolute_path)

        if not stat.S_ISDIR(st.st_mode):
            raise StatusError(Status.FAILURE, f"{target.client_path} is no directory")

        os.rmdir(target.absolute_path)

        log.info(f"{self._username}: removed directory {target.client_path}")

        return self._ok(request)

    def mkdir(self, request: MkDirRequest) -> Response:
        target = self._resolve(request.path)
        self._require(self._user(), Action.CREATE_DIR)

        if os.path.lexists(target.absolute_path):
            raise StatusError(Status.FAILURE, f"{target.client_path} already exists")

        os.makedirs(target.absolute_path)

        log.info(f"{self._username}: created directory {target.client_path}")

        return self._ok(request)

    def rename(self, request: RenameRequest) -> Response:
        source = self._resolve(request.old_path, follow_final=False)
        destination = self._resolve(request.new_path, follow_final=False)
        self._require(self._user(), Action.WRITE)

        if source.is_root or destination.is_root:
            raise StatusError(Status.PERMISSION_DENIED, "cannot rename the root")

        if not os.path.lexists(source.absolute_path):
            raise StatusError(Status.NO_SUCH_FILE, f"no such path {source.client_path}")

        os.makedirs(os.path.dirname(destination.absolute_path), exist_ok=True)
        os.rename(source.absolute_path, destination.absolute_path)

        log.info(
            f"{self._username}: renamed {source.client_path}"
            f" to {destination.client_path}"
        )

        return self._ok(request)

    #
    # Helpers
    #

    def _user(self) -> User:
        return self._store.get(self._username)

    def _resolve(self, path: str, follow_final: bool = True) -> PathValidation:
        """
        Resolve a client path or refuse the request with PERMISSION_DENIED.

        Invalid paths are refused before anything on disk is touched.
        """
        target = self._resolver.resolve(path)

        if not target.valid:
            raise StatusError(
                Status.PERMISSION_DENIED,
                f"rejected path {summarize(path, 80)!r}: {target.reason}",
            )

        assert target.absolute_path is not None

        if not self._resolver.is_confined(target.absolute_path, follow_final):
            raise StatusError(
                Status.PERMISSION_DENIED,
                f"rejected path {summarize(path, 80)!r}: symlink leads outside root",
            )

        return target

    @staticmethod
    def _require(user: User, action: Action) -> None:
        if not permissions.allow(user, action):
            raise StatusError(
                Status.PERMISSION_DENIED, f"{action.value} permission denied"
            )

    @staticmethod
    def _file_record(handle: bytes, record: Optional[HandleRecord]) -> FileRecord:
        """Check that a looked up record is an open file."""
        if record is None:
            raise StatusError(Status.FAILURE, f"unknown handle {handle_repr(handle)}")
        elif isinstance(record, DirectoryRecord):
            raise StatusError(Status.PERMISSION_DENIED, "handle is a directory")

        return record

    def _bind(self, request: Request, record: HandleRecord) -> Response:
        handle = self._handles.add(record)

        log.debug(f"{self._username}: opened {handle_repr(handle)} for {record.path}")

        return HandleResponse(request.id, handle)

    @staticmethod
    def _ok(request: Request) -> Response:
        return StatusResponse(request.id, Status.OK.value)
