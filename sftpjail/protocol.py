"""
Typed requests and responses exchanged between a protocol front-end and the core.

The front-end owns the SFTP wire format: it parses packets into the request dataclasses
below and serializes the response dataclasses back into packets. Every request carries
the request id of its packet and every response echoes it, so the front-end can match
answers to pipelined requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
import os
from typing import List, Optional, Union


class OpenFlags(IntFlag):
    """Bits of the pflags field of an open request."""

    READ = 0x01
    WRITE = 0x02
    APPEND = 0x04
    CREATE = 0x08
    TRUNCATE = 0x10
    EXCL = 0x20


class Status(IntEnum):
    """Status codes of a status response."""

    OK = 0
    EOF = 1
    NO_SUCH_FILE = 2
    PERMISSION_DENIED = 3
    FAILURE = 4


@dataclass
class Attributes:
    """File attributes as reported to clients (times in whole seconds)."""

    mode: int
    uid: int
    gid: int
    size: int
    atime: int
    mtime: int

    @staticmethod
    def from_stat(st: os.stat_result) -> Attributes:
        """Instantiate from the attributes contained within an os.stat_result object."""
        return Attributes(
            mode=st.st_mode,
            uid=st.st_uid,
            gid=st.st_gid,
            size=st.st_size,
            atime=int(st.st_atime),
            mtime=int(st.st_mtime),
        )


@dataclass
class NameEntry:
    """Single entry of a name response."""

    filename: str
    longname: str
    attrs: Optional[Attributes] = None


#
# Requests
#


@dataclass
class BaseRequest:
    id: int


@dataclass
class OpenRequest(BaseRequest):
    path: str
    flags: int


@dataclass
class ReadRequest(BaseRequest):
    handle: bytes
    offset: int
    length: int


@dataclass
class WriteRequest(BaseRequest):
    handle: bytes
    offset: int
    data: bytes


@dataclass
class CloseRequest(BaseRequest):
    handle: bytes


@dataclass
class StatRequest(BaseRequest):
    path: str


@dataclass
class LStatRequest(BaseRequest):
    path: str


@dataclass
class FStatRequest(BaseRequest):
    handle: bytes


@dataclass
class OpenDirRequest(BaseRequest):
    path: str


@dataclass
class ReadDirRequest(BaseRequest):
    handle: bytes


@dataclass
class RealPathRequest(BaseRequest):
    path: str


@dataclass
class RemoveRequest(BaseRequest):
    path: str


@dataclass
class RmDirRequest(BaseRequest):
    path: str


@dataclass
class MkDirRequest(BaseRequest):
    path: str


@dataclass
class RenameRequest(BaseRequest):
    old_path: str
    new_path: str


Request = Union[
    OpenRequest,
    ReadRequest,
    WriteRequest,
    CloseRequest,
    StatRequest,
    LStatRequest,
    FStatRequest,
    OpenDirRequest,
    ReadDirRequest,
    RealPathRequest,
    RemoveRequest,
    RmDirRequest,
    MkDirRequest,
    RenameRequest,
]

#
# Responses
#


@dataclass
class StatusResponse:
    id: int
    code: int


@dataclass
class HandleResponse:
    id: int
    handle: bytes


@dataclass
class AttrsResponse:
    id: int
    attrs: Attributes


@dataclass
class DataResponse:
    id: int
    data: bytes


@dataclass
class NameResponse:
    id: int
    entries: List[NameEntry] = field(default_factory=list)


Response = Union[
    StatusResponse, HandleResponse, AttrsResponse, DataResponse, NameResponse
]
