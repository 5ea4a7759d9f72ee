"""
Modules that give SFTP sessions confined access to the local file system.

Each user has a root directory that all of their paths are resolved against, and every
request of a session goes through the same pipeline:

* The path resolver (paths) turns the client path into an absolute path under the root
and rejects anything that tries to get out, like parent directory traversal or symlinks
that point elsewhere.
* The permission and quota checks (sftpjail.permissions) decide whether the user may
perform the operation at all.
* The request dispatcher (service) performs the file system call and translates its
outcome into an SFTP response.
* Open files and directory listings are kept in the handle table (handles) of the
session in between requests.
"""

from .handles import DirectoryRecord, FileRecord, HandleTable
from .paths import PathResolver, PathValidation
from .service import RequestDispatcher

__all__ = [
    "DirectoryRecord",
    "FileRecord",
    "HandleTable",
    "PathResolver",
    "PathValidation",
    "RequestDispatcher",
]
