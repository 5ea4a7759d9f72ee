"""
Module that confines client-supplied paths to a user's sandbox root.

Client paths are posix-style and interpreted relative to the sandbox root, whether or
not they start with a separator. Resolution happens in two steps:

* resolve() is purely syntactic. It rejects forbidden characters and parent directory
traversal, and joins the remainder with the root. Nothing on disk is consulted, so a
rejected path never results in a file system call.
* is_confined() runs right before a file system call and checks that the real path,
with symlinks resolved, is still inside the real root. Without it a symlink inside the
sandbox that points elsewhere would be a way out.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
import posixpath
from typing import Optional

# Characters that are reserved on at least one common platform and have no business in
# a portable file name.
RESERVED_CHARACTERS = frozenset('<>:"|?*\\')


@dataclass(frozen=True)
class PathValidation:
    """Outcome of resolving a client path against a sandbox root."""

    valid: bool
    absolute_path: Optional[str] = None
    relative_path: Optional[str] = None
    reason: Optional[str] = None

    @staticmethod
    def accept(absolute_path: str, relative_path: str) -> PathValidation:
        return PathValidation(
            valid=True, absolute_path=absolute_path, relative_path=relative_path
        )

    @staticmethod
    def reject(reason: str) -> PathValidation:
        return PathValidation(valid=False, reason=reason)

    @property
    def is_root(self) -> bool:
        """Return whether the path refers to the sandbox root itself."""
        return self.valid and self.relative_path == ""

    @property
    def client_path(self) -> str:
        """Return the path as the client sees it, with a single leading separator."""
        assert self.relative_path is not None
        return "/" + self.relative_path.replace(os.sep, "/")


class PathResolver:
    """Resolver of client paths for a single sandbox root."""

    def __init__(self, root: str):
        """Instantiate a resolver for the sandbox at the specified directory."""
        self._root = os.path.abspath(root)

    @property
    def root(self) -> str:
        return self._root

    def resolve(self, path: Optional[str]) -> PathValidation:
        """Resolve a client path into an absolute path inside the sandbox root."""
        requested = path or ""

        if requested.startswith("/"):
            requested = requested[1:]

        for c in requested:
            if ord(c) < 0x20 or ord(c) == 0x7F:
                return PathValidation.reject("path contains control characters")
            elif c in RESERVED_CHARACTERS:
                return PathValidation.reject("path contains reserved characters")

        if ".." in requested.split("/"):
            return PathValidation.reject("path contains parent directory traversal")

        normalized = posixpath.normpath(requested) if requested else "."

        if posixpath.isabs(normalized):
            return PathValidation.reject("path is absolute after normalization")

        absolute_path = os.path.normpath(
            os.path.join(self._root, *normalized.split("/"))
        )

        if os.path.commonpath([absolute_path, self._root]) != self._root:
            return PathValidation.reject("path is outside of the sandbox root")

        relative_path = os.path.relpath(absolute_path, self._root)

        if relative_path == os.curdir:
            relative_path = ""

        return PathValidation.accept(absolute_path, relative_path)

    def is_confined(self, absolute_path: str, follow_final: bool = True) -> bool:
        """
        Check that a resolved path does not escape the sandbox through symlinks.

        If follow_final is disabled then only the parent directory is checked, which is
        appropriate for operations that act on a symlink itself rather than its target
        (lstat, unlink, rename).
        """
        target = absolute_path

        if not follow_final and absolute_path != self._root:
            target = os.path.dirname(absolute_path)

        real_root = os.path.realpath(self._root)
        real_target = os.path.realpath(target)

        return os.path.commonpath([real_target, real_root]) == real_root
