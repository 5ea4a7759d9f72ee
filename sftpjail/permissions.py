"""
Module that decides whether a user may perform an operation.

Both checks are pure lookups against the user record and have no side effects. The
quota check is advisory: usage is recomputed from disk when a session starts and
afterwards bumped by the growth of a file after every successful write. A crash between
a write being admitted and its usage being persisted, concurrent writes to one file
through different handles, and deletions or truncations all make the counter drift
until the next recomputation. Writes are admitted based on the counter as it is at the
time of the check.
"""

from enum import Enum

from sftpjail.users import User


class Action(Enum):
    """Operations guarded by a capability, valued by their Capabilities field."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    CREATE_DIR = "create_dir"
    RENAME = "rename"


def allow(user: User, action: Action) -> bool:
    """Check if the user has the capability for the action."""
    return getattr(user.capabilities, action.value) is True


def allow_write(user: User, additional_bytes: int) -> bool:
    """Check if writing the given number of bytes keeps the user within their quota."""
    quota = user.quota

    if quota.unlimited:
        return True

    assert quota.max_bytes is not None

    return quota.used_bytes + additional_bytes <= quota.max_bytes
