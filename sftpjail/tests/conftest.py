"""Fixtures shared by the tests of the session core."""

import pytest

from sftpjail.config import Config
from sftpjail.session import Session
from sftpjail.users import User, UserStore


@pytest.fixture
def store(tmp_path):
    return UserStore(str(tmp_path / "users.json"))


@pytest.fixture
def alice(store, tmp_path):
    """Regular user with a 1000 byte quota."""
    user = User.create("alice", str(tmp_path / "home" / "alice"))
    user.quota.max_bytes = 1000
    store.put(user)

    return store.get("alice")


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def session(store, alice, config):
    with Session(store, alice.username, config) as s:
        yield s
