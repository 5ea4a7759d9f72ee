"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
from typing import Optional

from sftpjail.logger import log


@dataclass
class StorageConfig:
    """Configuration variables related to user records and stored files."""

    users_file: str = os.path.expanduser("~/.sftpjail/users.json")

    # 0 disables the limit
    max_file_size: int = 100 * 1024 * 1024  # 100 MB

    @property
    def file_size_limit(self) -> Optional[int]:
        return self.max_file_size if self.max_file_size > 0 else None

    @staticmethod
    def load(section: SectionProxy) -> StorageConfig:
        """Load overridden variables from a section within a config file."""
        config = StorageConfig()

        config.users_file = os.path.expanduser(
            section.get("users_file", fallback=config.users_file)
        )
        config.max_file_size = section.getint(
            "max_file_size", fallback=config.max_file_size
        )

        return config


@dataclass
class SessionConfig:
    """Configuration variables related to the handling of session requests."""

    readdir_batch_size: int = 10
    max_read_size: int = 256 * 1024

    @staticmethod
    def load(section: SectionProxy) -> SessionConfig:
        """Load overridden variables from a section within a config file."""
        config = SessionConfig()

        config.readdir_batch_size = section.getint(
            "readdir_batch_size", fallback=config.readdir_batch_size
        )
        config.max_read_size = section.getint(
            "max_read_size", fallback=config.max_read_size
        )

        if config.readdir_batch_size < 1 or config.max_read_size < 1:
            raise ValueError("readdir_batch_size and max_read_size must be positive")

        return config


@dataclass
class QuotaConfig:
    """Configuration variables related to quota accounting."""

    recompute_on_login: bool = True

    @staticmethod
    def load(section: SectionProxy) -> QuotaConfig:
        """Load overridden variables from a section within a config file."""
        config = QuotaConfig()

        config.recompute_on_login = section.getboolean(
            "recompute_on_login", fallback=config.recompute_on_login
        )

        return config


@dataclass
class ServerConfig:
    """Configuration variables related to the RPC server."""

    endpoint: str = "tcp://127.0.0.1:7022"
    workers: int = 4

    @staticmethod
    def load(section: SectionProxy) -> ServerConfig:
        """Load overridden variables from a section within a config file."""
        config = ServerConfig()

        config.endpoint = section.get("endpoint", fallback=config.endpoint)
        config.workers = section.getint("workers", fallback=config.workers)

        return config


@dataclass
class Config:
    """Configuration variables."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "storage" in parser:
                config.storage = StorageConfig.load(parser["storage"])
            if "session" in parser:
                config.session = SessionConfig.load(parser["session"])
            if "quota" in parser:
                config.quota = QuotaConfig.load(parser["quota"])
            if "server" in parser:
                config.server = ServerConfig.load(parser["server"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
