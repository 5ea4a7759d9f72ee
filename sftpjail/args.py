"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from sftpjail.constants import PROTOCOL_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    config: str

    endpoint: Optional[str]
    workers: Optional[int]
    token: Optional[str]

    debug: bool

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Serve confined SFTP sessions to a protocol front-end.",
            usage="sftpjail [option...]",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.sftpjail/config)",
            default="~/.sftpjail/config",
        )

        # Overrides of the [server] section of the config file
        parser.add_argument(
            "--endpoint",
            type=str,
            help="endpoint to serve on, for example tcp://127.0.0.1:7022",
        )
        parser.add_argument(
            "--workers",
            type=cls._parse_positive,
            help="number of threads handling requests",
        )

        # Shared secret that the front-end has to present
        parser.add_argument(
            "--token", type=str, help="token that front-ends have to authenticate with"
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        return parser

    @staticmethod
    def _parse_positive(arg: str) -> int:
        try:
            val = int(arg)
        except ValueError:
            val = 0

        if val < 1:
            raise argparse.ArgumentTypeError("expected number > 0")

        return val
