"""
Module implementing the command-line interface and invoking the main logic of sftpjail.

sftpjail is the core of an SFTP server. A protocol front-end terminates SSH connections,
authenticates users and decodes SFTP packets, and forwards every request to sftpjail
over a local RPC socket. sftpjail executes the requests against the file system, with
each user confined to their own root directory and subject to their capabilities and
storage quota.
"""

import os
import signal
import sys
from typing import List, NoReturn, Optional

import sftpjail.constants as constants
from sftpjail.config import Config
import sftpjail.logger as logger
from sftpjail.logger import log
import sftpjail.rpc as rpc
from sftpjail.session import SessionService
from sftpjail.users import UserStore
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Serve sessions with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    logger.configure(args.debug)

    # Load configuration, with command-line arguments taking precedence.
    config = Config.load(os.path.expanduser(args.config))

    endpoint = args.endpoint or config.server.endpoint
    workers = args.workers or config.server.workers

    try:
        store = UserStore(config.storage.users_file)
        service = SessionService(store, config)

        rpc.Server(service, token=args.token, worker_count=workers).serve(endpoint)
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to serve sessions: {e}")
        exit_code = constants.SFTPJAIL_ERROR_CODE

    sys.exit(exit_code)
