"""Module containing utilities for logging, along with the package logger."""

import logging
from typing import Any


def _get_logger(name: str = "sftpjail") -> logging.Logger:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )

    logger = logging.getLogger(name)
    logger.addHandler(handler)

    return logger


def configure(debug: bool) -> None:
    """Log everything including individual requests in debug mode, else from INFO."""
    log.setLevel(logging.DEBUG if debug else logging.INFO)


def summarize(obj: Any, max_length: int = 255) -> str:
    """
    Return a stringified representation of the object up to the given length.

    Client-provided values like paths and payloads go through this before they end up
    in a log line. Binary data is shown escaped.
    """
    if isinstance(obj, (bytes, bytearray)):
        text = repr(obj)
    else:
        text = str(obj)

    if len(text) > max_length:
        text = text[: max_length - 3] + "..."

    return text


# Package logger
log = _get_logger()
