"""Module defining various global constants."""

# sftpjail version
VERSION = "1.0.0"

# Version of the request bridge between a protocol front-end and the session core.
# The major version must be identical on both sides.
PROTOCOL_VERSION = "1.0.0"

# Handles are 4-byte big-endian counters.
HANDLE_SIZE = 4
MAX_HANDLES = 2 ** (8 * HANDLE_SIZE)

# Exit code for when the server itself fails to start.
SFTPJAIL_ERROR_CODE = 254
