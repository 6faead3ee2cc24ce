"""
Error taxonomy and process exit codes for archive-uploader.

Every failure that reaches the command line is a ``CliError``. Each command
pairs its result with one ``ExitCode`` so scripts wrapping the tool can tell
the failure categories apart.
"""

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    SUCCESS = 0
    HASH = 1
    # 2 is what argparse uses for usage errors
    SET_AUTH_TOKEN = 3
    API = 4
    UPLOAD = 5
    SERIALIZATION = 6


class CliError(Exception):
    """Base class for every error the CLI reports."""


class InputError(CliError):
    """Malformed user input: a bad URI, an unreadable progress log, bad config."""


class AuthError(CliError):
    def __init__(self, message: str = "API auth error: the server rejected the token. Run 'login' again.") -> None:
        super().__init__(message)


class UnexpectedResponse(CliError):
    def __init__(self, status_code: int, detail: Optional[str] = None) -> None:
        self.status_code = status_code
        message = f"Unexpected response from server: {status_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RequestError(CliError):
    """The catalog could not be reached or the connection failed mid-request."""


class SerializationError(CliError):
    """Raised when a result or an outcome record cannot be written out."""


class UnsupportedSystemError(CliError):
    def __init__(self) -> None:
        super().__init__(
            "Cannot locate a home directory on this system. "
            "Set ARCHIVE_UPLOADER_HOME to choose where credentials are stored."
        )
