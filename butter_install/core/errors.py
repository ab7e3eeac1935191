"""Install error kinds and their stable error codes.

Only an ``ErrorCode`` crosses the notification boundary when an install
fails. Messages, stderr excerpts and tracebacks stay in the log.
"""

from __future__ import annotations

import errno
import ssl
from enum import IntEnum
from pathlib import Path


class ErrorCode(IntEnum):
    """Stable error codes reported to the UI."""

    UNKNOWN = 1000

    # Filesystem
    DISK_FULL = 1101
    PERMISSION = 1102
    FILE_IN_USE = 1103
    PATH_TOO_LONG = 1105
    NOT_FOUND = 1106
    IO_ERROR = 1107

    # Network/HTTP
    NETWORK = 1201
    HTTP_4XX = 1202
    HTTP_5XX = 1203
    TLS_CERT = 1204
    RATE_LIMIT = 1205

    # Integrity
    HASH_MISMATCH = 1301

    # Tooling
    PATCH_TOOL_FAILED = 1401
    DEPENDENCY_MISSING = 1402

    OP_IN_PROGRESS = 1601


class InstallError(Exception):
    """Base class for failures reported through ``install-error``."""


class NetworkError(InstallError):
    """Raised when the bundle could not be fetched.

    Attributes:
        status: HTTP status code, or None for transport-level failures
    """

    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


class ProcessSpawnError(InstallError):
    """Raised when the patch tool process could not be started."""


class ProcessExitError(InstallError):
    """Raised when the patch tool exits with a non-zero code.

    Attributes:
        exit_code: Process exit code
        stderr_tail: Last bytes of standard error, decoded
    """

    def __init__(self, message: str, *, exit_code: int, stderr_tail: str = ""):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(message)


class IncompleteInstallError(InstallError):
    """Raised when the patch tool succeeded but the client or server is missing."""

    def __init__(self, message: str, *, path: Path):
        self.path = path
        super().__init__(message)


class DependencyMissingError(InstallError):
    """Raised when the runtime or the patch tool is unavailable.

    The message is the ensurer's error text, unchanged.
    """

    def __init__(self, message: str, *, dependency: str):
        self.dependency = dependency
        super().__init__(message)


class FilesystemError(InstallError):
    """Raised when an install directory operation fails."""

    def __init__(self, message: str, *, path: Path | None = None):
        self.path = path
        super().__init__(message)


class OperationInProgressError(InstallError):
    """Raised when an install for the same key is already running."""


class UserCancelledError(Exception):
    """The user cancelled the bundle download.

    Not an ``InstallError``: cancellation is an outcome, not a failure.
    """

    def __init__(self, message: str = "user_cancelled"):
        super().__init__(message)


_ERRNO_CODES: dict[int, ErrorCode] = {
    errno.ENOSPC: ErrorCode.DISK_FULL,
    errno.EACCES: ErrorCode.PERMISSION,
    errno.EPERM: ErrorCode.PERMISSION,
    errno.EBUSY: ErrorCode.FILE_IN_USE,
    errno.ENAMETOOLONG: ErrorCode.PATH_TOO_LONG,
    errno.ENOENT: ErrorCode.NOT_FOUND,
    errno.EIO: ErrorCode.IO_ERROR,
}

_MAX_CAUSE_DEPTH = 5


def _cause_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and len(chain) < _MAX_CAUSE_DEPTH:
        chain.append(current)
        next_exc = current.__cause__ or current.__context__
        if next_exc is current:
            break
        current = next_exc
    return chain


def _code_for_status(status: int) -> ErrorCode:
    if status == 429:
        return ErrorCode.RATE_LIMIT
    if status >= 500:
        return ErrorCode.HTTP_5XX
    if status >= 400:
        return ErrorCode.HTTP_4XX
    return ErrorCode.NETWORK


_DIRECT_CODES: tuple[tuple[type[InstallError], ErrorCode], ...] = (
    (ProcessSpawnError, ErrorCode.PATCH_TOOL_FAILED),
    (ProcessExitError, ErrorCode.PATCH_TOOL_FAILED),
    (IncompleteInstallError, ErrorCode.PATCH_TOOL_FAILED),
    (DependencyMissingError, ErrorCode.DEPENDENCY_MISSING),
    (OperationInProgressError, ErrorCode.OP_IN_PROGRESS),
)


def map_error_to_code(exc: BaseException) -> ErrorCode:
    """Map an exception to a stable error code.

    Patch tool and dependency failures map directly. For everything
    else the OS-level cause wins over the wrapper, so a
    ``FilesystemError`` caused by a full disk reports ``DISK_FULL``.

    Args:
        exc: Exception raised by an install step

    Returns:
        Error code for the notification sink
    """
    for kind, code in _DIRECT_CODES:
        if isinstance(exc, kind):
            return code

    chain = _cause_chain(exc)

    for e in chain:
        if isinstance(e, ssl.SSLError):
            return ErrorCode.TLS_CERT
        if isinstance(e, OSError) and e.errno in _ERRNO_CODES:
            return _ERRNO_CODES[e.errno]

    for e in chain:
        if isinstance(e, NetworkError):
            if e.status is None:
                return ErrorCode.NETWORK
            return _code_for_status(e.status)
        if isinstance(e, (FilesystemError, OSError)):
            return ErrorCode.IO_ERROR

    return ErrorCode.UNKNOWN
