"""Tests for butter_install.core.errors module."""

import errno
import ssl
from pathlib import Path

import pytest

from butter_install.core.errors import (
    DependencyMissingError,
    ErrorCode,
    FilesystemError,
    IncompleteInstallError,
    NetworkError,
    OperationInProgressError,
    ProcessExitError,
    ProcessSpawnError,
    UserCancelledError,
    map_error_to_code,
)


def _chained(outer: Exception, cause: BaseException) -> Exception:
    """Raise ``outer`` from ``cause`` and return it with the chain set."""
    try:
        raise outer from cause
    except Exception as e:
        return e


class TestErrorCode:
    """Test ErrorCode values."""

    def test_stable_values(self):
        """Test the codes reported to the UI do not drift."""
        assert ErrorCode.UNKNOWN == 1000
        assert ErrorCode.DISK_FULL == 1101
        assert ErrorCode.NETWORK == 1201
        assert ErrorCode.HTTP_4XX == 1202
        assert ErrorCode.HTTP_5XX == 1203
        assert ErrorCode.RATE_LIMIT == 1205
        assert ErrorCode.PATCH_TOOL_FAILED == 1401
        assert ErrorCode.DEPENDENCY_MISSING == 1402
        assert ErrorCode.OP_IN_PROGRESS == 1601


class TestMapErrorToCode:
    """Test map_error_to_code."""

    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (None, ErrorCode.NETWORK),
            (404, ErrorCode.HTTP_4XX),
            (403, ErrorCode.HTTP_4XX),
            (429, ErrorCode.RATE_LIMIT),
            (500, ErrorCode.HTTP_5XX),
            (503, ErrorCode.HTTP_5XX),
        ],
    )
    def test_network_status(self, status, code):
        """Test HTTP statuses map to network codes."""
        assert map_error_to_code(NetworkError("boom", status=status)) is code

    def test_process_errors(self):
        """Test patch tool failures."""
        assert map_error_to_code(ProcessSpawnError("no tool")) is ErrorCode.PATCH_TOOL_FAILED
        assert (
            map_error_to_code(ProcessExitError("exit 2", exit_code=2))
            is ErrorCode.PATCH_TOOL_FAILED
        )
        assert (
            map_error_to_code(IncompleteInstallError("no client", path=Path("game")))
            is ErrorCode.PATCH_TOOL_FAILED
        )

    def test_spawn_error_wins_over_os_cause(self):
        """Test a spawn failure caused by ENOENT still reports the tool."""
        cause = FileNotFoundError(errno.ENOENT, "missing")
        error = _chained(ProcessSpawnError("no tool"), cause)
        assert map_error_to_code(error) is ErrorCode.PATCH_TOOL_FAILED

    def test_dependency_and_in_progress(self):
        """Test direct kinds."""
        assert (
            map_error_to_code(DependencyMissingError("java is not installed", dependency="runtime"))
            is ErrorCode.DEPENDENCY_MISSING
        )
        assert map_error_to_code(OperationInProgressError("busy")) is ErrorCode.OP_IN_PROGRESS

    @pytest.mark.parametrize(
        ("err", "code"),
        [
            (errno.ENOSPC, ErrorCode.DISK_FULL),
            (errno.EACCES, ErrorCode.PERMISSION),
            (errno.EPERM, ErrorCode.PERMISSION),
            (errno.EBUSY, ErrorCode.FILE_IN_USE),
            (errno.ENAMETOOLONG, ErrorCode.PATH_TOO_LONG),
            (errno.ENOENT, ErrorCode.NOT_FOUND),
            (errno.EIO, ErrorCode.IO_ERROR),
        ],
    )
    def test_filesystem_cause(self, err, code):
        """Test OS causes under a FilesystemError."""
        error = _chained(FilesystemError("write failed"), OSError(err, "os error"))
        assert map_error_to_code(error) is code

    def test_filesystem_without_errno(self):
        """Test a bare filesystem error falls back to IO_ERROR."""
        assert map_error_to_code(FilesystemError("write failed")) is ErrorCode.IO_ERROR

    def test_tls_cause(self):
        """Test certificate failures under a network error."""
        error = _chained(NetworkError("transfer failed"), ssl.SSLError("bad cert"))
        assert map_error_to_code(error) is ErrorCode.TLS_CERT

    def test_unknown(self):
        """Test unrelated exceptions."""
        assert map_error_to_code(ValueError("nope")) is ErrorCode.UNKNOWN
        assert map_error_to_code(UserCancelledError()) is ErrorCode.UNKNOWN

    def test_user_cancelled_is_not_install_error(self):
        """Test cancellation sits outside the failure hierarchy."""
        from butter_install.core.errors import InstallError

        assert not isinstance(UserCancelledError(), InstallError)
        assert str(UserCancelledError()) == "user_cancelled"
