"""Cancelable streaming download of patch bundles.

Each download is tracked in a session registry keyed by install key
(root, channel, build index). Callers must not start a second download
for a key while one is running; the registry holds at most one session
per key and does not guard against that misuse.

Cancellation is the only interruption point of an install: cancelling a
session aborts the transfer and removes the partial bundle. Downloads
are never resumed, a new attempt always starts from zero.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from butter_install.core.config import DownloadConfig
from butter_install.core.errors import FilesystemError, NetworkError, UserCancelledError
from butter_install.core.events import (
    INDETERMINATE,
    InstallProgress,
    Phase,
    ProgressCallback,
    percent_of,
)
from butter_install.core.types import InstallKey, Version

logger = structlog.get_logger()


@dataclass
class DownloadSession:
    """An in-flight bundle download.

    Attributes:
        key: Install key owning the session
        temp_path: Partial bundle file
        task: Task streaming the response body
        cancelled: Set when the user cancelled the session
    """

    key: InstallKey
    temp_path: Path
    task: asyncio.Task[None] | None = None
    cancelled: bool = False


def safe_url(url: str) -> str:
    """Strip the query string so signed tokens stay out of the logs."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length > 0 else None


class DownloadManager:
    """Streams patch bundles to temp files, one session per install key.

    Args:
        config: Download configuration
        client: HTTP client to use; one is created lazily when omitted
    """

    def __init__(
        self,
        config: DownloadConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or DownloadConfig()
        self._client = client
        self._owns_client = client is None
        self._sessions: dict[InstallKey, DownloadSession] = {}

    @property
    def async_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DownloadManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def bundle_path(self, root: Path, version: Version) -> Path:
        """Temp bundle path used for ``version`` under ``root``."""
        key = InstallKey.for_version(root, version)
        return Path(root) / key.bundle_filename

    def get_session(self, root: Path, version: Version) -> DownloadSession | None:
        """Return the in-flight session for the install key, if any."""
        return self._sessions.get(InstallKey.for_version(root, version))

    def has_downloads_in_flight(self) -> bool:
        """Whether any download session is active."""
        return bool(self._sessions)

    async def start_download(
        self,
        root: Path,
        version: Version,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Download the bundle of ``version`` to its temp file.

        Args:
            root: Install root; the temp bundle is written here
            version: Version whose ``url`` is fetched
            on_progress: Receives throttled ``bundle-download`` progress

        Returns:
            Path of the completed bundle

        Raises:
            UserCancelledError: If the session was cancelled
            NetworkError: On a non-success status or transport failure
            FilesystemError: If the bundle could not be written
        """
        key = InstallKey.for_version(root, version)
        temp_path = Path(root) / key.bundle_filename
        session = DownloadSession(key=key, temp_path=temp_path)
        self._sessions[key] = session

        logger.info(
            "bundle_download_started",
            key=str(key),
            url=safe_url(version.url),
            path=str(temp_path),
        )
        started = time.monotonic()

        session.task = asyncio.ensure_future(
            self._stream(version.url, temp_path, on_progress)
        )
        try:
            await session.task
        except asyncio.CancelledError:
            temp_path.unlink(missing_ok=True)
            if session.cancelled:
                logger.info("bundle_download_cancelled", key=str(key))
                raise UserCancelledError() from None
            raise
        except NetworkError as e:
            logger.error(
                "bundle_download_failed",
                key=str(key),
                url=safe_url(version.url),
                status=e.status,
                error=str(e),
            )
            self._discard_partial(temp_path)
            raise
        except OSError as e:
            self._discard_partial(temp_path)
            raise FilesystemError(
                f"Failed to write bundle {temp_path}: {e}", path=temp_path
            ) from e
        finally:
            if self._sessions.get(key) is session:
                del self._sessions[key]

        if session.cancelled:
            # Cancelled after the body completed but before we resumed.
            temp_path.unlink(missing_ok=True)
            logger.info("bundle_download_cancelled", key=str(key))
            raise UserCancelledError()

        size = temp_path.stat().st_size
        logger.info(
            "bundle_download_finished",
            key=str(key),
            size=size,
            elapsed=round(time.monotonic() - started, 3),
        )
        digest = await asyncio.to_thread(sha256_file, temp_path)
        logger.debug("bundle_sha256", key=str(key), sha256=digest)
        return temp_path

    async def _stream(
        self,
        url: str,
        temp_path: Path,
        on_progress: ProgressCallback | None,
    ) -> None:
        def emit(percent: int, current: int, total: int | None) -> None:
            if on_progress is not None:
                on_progress(
                    InstallProgress(
                        phase=Phase.BUNDLE_DOWNLOAD,
                        percent=percent,
                        current=current,
                        total=total,
                    )
                )

        try:
            async with self.async_client.stream("GET", url) as response:
                if not response.is_success:
                    raise NetworkError(
                        f"HTTP {response.status_code} fetching bundle",
                        status=response.status_code,
                    )

                total = _content_length(response)
                emit(0 if total else INDETERMINATE, 0, total)

                temp_path.parent.mkdir(parents=True, exist_ok=True)
                last_emit = time.monotonic()
                with open(temp_path, "wb") as f:
                    async for chunk in response.aiter_bytes(self.config.chunk_size):
                        f.write(chunk)
                        now = time.monotonic()
                        if now - last_emit >= self.config.progress_interval:
                            last_emit = now
                            # Raw byte count, comparable to content-length.
                            received = response.num_bytes_downloaded
                            emit(percent_of(received, total), received, total)

                received = response.num_bytes_downloaded
                emit(100 if total else INDETERMINATE, received, total)
        except httpx.HTTPError as e:
            raise NetworkError(f"Bundle transfer failed: {e}") from e

    def _discard_partial(self, temp_path: Path) -> None:
        if self.config.keep_failed_bundles:
            logger.info("bundle_kept_after_failure", path=str(temp_path))
            return
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("partial_bundle_unlink_failed", path=str(temp_path), error=str(e))

    def cancel(self, root: Path, version: Version) -> bool:
        """Cancel the in-flight download for the install key.

        Args:
            root: Install root
            version: Version being downloaded

        Returns:
            True if a session existed and was cancelled
        """
        session = self._sessions.pop(InstallKey.for_version(root, version), None)
        if session is None:
            return False
        self._abort(session)
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight download.

        Returns:
            Number of sessions cancelled
        """
        sessions = list(self._sessions.values())
        # Clear first so concurrent checks see no downloads.
        self._sessions.clear()
        for session in sessions:
            self._abort(session)
        return len(sessions)

    def _abort(self, session: DownloadSession) -> None:
        session.cancelled = True
        if session.task is not None:
            session.task.cancel()
        try:
            session.temp_path.unlink(missing_ok=True)
        except OSError as e:
            # Still open on some platforms; start_download removes it on unwind.
            logger.debug("partial_bundle_unlink_deferred", path=str(session.temp_path), error=str(e))
        logger.info("bundle_download_cancel_requested", key=str(session.key))
