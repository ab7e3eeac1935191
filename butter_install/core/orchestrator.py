"""Install orchestration: classify, download, patch, finalize.

An install moves through these states::

    idle -> preparing -> ensuring_runtime -> ensuring_tool
         -> downloading -> patching -> finalizing -> done

``cancelled`` is only reachable from ``downloading`` and ``failed`` from
any state. An install directory that is already current goes straight
from ``preparing`` to ``done``.

There is no journal or lock around the manifest. Every call reconciles
the manifest against the binaries on disk, so a crash between a
successful patch and the manifest write is healed by the next call,
which sees either a missing manifest or missing binaries and patches
again. The manifest of the previous build is never cleared up front; it
is only replaced once a new patch has succeeded.
"""

from __future__ import annotations

import asyncio
import stat
import sys
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import structlog

from butter_install.core.config import DownloadConfig
from butter_install.core.dependencies import Ensurer
from butter_install.core.download import DownloadManager
from butter_install.core.errors import (
    DependencyMissingError,
    ErrorCode,
    IncompleteInstallError,
    OperationInProgressError,
    UserCancelledError,
    map_error_to_code,
)
from butter_install.core.events import (
    EventSink,
    InstallCancelled,
    InstallEvent,
    InstallFailed,
    InstallFinished,
    InstallStarted,
)
from butter_install.core.manifest import read_manifest, write_manifest
from butter_install.core.patcher import PatchApplier
from butter_install.core.paths import (
    has_expected_binaries,
    migrate_legacy_layout_if_needed,
    resolve_client_path,
    resolve_install_dir,
    retire_latest_alias_if_stale,
)
from butter_install.core.types import InstallKey, Version

logger = structlog.get_logger()


class InstallState(StrEnum):
    """State of one install operation."""
    IDLE = "idle"
    PREPARING = "preparing"
    ENSURING_RUNTIME = "ensuring_runtime"
    ENSURING_TOOL = "ensuring_tool"
    DOWNLOADING = "downloading"
    PATCHING = "patching"
    FINALIZING = "finalizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({InstallState.DONE, InstallState.CANCELLED, InstallState.FAILED})

_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.IDLE: frozenset({InstallState.PREPARING}),
    InstallState.PREPARING: frozenset({InstallState.ENSURING_RUNTIME, InstallState.DONE}),
    InstallState.ENSURING_RUNTIME: frozenset({InstallState.ENSURING_TOOL}),
    InstallState.ENSURING_TOOL: frozenset({InstallState.DOWNLOADING}),
    InstallState.DOWNLOADING: frozenset({InstallState.PATCHING, InstallState.CANCELLED}),
    InstallState.PATCHING: frozenset({InstallState.FINALIZING}),
    InstallState.FINALIZING: frozenset({InstallState.DONE}),
}


def can_transition(current: InstallState, new: InstallState) -> bool:
    """Whether ``current -> new`` is a legal transition."""
    if new is InstallState.FAILED:
        return current not in TERMINAL_STATES
    return new in _TRANSITIONS.get(current, frozenset())


class Classification(StrEnum):
    """What an install directory needs before it holds the target build."""
    ALREADY_CURRENT = "already_current"
    STALE_MANIFEST_MISSING_BINARIES = "stale_manifest_missing_binaries"
    NEEDS_PATCH = "needs_patch"


def classify_install(install_dir: Path, version: Version) -> Classification:
    """Cross-check the manifest and the binaries of an install directory.

    Args:
        install_dir: Resolved install directory
        version: Target version

    Returns:
        Classification of the directory
    """
    manifest = read_manifest(install_dir)
    if manifest is None or not manifest.matches(version):
        return Classification.NEEDS_PATCH
    if has_expected_binaries(install_dir):
        return Classification.ALREADY_CURRENT
    return Classification.STALE_MANIFEST_MISSING_BINARIES


def ensure_client_executable(install_dir: Path) -> bool:
    """Set the execute bits on the client binary where that matters.

    Returns:
        True if the permissions were changed
    """
    if sys.platform == "win32":
        return False
    client = resolve_client_path(install_dir)
    try:
        if not client.is_file() or client.stat().st_mode & stat.S_IXUSR:
            return False
        client.chmod(0o755)
    except OSError as e:
        logger.warning("client_chmod_failed", path=str(client), error=str(e))
        return False
    return True


@dataclass
class InstallResult:
    """Terminal outcome of ``install_version``.

    Attributes:
        state: ``done``, ``cancelled`` or ``failed``
        version: Target version, marked installed on success
        install_dir: Resolved install directory, if resolution got that far
        classification: Directory classification, if computed
        error_code: Code reported to the sink on failure
    """

    state: InstallState
    version: Version
    install_dir: Path | None = None
    classification: Classification | None = None
    error_code: ErrorCode | None = None


class InstallOrchestrator:
    """Sequences resolution, download and patching for install requests.

    Distinct install keys are independent and may run concurrently. A
    second request for a key that is still running fails with
    ``OP_IN_PROGRESS``.

    Args:
        ensure_runtime: Ensurer for the game runtime
        ensure_tool: Ensurer for the patch tool
        sink: Receives lifecycle and progress events
        downloads: Download manager; created from ``config`` if omitted
        patcher: Patch applier
        config: Download configuration
    """

    def __init__(
        self,
        ensure_runtime: Ensurer,
        ensure_tool: Ensurer,
        sink: EventSink | None = None,
        downloads: DownloadManager | None = None,
        patcher: PatchApplier | None = None,
        config: DownloadConfig | None = None,
    ):
        self.config = config or (downloads.config if downloads else DownloadConfig())
        self.ensure_runtime = ensure_runtime
        self.ensure_tool = ensure_tool
        self.sink = sink
        self.downloads = downloads or DownloadManager(self.config)
        self.patcher = patcher or PatchApplier()
        self._states: dict[InstallKey, InstallState] = {}

    def state_of(self, root: Path, version: Version) -> InstallState:
        """Current or last state of the install key for ``version``."""
        return self._states.get(InstallKey.for_version(root, version), InstallState.IDLE)

    def cancel(self, root: Path, version: Version) -> bool:
        """Cancel the bundle download of a running install.

        Returns:
            True if a download was cancelled; False when none is running,
            including while the patch is being applied
        """
        return self.downloads.cancel(root, version)

    async def aclose(self) -> None:
        """Release the HTTP client."""
        await self.downloads.aclose()

    def _emit(self, event: InstallEvent) -> None:
        if self.sink is not None:
            self.sink(event)

    def _transition(self, key: InstallKey, new: InstallState) -> None:
        current = self._states.get(key, InstallState.IDLE)
        if not can_transition(current, new):
            raise RuntimeError(f"Illegal install transition {current} -> {new} for {key}")
        self._states[key] = new
        logger.debug("install_state", state=new.value)

    def _is_running(self, key: InstallKey) -> bool:
        state = self._states.get(key, InstallState.IDLE)
        return state is not InstallState.IDLE and state not in TERMINAL_STATES

    async def install_version(self, root: Path, version: Version) -> InstallResult:
        """Install ``version`` under ``root``.

        Emits ``install-started``, progress events, and exactly one of
        ``install-finished``, ``install-cancelled`` or ``install-error``.

        Args:
            root: Install root
            version: Target version

        Returns:
            Terminal outcome
        """
        root = Path(root)
        key = InstallKey.for_version(root, version)

        if self._is_running(key):
            error = OperationInProgressError(f"Install already in progress for {key}")
            code = map_error_to_code(error)
            logger.warning("install_rejected", key=str(key), error=str(error))
            self._emit(InstallFailed(code=code))
            return InstallResult(state=InstallState.FAILED, version=version, error_code=code)

        self._states[key] = InstallState.IDLE
        result = InstallResult(state=InstallState.IDLE, version=version)

        with structlog.contextvars.bound_contextvars(
            channel=version.channel.value,
            build_index=version.build_index,
        ):
            self._emit(InstallStarted(channel=version.channel, build_index=version.build_index))
            try:
                await self._run(key, root, version, result)
            except UserCancelledError:
                self._transition(key, InstallState.CANCELLED)
                result.state = InstallState.CANCELLED
                logger.info("install_cancelled", key=str(key))
                self._emit(InstallCancelled(channel=version.channel, build_index=version.build_index))
            except asyncio.CancelledError:
                failed_in = self._states.get(key, InstallState.IDLE)
                self._states[key] = InstallState.FAILED
                result.state = InstallState.FAILED
                result.error_code = ErrorCode.UNKNOWN
                logger.warning("install_aborted", key=str(key), state=failed_in.value)
                self._emit(InstallFailed(code=result.error_code))
                raise
            except Exception as e:
                failed_in = self._states.get(key, InstallState.IDLE)
                self._transition(key, InstallState.FAILED)
                result.state = InstallState.FAILED
                result.error_code = map_error_to_code(e)
                logger.error(
                    "install_failed",
                    key=str(key),
                    state=failed_in.value,
                    code=int(result.error_code),
                    error=str(e),
                    exc_info=True,
                )
                self._emit(InstallFailed(code=result.error_code))

        return result

    async def _run(
        self,
        key: InstallKey,
        root: Path,
        version: Version,
        result: InstallResult,
    ) -> None:
        self._transition(key, InstallState.PREPARING)
        migrate_legacy_layout_if_needed(root, version.channel)
        retire_latest_alias_if_stale(root, version)

        install_dir = resolve_install_dir(root, version)
        classification = classify_install(install_dir, version)
        result.install_dir = install_dir
        result.classification = classification
        logger.info(
            "install_classified",
            install_dir=str(install_dir),
            classification=classification.value,
        )

        if classification is Classification.ALREADY_CURRENT:
            self._finish(key, version, result)
            return

        self._transition(key, InstallState.ENSURING_RUNTIME)
        runtime = await self.ensure_runtime()
        if not runtime.ok:
            raise DependencyMissingError(runtime.error or "runtime unavailable", dependency="runtime")
        logger.debug("runtime_ready", path=str(runtime.path))

        self._transition(key, InstallState.ENSURING_TOOL)
        tool = await self.ensure_tool()
        if not tool.ok or tool.path is None:
            raise DependencyMissingError(tool.error or "patch tool unavailable", dependency="patch-tool")

        self._transition(key, InstallState.DOWNLOADING)
        bundle = await self.downloads.start_download(root, version, self._emit)

        self._transition(key, InstallState.PATCHING)
        try:
            await self.patcher.apply(bundle, tool.path, install_dir, self._emit)
            if not has_expected_binaries(install_dir):
                raise IncompleteInstallError(
                    f"Patch produced an incomplete install in {install_dir}",
                    path=install_dir,
                )

            self._transition(key, InstallState.FINALIZING)
            write_manifest(install_dir, version)
            ensure_client_executable(install_dir)
        except Exception:
            if not self.config.keep_failed_bundles:
                bundle.unlink(missing_ok=True)
            raise
        bundle.unlink(missing_ok=True)

        self._finish(key, version, result)

    def _finish(self, key: InstallKey, version: Version, result: InstallResult) -> None:
        self._transition(key, InstallState.DONE)
        installed = version.model_copy(update={"installed": True})
        result.state = InstallState.DONE
        result.version = installed
        logger.info("install_finished", key=str(key))
        self._emit(InstallFinished(version=installed))
