"""Install directory layout.

Layout under an install root::

    game/latest/                   latest release (alias)
    game/release/build-<n>/        retired release builds
    game/pre-release/build-<n>/    prerelease builds

Only one directory can hold the ``latest`` alias. When a newer release
becomes latest, the previous occupant is moved to its per-build
directory before the new build is installed.
"""

from __future__ import annotations

import re
import shutil
import sys
from pathlib import Path

import structlog

from butter_install.core.errors import FilesystemError
from butter_install.core.manifest import (
    MANIFEST_FILENAME,
    read_manifest,
    remove_manifest,
    write_manifest,
)
from butter_install.core.types import Channel, InstallManifest, Version

logger = structlog.get_logger()

BUILD_DIR_PREFIX = "build-"
LATEST_DIR_NAME = "latest"
CLIENT_DIR_NAME = "Client"
SERVER_DIR_NAME = "Server"
CLIENT_BINARY_NAME = "HytaleClient"
SERVER_JAR_NAME = "HytaleServer.jar"

_BUILD_DIR_RE = re.compile(r"^build-(\d+)$")


def game_root_dir(root: Path) -> Path:
    """Directory holding every install under ``root``."""
    return root / "game"


def latest_dir(root: Path) -> Path:
    """The ``latest`` alias directory."""
    return game_root_dir(root) / LATEST_DIR_NAME


def channel_dir(root: Path, channel: Channel) -> Path:
    """Directory holding the per-build directories of a channel."""
    return game_root_dir(root) / channel.dir_name


def build_dir(root: Path, channel: Channel, build_index: int) -> Path:
    """Stable per-build directory."""
    return channel_dir(root, channel) / f"{BUILD_DIR_PREFIX}{build_index}"


def parse_build_dir_name(name: str) -> int | None:
    """Extract the build index from a ``build-<n>`` directory name."""
    match = _BUILD_DIR_RE.match(name)
    if not match:
        return None
    index = int(match.group(1))
    return index if index > 0 else None


def resolve_install_dir(root: Path, version: Version) -> Path:
    """Resolve where ``version`` is installed under ``root``.

    The ``latest`` alias is only used for the latest release; every other
    build lives in its per-build directory.
    """
    if version.is_latest_release:
        return latest_dir(root)
    return build_dir(root, version.channel, version.build_index)


def resolve_existing_install_dir(root: Path, version: Version) -> Path:
    """Resolve the directory currently holding ``version``, if any.

    Prefers the direct location when it looks usable, then falls back to
    the ``latest`` alias when it still holds this release build (a
    release keeps living in ``latest`` until a newer one retires it).
    """
    direct = resolve_install_dir(root, version)
    manifest = read_manifest(direct)
    if manifest is not None and manifest.matches(version) and has_expected_binaries(direct):
        return direct

    if version.channel is Channel.RELEASE:
        alias = latest_dir(root)
        manifest = read_manifest(alias)
        if manifest is not None and manifest.matches(version) and has_expected_binaries(alias):
            return alias

    return direct


def _move_tree(src: Path, dst: Path) -> None:
    """Rename ``src`` to ``dst``, copying across devices when needed."""
    try:
        src.rename(dst)
    except OSError:
        if src.is_dir():
            shutil.copytree(src, dst)
            shutil.rmtree(src)
        else:
            shutil.copy2(src, dst)
            src.unlink()


def _is_legacy_channel_install(path: Path) -> bool:
    # Old layout installed directly into game/<channel>/Client + Server.
    return (path / CLIENT_DIR_NAME).exists() or (path / SERVER_DIR_NAME).exists()


def migrate_legacy_layout_if_needed(root: Path, channel: Channel) -> Path | None:
    """Move a legacy channel install into its per-build directory.

    Safe to call before every resolution: returns immediately unless the
    channel directory holds a legacy install with a readable manifest.

    Args:
        root: Install root
        channel: Channel to migrate

    Returns:
        The build directory the legacy install was moved to, or None
    """
    legacy_dir = channel_dir(root, channel)
    if not legacy_dir.is_dir() or not _is_legacy_channel_install(legacy_dir):
        return None

    legacy = read_manifest(legacy_dir)
    if legacy is None:
        return None

    target = build_dir(root, channel, legacy.build_index)
    logger.info(
        "legacy_layout_migration",
        channel=channel.value,
        build_index=legacy.build_index,
        target=str(target),
    )

    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Failed to create {target}: {e}", path=target) from e

    for entry in sorted(legacy_dir.iterdir()):
        if entry.name.startswith(BUILD_DIR_PREFIX) or entry.name == MANIFEST_FILENAME:
            continue
        destination = target / entry.name
        if destination.exists():
            continue
        try:
            _move_tree(entry, destination)
        except OSError as e:
            # Best-effort: a locked entry is left in the channel dir.
            logger.warning(
                "legacy_entry_move_failed",
                source=str(entry),
                destination=str(destination),
                error=str(e),
            )

    write_manifest(
        target,
        InstallManifest(
            channel=channel,
            build_index=legacy.build_index,
            build_name=legacy.build_name,
        ),
    )
    remove_manifest(legacy_dir)
    return target


def retire_latest_alias_if_stale(root: Path, incoming: Version) -> Path | None:
    """Free the ``latest`` alias before installing a newer latest release.

    When ``latest`` holds a different build, it is moved to that build's
    per-build directory. If that directory already exists the build is
    installed there already, so the stale alias is deleted instead.

    Args:
        root: Install root
        incoming: Version about to be installed

    Returns:
        The directory the old build was moved to, or None when nothing
        was moved

    Raises:
        FilesystemError: If the alias could not be moved or deleted
    """
    if not incoming.is_latest_release:
        return None

    alias = latest_dir(root)
    if not alias.exists():
        return None

    existing = read_manifest(alias)
    if existing is None or existing.build_index == incoming.build_index:
        return None

    target = build_dir(root, Channel.RELEASE, existing.build_index)
    logger.info(
        "latest_alias_retiring",
        old_build=existing.build_index,
        new_build=incoming.build_index,
        target=str(target),
    )

    if target.exists():
        logger.info("latest_alias_redundant", target=str(target))
        try:
            shutil.rmtree(alias)
        except OSError as e:
            raise FilesystemError(f"Failed to delete {alias}: {e}", path=alias) from e
        return None

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        _move_tree(alias, target)
    except OSError as e:
        raise FilesystemError(f"Failed to move {alias} to {target}: {e}", path=alias) from e

    return target


def _resolve_mac_app_binary(client_dir: Path) -> Path | None:
    try:
        apps = sorted(
            p for p in client_dir.iterdir()
            if p.is_dir() and p.suffix.lower() == ".app"
        )
    except OSError:
        return None

    # Prefer the expected bundle name, then any other bundle.
    apps.sort(key=lambda p: CLIENT_BINARY_NAME.lower() not in p.name.lower())
    for app in apps:
        macos_dir = app / "Contents" / "MacOS"
        direct = macos_dir / CLIENT_BINARY_NAME
        if direct.is_file():
            return direct
        try:
            files = sorted(p for p in macos_dir.iterdir() if p.is_file())
        except OSError:
            continue
        if files:
            return files[0]
    return None


def resolve_client_path(install_dir: Path) -> Path:
    """Locate the client binary of an install.

    Returns the expected default path when nothing matches, so callers
    can test it with ``exists()``.
    """
    client_dir = install_dir / CLIENT_DIR_NAME
    is_windows = sys.platform == "win32"

    if sys.platform == "darwin":
        mac_binary = _resolve_mac_app_binary(client_dir)
        if mac_binary is not None:
            return mac_binary

    if is_windows:
        candidates = [f"{CLIENT_BINARY_NAME}.exe", CLIENT_BINARY_NAME]
    else:
        candidates = [
            CLIENT_BINARY_NAME,
            f"{CLIENT_BINARY_NAME}.x86_64",
            f"{CLIENT_BINARY_NAME}.bin",
            CLIENT_BINARY_NAME.lower(),
        ]

    for name in candidates:
        path = client_dir / name
        if path.is_file():
            return path

    try:
        for entry in sorted(client_dir.iterdir()):
            if entry.is_file() and entry.name.lower().startswith(CLIENT_BINARY_NAME.lower()):
                return entry
    except OSError:
        pass

    return client_dir / (f"{CLIENT_BINARY_NAME}.exe" if is_windows else CLIENT_BINARY_NAME)


def resolve_server_path(install_dir: Path) -> Path:
    """Locate the server jar of an install.

    Returns the expected default path when nothing matches.
    """
    server_dir = install_dir / SERVER_DIR_NAME
    primary = server_dir / SERVER_JAR_NAME
    if primary.is_file():
        return primary

    try:
        jars = sorted(
            p for p in server_dir.iterdir()
            if p.is_file() and p.suffix.lower() == ".jar"
        )
    except OSError:
        jars = []

    for jar in jars:
        if jar.name.lower().startswith("hytaleserver"):
            return jar
    if len(jars) == 1:
        return jars[0]

    return primary


def has_expected_binaries(install_dir: Path) -> bool:
    """Whether an install directory holds both the client and the server."""
    return resolve_client_path(install_dir).exists() and resolve_server_path(install_dir).exists()
