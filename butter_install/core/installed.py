"""Inventory of builds installed under a root."""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from butter_install.core.errors import FilesystemError
from butter_install.core.manifest import read_manifest
from butter_install.core.paths import (
    build_dir,
    channel_dir,
    latest_dir,
    migrate_legacy_layout_if_needed,
    parse_build_dir_name,
    resolve_client_path,
)
from butter_install.core.types import Channel, Version

logger = structlog.get_logger()


class InstalledBuild(BaseModel):
    """A build found on disk."""

    channel: Channel = Field(..., description="Release channel")
    build_index: int = Field(..., description="Build index")
    build_name: str | None = Field(None, description="Build name from the manifest")
    is_latest: bool = Field(default=False, description="Held by the latest alias")
    path: Path = Field(..., description="Install directory")


def _has_client(install_dir: Path) -> bool:
    return resolve_client_path(install_dir).exists()


def _list_build_indices(path: Path) -> list[int]:
    if not path.is_dir():
        return []
    indices = [
        parse_build_dir_name(entry.name)
        for entry in path.iterdir()
        if entry.is_dir()
    ]
    return sorted(i for i in indices if i is not None)


def list_installed_versions(root: Path) -> list[InstalledBuild]:
    """List the builds installed under ``root``.

    Directories without a client binary are skipped, so a partially
    deleted install is not reported as installed. A build present both
    in its per-build directory and in the latest alias is reported once,
    as the latest entry.

    Args:
        root: Install root

    Returns:
        Installed builds, per-build directories first
    """
    for channel in Channel:
        migrate_legacy_layout_if_needed(root, channel)

    found: list[InstalledBuild] = []
    for channel in Channel:
        for index in _list_build_indices(channel_dir(root, channel)):
            install_dir = build_dir(root, channel, index)
            if not _has_client(install_dir):
                continue
            manifest = read_manifest(install_dir)
            found.append(
                InstalledBuild(
                    channel=channel,
                    build_index=index,
                    build_name=manifest.build_name if manifest else None,
                    path=install_dir,
                )
            )

    alias = latest_dir(root)
    if alias.is_dir() and _has_client(alias):
        manifest = read_manifest(alias)
        if manifest is not None:
            found.append(
                InstalledBuild(
                    channel=Channel.RELEASE,
                    build_index=manifest.build_index,
                    build_name=manifest.build_name,
                    is_latest=True,
                    path=alias,
                )
            )

    deduped: dict[tuple[Channel, int], InstalledBuild] = {}
    for build in found:
        key = (build.channel, build.build_index)
        if key not in deduped or build.is_latest:
            deduped[key] = build
    return list(deduped.values())


def mark_installed(root: Path, versions: Iterable[Version]) -> list[Version]:
    """Copy catalog versions with their ``installed`` flag computed.

    Args:
        root: Install root
        versions: Versions from the catalog

    Returns:
        New version values, in input order
    """
    installed = {(b.channel, b.build_index) for b in list_installed_versions(root)}
    return [
        v.model_copy(update={"installed": (v.channel, v.build_index) in installed})
        for v in versions
    ]


def delete_installed_version(
    root: Path,
    channel: Channel,
    build_index: int,
    is_latest: bool = False,
) -> list[Path]:
    """Delete an installed build.

    The latest alias is only removed for the latest release; prerelease
    builds never touch it.

    Args:
        root: Install root
        channel: Channel of the build
        build_index: Build index, must be positive
        is_latest: Whether the latest alias should be removed too

    Returns:
        Directories that were removed

    Raises:
        ValueError: If ``build_index`` is not positive
        FilesystemError: If a directory could not be removed
    """
    if build_index <= 0:
        raise ValueError(f"Invalid build index: {build_index}")

    targets: list[Path] = []
    if channel is Channel.RELEASE and is_latest:
        targets.append(latest_dir(root))
    targets.append(build_dir(root, channel, build_index))

    removed: list[Path] = []
    for target in targets:
        if not target.exists():
            continue
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise FilesystemError(f"Failed to delete {target}: {e}", path=target) from e
        logger.info("installed_build_deleted", path=str(target))
        removed.append(target)
    return removed
