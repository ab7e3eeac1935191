"""Per-directory install manifest.

Each install directory holds a small JSON record naming the build that
occupies it. The record is written only after a patch has been applied
successfully, using atomic writes (temp file + os.replace) so a crash
never leaves a half-written manifest behind. A missing or unreadable
manifest means the directory was never successfully installed.
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog
from pydantic import ValidationError

from butter_install.core.errors import FilesystemError
from butter_install.core.types import InstallManifest, Version

logger = structlog.get_logger()

MANIFEST_FILENAME = ".butter-installed.json"


def manifest_path(install_dir: Path) -> Path:
    """Path of the manifest file inside an install directory."""
    return install_dir / MANIFEST_FILENAME


def read_manifest(install_dir: Path) -> InstallManifest | None:
    """Read the manifest of an install directory.

    Args:
        install_dir: Install directory to inspect

    Returns:
        The manifest, or None if it is missing or unreadable
    """
    path = manifest_path(install_dir)
    if not path.is_file():
        return None

    try:
        return InstallManifest.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("manifest_unreadable", path=str(path), error=str(e))
        return None


def write_manifest(install_dir: Path, manifest: InstallManifest | Version) -> InstallManifest:
    """Atomically write the manifest of an install directory.

    Args:
        install_dir: Install directory, created if missing
        manifest: Manifest to store, or the version it should describe

    Returns:
        The manifest that was written

    Raises:
        FilesystemError: If the manifest could not be written
    """
    if isinstance(manifest, Version):
        manifest = InstallManifest.for_version(manifest)

    path = manifest_path(install_dir)
    tmp_path = path.with_name(path.name + ".tmp")

    try:
        install_dir.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise FilesystemError(f"Failed to write manifest {path}: {e}", path=path) from e

    logger.debug(
        "manifest_written",
        path=str(path),
        channel=manifest.channel.value,
        build_index=manifest.build_index,
    )
    return manifest


def remove_manifest(install_dir: Path) -> bool:
    """Delete the manifest of an install directory.

    Returns:
        True if a manifest was removed
    """
    path = manifest_path(install_dir)
    if not path.exists():
        return False
    path.unlink()
    return True
