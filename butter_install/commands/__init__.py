"""CLI command implementations for butter_install.

This module contains all command-line interface implementations:
- install: Install or update a build
- status: Show where a build lives and whether it needs patching
- list: List installed builds
- delete: Delete an installed build
"""

from butter_install.commands.install import delete, install, list_builds, status

__all__ = ["delete", "install", "list_builds", "status"]
