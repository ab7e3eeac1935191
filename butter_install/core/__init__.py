"""Core functionality for butter_install.

This module provides the install engine:
- Configuration management
- Type definitions and error codes
- Install directory layout and manifests
- Bundle downloads and patch application
- Install orchestration
"""

from butter_install.core.errors import (
    ErrorCode,
    InstallError,
    UserCancelledError,
    map_error_to_code,
)
from butter_install.core.types import (
    Channel,
    InstallKey,
    InstallManifest,
    Version,
)

__all__ = [
    # Types
    "Channel",
    "InstallKey",
    "InstallManifest",
    "Version",
    # Errors
    "ErrorCode",
    "InstallError",
    "UserCancelledError",
    "map_error_to_code",
]
