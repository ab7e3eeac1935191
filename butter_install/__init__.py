"""Butter Install - install and update engine for the Butter game launcher.

Materializes a selected game build on local disk, tracks which build
occupies each install directory, and moves an installation to a newer
build by downloading a patch bundle and applying it with an external
patch tool.

Key modules:
- core: Directory layout, manifests, downloads, patching, orchestration
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "Butter Team"

# Re-export commonly used types
from butter_install.core.types import (
    Channel,
    InstallKey,
    InstallManifest,
    Version,
)

__all__ = [
    "__version__",
    "__author__",
    "Channel",
    "InstallKey",
    "InstallManifest",
    "Version",
]
