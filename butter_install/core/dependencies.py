"""Contracts for the runtime and patch tool installers.

Installing the runtime or the patch tool is handled elsewhere; the
orchestrator only asks an ensurer for a usable path. An ensurer is an
async callable returning an ``EnsureResult``.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, model_validator

logger = structlog.get_logger()


class EnsureResult(BaseModel):
    """Outcome of ensuring an external dependency is present."""

    ok: bool = Field(..., description="Whether the dependency is usable")
    path: Path | None = Field(None, description="Executable path when ok")
    error: str | None = Field(None, description="Failure message when not ok")

    @model_validator(mode="after")
    def validate_shape(self) -> EnsureResult:
        """A successful result needs a path, a failed one an error."""
        if self.ok and self.path is None:
            raise ValueError("Successful result requires a path")
        if not self.ok and not self.error:
            raise ValueError("Failed result requires an error message")
        return self

    @classmethod
    def success(cls, path: Path) -> EnsureResult:
        return cls(ok=True, path=path)

    @classmethod
    def failure(cls, error: str) -> EnsureResult:
        return cls(ok=False, error=error)


Ensurer = Callable[[], Awaitable[EnsureResult]]


class ExecutableEnsurer:
    """Finds an already installed executable.

    A configured path wins; otherwise the executable is looked up on
    ``PATH`` when ``search_path`` is set.

    Args:
        name: Executable name, used for lookup and messages
        configured_path: Explicit path to the executable
        search_path: Whether to fall back to a ``PATH`` lookup
    """

    def __init__(
        self,
        name: str,
        configured_path: Path | None = None,
        search_path: bool = True,
    ):
        self.name = name
        self.configured_path = configured_path
        self.search_path = search_path

    async def __call__(self) -> EnsureResult:
        if self.configured_path is not None:
            path = self.configured_path
            if path.is_file() and os.access(path, os.X_OK):
                return EnsureResult.success(path)
            return EnsureResult.failure(f"{self.name} not found or not executable at {path}")

        if self.search_path:
            found = shutil.which(self.name)
            if found:
                logger.debug("executable_found", name=self.name, path=found)
                return EnsureResult.success(Path(found))

        return EnsureResult.failure(f"{self.name} is not installed")
