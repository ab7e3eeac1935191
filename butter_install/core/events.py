"""Lifecycle and progress notifications emitted during an install."""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

from butter_install.core.errors import ErrorCode
from butter_install.core.types import Channel, Version

# Percent value meaning "size unknown, render indeterminate progress".
INDETERMINATE = -1


class Phase(StrEnum):
    """Install phases that report progress."""
    BUNDLE_DOWNLOAD = "bundle-download"
    PATCHING = "patching"


class InstallStarted(BaseModel):
    """An install operation has begun."""
    event: Literal["install-started"] = "install-started"
    channel: Channel
    build_index: int


class InstallProgress(BaseModel):
    """Progress within one phase."""
    event: Literal["install-progress"] = "install-progress"
    phase: Phase
    percent: int = Field(..., ge=INDETERMINATE, le=100)
    current: int | None = Field(None, description="Bytes received so far")
    total: int | None = Field(None, description="Expected total bytes")

    @property
    def indeterminate(self) -> bool:
        """Whether the caller should render indeterminate progress."""
        return self.percent == INDETERMINATE


class InstallFinished(BaseModel):
    """The version is installed and current."""
    event: Literal["install-finished"] = "install-finished"
    version: Version


class InstallCancelled(BaseModel):
    """The user cancelled the bundle download."""
    event: Literal["install-cancelled"] = "install-cancelled"
    channel: Channel
    build_index: int


class InstallFailed(BaseModel):
    """The install failed; details are in the log."""
    event: Literal["install-error"] = "install-error"
    code: ErrorCode


InstallEvent = InstallStarted | InstallProgress | InstallFinished | InstallCancelled | InstallFailed

EventSink = Callable[[InstallEvent], None]
ProgressCallback = Callable[[InstallProgress], None]


def percent_of(current: int, total: int | None) -> int:
    """Whole percent of ``current`` over ``total``, or INDETERMINATE."""
    if not total or total <= 0:
        return INDETERMINATE
    return max(0, min(100, (current * 100) // total))
