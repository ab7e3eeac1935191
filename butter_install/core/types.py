"""Core type definitions for butter_install."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Channel(StrEnum):
    """Independent version tracks."""
    RELEASE = "release"
    PRERELEASE = "prerelease"

    @classmethod
    def parse(cls, value: Any) -> Channel:
        """Parse a channel name, accepting the legacy ``pre-release`` spelling."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == "pre-release":
            return cls.PRERELEASE
        return cls(text)

    @property
    def dir_name(self) -> str:
        """Directory name used for this channel under ``<root>/game``."""
        return "pre-release" if self is Channel.PRERELEASE else "release"


class Version(BaseModel):
    """A selectable build supplied by the version catalog."""

    channel: Channel = Field(
        ...,
        validation_alias=AliasChoices("channel", "type"),
        description="Release channel",
    )
    build_index: int = Field(..., gt=0, description="Build index within the channel")
    build_name: str | None = Field(None, description="Display name")
    url: str = Field(default="", description="Bundle URL")
    patch_url: str | None = Field(None, description="Patch URL")
    patch_hash: str | None = Field(None, description="Patch hash")
    patch_note: str | None = Field(None, description="Patch notes")
    is_latest: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_latest", "isLatest"),
        description="Latest build of its channel",
    )
    installed: bool = Field(default=False, description="Installed locally")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("channel", mode="before")
    @classmethod
    def validate_channel(cls, v: Any) -> Channel:
        """Accept legacy channel spellings."""
        return Channel.parse(v)

    @property
    def display_name(self) -> str:
        """Human readable build name."""
        return self.build_name or f"Build-{self.build_index}"

    @property
    def is_latest_release(self) -> bool:
        """Whether this build lives in the ``latest`` alias directory."""
        return self.channel is Channel.RELEASE and self.is_latest


@dataclass(frozen=True)
class InstallKey:
    """Identity of one install target: root, channel and build index."""

    root: Path
    channel: Channel
    build_index: int

    @classmethod
    def for_version(cls, root: Path | str, version: Version) -> InstallKey:
        """Build the key for installing ``version`` under ``root``."""
        return cls(Path(root), version.channel, version.build_index)

    @property
    def bundle_filename(self) -> str:
        """Deterministic temp bundle file name for this key."""
        return f"temp_{self.channel.value}_{self.build_index}.pwr"

    def __str__(self) -> str:
        return f"{self.root}::{self.channel.value}::{self.build_index}"


class InstallManifest(BaseModel):
    """Record of the build occupying an install directory."""

    channel: Channel = Field(
        ...,
        validation_alias=AliasChoices("channel", "type"),
        description="Release channel",
    )
    build_index: int = Field(..., gt=0, description="Installed build index")
    build_name: str | None = Field(None, description="Installed build name")
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Time of the last successful write",
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("channel", mode="before")
    @classmethod
    def validate_channel(cls, v: Any) -> Channel:
        """Accept legacy channel spellings."""
        return Channel.parse(v)

    @classmethod
    def for_version(cls, version: Version) -> InstallManifest:
        """Manifest describing ``version``."""
        return cls(
            channel=version.channel,
            build_index=version.build_index,
            build_name=version.build_name,
        )

    def matches(self, version: Version) -> bool:
        """Whether this manifest records the same build as ``version``."""
        return self.build_index == version.build_index and self.channel is version.channel
