"""Configuration management for butter-install."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "butter-install" / "config.json"


class DownloadConfig(BaseModel):
    """Bundle download configuration."""

    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    progress_interval: float = Field(
        default=0.2,
        description="Minimum seconds between progress notifications"
    )
    chunk_size: int = Field(
        default=1024 * 1024,  # 1MB
        description="Streaming read size in bytes"
    )
    keep_failed_bundles: bool = Field(
        default=False,
        description="Keep partial bundles after a failed download or patch"
    )

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator("progress_interval")
    @classmethod
    def validate_progress_interval(cls, v: float) -> float:
        """Validate progress interval value."""
        if v < 0:
            raise ValueError("Progress interval must be non-negative")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Validate chunk size value."""
        if v <= 0:
            raise ValueError("Chunk size must be positive")
        return v


class ToolsConfig(BaseModel):
    """External executables used during an install."""

    patch_tool_name: str = Field(default="butler", description="Patch tool executable name")
    patch_tool_path: Path | None = Field(default=None, description="Explicit patch tool path")
    runtime_name: str = Field(default="java", description="Runtime executable name")
    runtime_path: Path | None = Field(default=None, description="Explicit runtime path")

    @field_validator("patch_tool_name", "runtime_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate executable names."""
        if not v.strip():
            raise ValueError("Executable name cannot be empty")
        return v.strip()


class AppConfig(BaseModel):
    """Application configuration."""

    install_root: Path = Field(
        default=Path.home() / ".local" / "share" / "butter-install",
        description="Default install root"
    )
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = DEFAULT_CONFIG_FILE

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = DEFAULT_CONFIG_FILE

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
