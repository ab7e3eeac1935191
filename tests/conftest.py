"""Pytest configuration and shared fixtures for butter_install tests."""

import stat
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from butter_install.core.events import InstallEvent, InstallProgress, Phase
from butter_install.core.manifest import write_manifest
from butter_install.core.paths import CLIENT_BINARY_NAME, SERVER_JAR_NAME
from butter_install.core.types import Channel, Version


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture(autouse=True)
def restore_excepthook() -> Generator[None, None, None]:
    """Undo the exception hook the CLI installs."""
    hook = sys.excepthook
    yield
    sys.excepthook = hook


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Empty install root."""
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def release_version() -> Version:
    """Latest release build 10."""
    return Version(
        channel=Channel.RELEASE,
        build_index=10,
        build_name="Build 10",
        url="https://cdn.example.com/release/10.pwr?token=secret",
        is_latest=True,
    )


@pytest.fixture
def prerelease_version() -> Version:
    """Prerelease build 3."""
    return Version(
        channel=Channel.PRERELEASE,
        build_index=3,
        url="https://cdn.example.com/pre-release/3.pwr",
    )


def populate_install(install_dir: Path, version: Version | None = None) -> Path:
    """Create client and server binaries, plus a manifest when given a version."""
    client = install_dir / "Client" / CLIENT_BINARY_NAME
    server = install_dir / "Server" / SERVER_JAR_NAME
    client.parent.mkdir(parents=True, exist_ok=True)
    server.parent.mkdir(parents=True, exist_ok=True)
    client.write_bytes(b"client")
    server.write_bytes(b"server")
    if version is not None:
        write_manifest(install_dir, version)
    return install_dir


class RecordingSink:
    """Collects every event emitted during an install."""

    def __init__(self) -> None:
        self.events: list[InstallEvent] = []

    def __call__(self, event: InstallEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> list[str]:
        return [e.event for e in self.events]

    def progress(self, phase: Phase) -> list[int]:
        return [
            e.percent for e in self.events
            if isinstance(e, InstallProgress) and e.phase is phase
        ]


@pytest.fixture
def sink() -> RecordingSink:
    """Event sink that records what it receives."""
    return RecordingSink()


@pytest.fixture
def fake_tool(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable Python script standing in for the patch tool.

    The body receives ``sys.argv`` like the real tool; ``argv[5]`` is the
    bundle and ``argv[6]`` the target directory.
    """

    def _make(body: str, name: str = "fake-butler") -> Path:
        path = tmp_path / "tools" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!{sys.executable}\nimport json, os, sys\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add unit marker to all tests by default
        if not any(marker.name in ['integration', 'slow'] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)

        # Subprocess-driven tests spawn a real interpreter
        if 'patcher' in item.nodeid or 'orchestrator' in item.nodeid:
            item.add_marker(pytest.mark.slow)


@pytest.fixture
def populate() -> Callable[..., Path]:
    """Helper that lays out a complete install directory."""
    return populate_install
