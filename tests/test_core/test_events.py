"""Tests for butter_install.core.events module."""

import json

import pytest
from pydantic import ValidationError

from butter_install.core.errors import ErrorCode
from butter_install.core.events import (
    INDETERMINATE,
    InstallFailed,
    InstallProgress,
    InstallStarted,
    Phase,
    percent_of,
)
from butter_install.core.types import Channel


class TestEvents:
    """Test event models."""

    def test_progress_bounds(self):
        """Test percent must be -1..100."""
        assert InstallProgress(phase=Phase.PATCHING, percent=INDETERMINATE).indeterminate
        assert not InstallProgress(phase=Phase.PATCHING, percent=0).indeterminate
        with pytest.raises(ValidationError):
            InstallProgress(phase=Phase.PATCHING, percent=101)
        with pytest.raises(ValidationError):
            InstallProgress(phase=Phase.PATCHING, percent=-2)

    def test_event_names(self):
        """Test serialized event names."""
        started = json.loads(InstallStarted(channel=Channel.RELEASE, build_index=1).model_dump_json())
        assert started == {"event": "install-started", "channel": "release", "build_index": 1}

        failed = json.loads(InstallFailed(code=ErrorCode.HTTP_5XX).model_dump_json())
        assert failed == {"event": "install-error", "code": 1203}

        progress = json.loads(
            InstallProgress(phase=Phase.BUNDLE_DOWNLOAD, percent=5).model_dump_json()
        )
        assert progress["phase"] == "bundle-download"


class TestPercentOf:
    """Test percent_of."""

    @pytest.mark.parametrize(
        ("current", "total", "expected"),
        [(0, 100, 0), (50, 200, 25), (999, 1000, 99), (1000, 1000, 100), (2000, 1000, 100),
         (10, None, INDETERMINATE), (10, 0, INDETERMINATE)],
    )
    def test_values(self, current, total, expected):
        """Test whole percent and unknown totals."""
        assert percent_of(current, total) == expected
