"""Patch bundle application through the external patch tool.

The tool is invoked as::

    <tool> apply --progress-json --staging-dir <staging> <bundle> <target>

It prints line-delimited JSON progress records on stdout, mixed with
free-form chatter, and diagnostics on stderr. A running patch job cannot
be cancelled; it runs until the tool exits.
"""

from __future__ import annotations

import asyncio
import json
import math
import shutil
import subprocess
import sys
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from butter_install.core.errors import FilesystemError, ProcessExitError, ProcessSpawnError
from butter_install.core.events import INDETERMINATE, InstallProgress, Phase, ProgressCallback

logger = structlog.get_logger()

STDERR_TAIL_BYTES = 8192
STAGING_DIR_PREFIX = "staging-temp-"

# Longer stdout lines are chatter; progress records are far shorter.
MAX_LINE_BYTES = 64 * 1024
_READ_SIZE = 64 * 1024
_PROGRESS_FIELDS = ("percentage", "percent", "progress")


@dataclass(frozen=True)
class PatchApplicationJob:
    """One invocation of the patch tool."""

    tool_path: Path
    bundle_path: Path
    staging_dir: Path
    target_dir: Path

    def argv(self) -> list[str]:
        """Command line for this job."""
        return [
            str(self.tool_path),
            "apply",
            "--progress-json",
            "--staging-dir",
            str(self.staging_dir),
            str(self.bundle_path),
            str(self.target_dir),
        ]


@dataclass(frozen=True)
class ProgressRecord:
    """A progress value reported by the patch tool, on a 0-100 scale."""

    percent: float


def parse_progress_line(line: str) -> ProgressRecord | None:
    """Parse one stdout line of the patch tool.

    A line is a progress record when it is a JSON object whose ``type``
    mentions ``progress``, or which carries a numeric ``percentage`` or
    ``percent``. Values in (0, 1] are treated as fractions.

    Args:
        line: Raw output line

    Returns:
        The parsed record, or None for anything else
    """
    text = line.strip()
    if not text:
        return None
    try:
        obj: Any = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    kind = obj.get("type")
    typed_progress = isinstance(kind, str) and "progress" in kind.lower()

    for field in _PROGRESS_FIELDS:
        value = obj.get(field)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if field == "progress" and not typed_progress:
            return None
        value = float(value)
        if math.isnan(value):
            return None
        if 0 < value <= 1:
            value *= 100
        return ProgressRecord(percent=value)

    return None


def normalize_percent(value: float) -> int:
    """Round and clamp a progress value to an int in [0, 100]."""
    if math.isinf(value):
        return 100 if value > 0 else 0
    return max(0, min(100, round(value)))


async def iter_progress_records(stream: asyncio.StreamReader) -> AsyncIterator[ProgressRecord]:
    """Yield progress records from the tool's stdout until EOF.

    Lines that are not progress records are skipped, and so is any line
    longer than ``MAX_LINE_BYTES``. The sequence is consumed once; it
    cannot be restarted.
    """
    buffer = bytearray()
    # Set while dropping the rest of an overlong line.
    skipping = False

    while chunk := await stream.read(_READ_SIZE):
        buffer += chunk
        while (end := buffer.find(b"\n")) >= 0:
            raw = bytes(buffer[:end])
            del buffer[:end + 1]
            if skipping:
                skipping = False
                continue
            record = _record_from_line(raw)
            if record is not None:
                yield record
        if len(buffer) > MAX_LINE_BYTES:
            if not skipping:
                logger.debug("patch_tool_output_overlong", dropped=len(buffer))
            buffer.clear()
            skipping = True

    if buffer and not skipping:
        record = _record_from_line(bytes(buffer))
        if record is not None:
            yield record


def _record_from_line(raw: bytes) -> ProgressRecord | None:
    line = raw.decode("utf-8", errors="replace")
    record = parse_progress_line(line)
    if record is None and line.strip():
        logger.debug("patch_tool_output", line=line.strip())
    return record


async def _drain_stderr(stream: asyncio.StreamReader) -> bytes:
    """Read stderr to EOF, logging it and keeping only the tail."""
    tail = bytearray()
    while chunk := await stream.read(4096):
        tail += chunk
        if len(tail) > STDERR_TAIL_BYTES:
            del tail[:-STDERR_TAIL_BYTES]
        text = chunk.decode("utf-8", errors="replace").strip()
        if text:
            logger.warning("patch_tool_stderr", output=text)
    return bytes(tail)


def _spawn_kwargs() -> dict[str, Any]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


class PatchApplier:
    """Runs the patch tool against a bundle and a target directory."""

    async def apply(
        self,
        bundle_path: Path,
        tool_path: Path,
        target_dir: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Apply ``bundle_path`` to ``target_dir``.

        Args:
            bundle_path: Downloaded patch bundle
            tool_path: Patch tool executable
            target_dir: Directory to patch, created if missing
            on_progress: Receives ``patching`` progress; a successful job
                always ends with exactly one ``percent=100`` event

        Returns:
            The patched target directory

        Raises:
            FilesystemError: If the target or staging dir cannot be created
            ProcessSpawnError: If the tool could not be started
            ProcessExitError: If the tool exited with a non-zero code
        """
        # Staging must be unique per job: the tool keeps resume state
        # there that is only valid for one bundle.
        staging_dir = target_dir / f"{STAGING_DIR_PREFIX}{time.time_ns() // 1_000_000}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"Failed to prepare {target_dir} for patching: {e}", path=target_dir
            ) from e

        job = PatchApplicationJob(
            tool_path=tool_path,
            bundle_path=bundle_path,
            staging_dir=staging_dir,
            target_dir=target_dir,
        )
        try:
            return await self._run(job, on_progress)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

    async def _run(self, job: PatchApplicationJob, on_progress: ProgressCallback | None) -> Path:
        def emit(percent: int) -> None:
            if on_progress is not None:
                on_progress(InstallProgress(phase=Phase.PATCHING, percent=percent))

        emit(INDETERMINATE)
        logger.info("patch_tool_started", argv=job.argv())

        try:
            process = await asyncio.create_subprocess_exec(
                *job.argv(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_spawn_kwargs(),
            )
        except OSError as e:
            logger.error("patch_tool_spawn_failed", tool=str(job.tool_path), error=str(e))
            raise ProcessSpawnError(f"Failed to start patch tool {job.tool_path}: {e}") from e

        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(_drain_stderr(process.stderr))

        last_percent = INDETERMINATE
        try:
            async for record in iter_progress_records(process.stdout):
                percent = normalize_percent(record.percent)
                # 100 is reserved for the exit event.
                if last_percent < percent < 100:
                    last_percent = percent
                    emit(percent)
            exit_code = await process.wait()
            stderr_tail = await stderr_task
        finally:
            # Reached with a live process only on error or task teardown.
            if process.returncode is None:
                logger.warning("patch_tool_killed", pid=process.pid)
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        logger.info("patch_tool_exited", exit_code=exit_code, target=str(job.target_dir))

        if exit_code != 0:
            tail = stderr_tail.decode("utf-8", errors="replace")
            logger.error(
                "patch_tool_failed",
                exit_code=exit_code,
                bundle=str(job.bundle_path),
                target=str(job.target_dir),
                stderr_tail=tail,
            )
            raise ProcessExitError(
                f"Patch tool exited with code {exit_code}",
                exit_code=exit_code,
                stderr_tail=tail,
            )

        emit(100)
        return job.target_dir
