"""Install, inspect and delete game builds."""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
)
from rich.table import Table

from butter_install.core.config import AppConfig
from butter_install.core.dependencies import ExecutableEnsurer
from butter_install.core.errors import FilesystemError
from butter_install.core.events import EventSink, InstallEvent, InstallProgress, Phase
from butter_install.core.installed import delete_installed_version, list_installed_versions
from butter_install.core.manifest import read_manifest
from butter_install.core.orchestrator import (
    InstallOrchestrator,
    InstallResult,
    InstallState,
    classify_install,
)
from butter_install.core.paths import resolve_existing_install_dir, resolve_install_dir
from butter_install.core.types import Channel, Version

logger = structlog.get_logger()

PHASE_LABELS = {
    Phase.BUNDLE_DOWNLOAD: "Downloading bundle",
    Phase.PATCHING: "Applying patch",
}

channel_option = click.option(
    "--channel",
    type=click.Choice([*(c.value for c in Channel), "pre-release"], case_sensitive=False),
    default=Channel.RELEASE.value,
    show_default=True,
    help="Release channel",
)
build_option = click.option(
    "--build", "build_index", type=click.IntRange(min=1), required=True, help="Build index"
)
latest_option = click.option(
    "--latest", is_flag=True, help="Build is the latest release (uses the latest alias)"
)
root_argument = click.argument(
    "root", type=click.Path(file_okay=False, path_type=Path), required=False
)


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    return config, console, verbose


class RichProgressSink:
    """Renders install events on a rich progress display."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._tasks: dict[Phase, TaskID] = {}

    def __call__(self, event: InstallEvent) -> None:
        if not isinstance(event, InstallProgress):
            return

        task = self._tasks.get(event.phase)
        if task is None:
            task = self.progress.add_task(PHASE_LABELS[event.phase], total=None)
            self._tasks[event.phase] = task

        if event.phase is Phase.BUNDLE_DOWNLOAD and event.current is not None:
            # Byte counts render better than percent for downloads.
            self.progress.update(task, total=event.total, completed=event.current)
        elif event.indeterminate:
            self.progress.update(task, total=None)
        else:
            self.progress.update(task, total=100, completed=event.percent)


def _json_sink(event: InstallEvent) -> None:
    # Regular print keeps JSON free of rich markup.
    print(event.model_dump_json())


async def _run_install(
    config: AppConfig,
    root: Path,
    version: Version,
    sink: EventSink | None,
) -> InstallResult:
    orchestrator = InstallOrchestrator(
        ensure_runtime=ExecutableEnsurer(config.tools.runtime_name, config.tools.runtime_path),
        ensure_tool=ExecutableEnsurer(config.tools.patch_tool_name, config.tools.patch_tool_path),
        sink=sink,
        config=config.download,
    )

    def on_interrupt() -> None:
        if orchestrator.cancel(root, version):
            logger.info("cancel_requested")
        else:
            logger.warning("cancel_unavailable", state=orchestrator.state_of(root, version).value)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        return await orchestrator.install_version(root, version)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await orchestrator.aclose()


@click.command(name="install")
@root_argument
@channel_option
@build_option
@click.option("--url", required=True, help="Bundle URL")
@click.option("--name", "build_name", help="Build display name")
@latest_option
@click.pass_context
def install(
    ctx: click.Context,
    root: Path | None,
    channel: str,
    build_index: int,
    url: str,
    build_name: str | None,
    latest: bool,
) -> None:
    """Install or update a build under ROOT.

    Press Ctrl+C while the bundle downloads to cancel. Once patching has
    started the install runs to completion.
    """
    config, console, _ = _get_context_objects(ctx)
    root = root or config.install_root
    version = Version(
        channel=Channel.parse(channel),
        build_index=build_index,
        build_name=build_name,
        url=url,
        is_latest=latest,
    )

    if config.output_format == "json":
        result = asyncio.run(_run_install(config, root, version, _json_sink))
    else:
        if config.output_format == "rich":
            display = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                DownloadColumn(),
                console=console,
                transient=True,
            )
            with display:
                result = asyncio.run(
                    _run_install(config, root, version, RichProgressSink(display))
                )
        else:
            result = asyncio.run(_run_install(config, root, version, None))

        if result.state is InstallState.DONE:
            console.print(
                f"[green]✓[/green] {result.version.display_name} installed at {result.install_dir}"
            )
        elif result.state is InstallState.CANCELLED:
            console.print("[yellow]Install cancelled[/yellow]")

    if result.state is InstallState.FAILED:
        code = int(result.error_code) if result.error_code is not None else None
        raise click.ClickException(f"Install failed (error code {code})")
    if result.state is InstallState.CANCELLED:
        ctx.exit(130)


@click.command(name="status")
@root_argument
@channel_option
@build_option
@latest_option
@click.pass_context
def status(
    ctx: click.Context,
    root: Path | None,
    channel: str,
    build_index: int,
    latest: bool,
) -> None:
    """Show where a build lives under ROOT and whether it needs patching."""
    config, console, _ = _get_context_objects(ctx)
    root = root or config.install_root
    version = Version(channel=Channel.parse(channel), build_index=build_index, is_latest=latest)

    install_dir = resolve_install_dir(root, version)
    existing_dir = resolve_existing_install_dir(root, version)
    classification = classify_install(install_dir, version)
    manifest = read_manifest(install_dir)

    if config.output_format == "json":
        info = {
            "install_dir": str(install_dir),
            "existing_dir": str(existing_dir),
            "classification": classification.value,
            "manifest": manifest.model_dump(mode="json") if manifest else None,
        }
        print(json.dumps(info, indent=2))
        return

    table = Table(title=f"{version.channel.value} {version.display_name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Install dir", str(install_dir))
    table.add_row("Existing dir", str(existing_dir))
    table.add_row("Classification", classification.value)
    table.add_row(
        "Manifest",
        f"{manifest.channel.value} build {manifest.build_index}" if manifest else "none",
    )
    console.print(table)


@click.command(name="list")
@root_argument
@click.pass_context
def list_builds(ctx: click.Context, root: Path | None) -> None:
    """List builds installed under ROOT."""
    config, console, _ = _get_context_objects(ctx)
    root = root or config.install_root
    builds = list_installed_versions(root)

    if config.output_format == "json":
        print(json.dumps([b.model_dump(mode="json") for b in builds], indent=2))
        return

    if not builds:
        console.print(f"No builds installed under {root}")
        return

    table = Table(title=f"Installed builds ({len(builds)})")
    table.add_column("Channel", style="cyan")
    table.add_column("Build", style="yellow")
    table.add_column("Name", style="green")
    table.add_column("Latest", style="blue")
    table.add_column("Path")
    for build in builds:
        table.add_row(
            build.channel.value,
            str(build.build_index),
            build.build_name or "",
            "✓" if build.is_latest else "",
            str(build.path),
        )
    console.print(table)


@click.command(name="delete")
@root_argument
@channel_option
@build_option
@latest_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(
    ctx: click.Context,
    root: Path | None,
    channel: str,
    build_index: int,
    latest: bool,
    yes: bool,
) -> None:
    """Delete an installed build under ROOT."""
    config, console, _ = _get_context_objects(ctx)
    root = root or config.install_root

    if not yes:
        click.confirm(f"Delete {channel} build {build_index} under {root}?", abort=True)

    try:
        removed = delete_installed_version(
            root, Channel.parse(channel), build_index, is_latest=latest
        )
    except FilesystemError as e:
        raise click.ClickException(str(e)) from e

    if not removed:
        console.print("Nothing to delete")
        return
    for path in removed:
        console.print(f"[green]✓[/green] Removed {path}")

