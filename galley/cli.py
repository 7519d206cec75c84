"""Thin CLI wrapper for galley.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from galley import __version__
from galley.config import (
    BuildSettings,
    MonitorSettings,
    get_build_settings,
    get_monitor_settings,
    print_settings_json,
)

app = typer.Typer(
    name="galley",
    help="Galley - build, sign and root GrapheneOS releases",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route log records through rich at the configured level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"galley version {__version__}")
        raise typer.Exit()


def _load_build_settings() -> BuildSettings:
    try:
        return get_build_settings()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1) from None


def _load_monitor_settings() -> MonitorSettings:
    try:
        return get_monitor_settings()
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Galley - build, sign and root GrapheneOS releases."""


@app.command()
def build(
    sync: Annotated[bool, typer.Option("--sync", "-s", help="Sync the source tree")] = False,
    aapt2: Annotated[
        bool, typer.Option("--aapt2", "-u", help="Build aapt2 for vendor extraction")
    ] = False,
    extract: Annotated[
        bool, typer.Option("--extract", "-e", help="Extract vendor files")
    ] = False,
    customize: Annotated[
        bool, typer.Option("--customize", "-c", help="Apply pre-build modifications")
    ] = False,
    keys: Annotated[bool, typer.Option("--keys", "-k", help="Manage signing keys")] = False,
    rom: Annotated[bool, typer.Option("--rom", "-r", help="Build the ROM")] = False,
    kernel: Annotated[bool, typer.Option("--kernel", "-f", help="Build the kernel")] = False,
    root_type: Annotated[
        str | None,
        typer.Option(
            "--root-type",
            help="Root method: none, magisk or kernelsu (overrides ROOT_TYPE)",
        ),
    ] = None,
) -> None:
    """Run build phases. With no phase flags, run the full default build."""
    from galley.builds.orchestrator import BuildOrchestrator
    from galley.builds.phases import PhaseFlags
    from galley.types import RootType

    settings = _load_build_settings()
    configure_logging(settings.log_level)

    selected_root: RootType | None = None
    if root_type is not None:
        try:
            selected_root = RootType(root_type.lower())
        except ValueError:
            console.print(f"[red]Invalid root type: {root_type}[/red]")
            raise typer.Exit(code=1) from None

    flags = PhaseFlags(
        sync=sync,
        aapt2=aapt2,
        extract=extract,
        customize=customize,
        keys=keys,
        rom=rom,
        kernel=kernel,
    )
    orchestrator = BuildOrchestrator(
        settings,
        flags=flags,
        root_type=selected_root,
        confirm=lambda prompt: typer.confirm(prompt, default=False),
    )
    status = orchestrator.run()
    if status != 0:
        console.print(f"[red]Build failed with exit status {status}[/red]")
    raise typer.Exit(code=status)


@app.command()
def monitor() -> None:
    """Watch for new GrapheneOS releases and build them."""
    from galley.builds.orchestrator import make_build_trigger
    from galley.monitor.service import ReleaseMonitor, handle_signals
    from galley.monitor.state import MonitorState, MonthlyBuildState, StateStore
    from galley.monitor.tags import TagFetcher
    from galley.notify import MONITOR_TITLE, Notifier
    from galley.types import BuildMode

    monitor_settings = _load_monitor_settings()
    build_settings = _load_build_settings()
    configure_logging(monitor_settings.log_level)

    release_monitor = ReleaseMonitor(
        state_store=StateStore(monitor_settings.state_file, MonitorState),
        monthly_store=StateStore(monitor_settings.monthly_build_file, MonthlyBuildState),
        fetch_tags=TagFetcher(monitor_settings.tags_url, timeout=monitor_settings.fetch_timeout),
        trigger=make_build_trigger(build_settings),
        build_mode=BuildMode(monitor_settings.build_mode),
        monthly_release=monitor_settings.monthly_release,
        notifier=Notifier(monitor_settings.apprise_urls, title=MONITOR_TITLE),
    )
    with handle_signals(release_monitor):
        status = release_monitor.run_loop(
            monitor_settings.check_interval,
            monitor_settings.monitoring_enabled,
        )
    raise typer.Exit(code=status)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load_build_settings()
    monitor_settings = _load_monitor_settings()
    if json_output:
        data = {
            "build": json.loads(print_settings_json(settings)),
            "monitor": json.loads(print_settings_json(monitor_settings)),
        }
        console.print_json(data=data)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  OS:                  {settings.os or '(unset)'}")
    console.print(f"  Targets:             {', '.join(settings.targets) or '(unset)'}")
    console.print(f"  Tag:                 {settings.tag or '(unset)'}")
    console.print(f"  Google build id:     {settings.google_build_id or '(unset)'}")
    console.print(f"  Android version:     {settings.version or '(unset)'}")
    console.print(f"  Root type:           {settings.root_type or '(default)'}")
    console.print(f"  Strict mode:         {settings.docker_mode}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Source directory:    {settings.src_dir}")
    console.print(f"  Build mods:          {settings.build_mods_dir}")
    console.print(f"  Device map file:     {settings.device_map_file or '(built-in)'}")
    console.print()
    console.print("[bold]Monitor:[/bold]")
    console.print(f"  Enabled:             {monitor_settings.monitoring_enabled}")
    console.print(f"  Build mode:          {monitor_settings.build_mode}")
    console.print(f"  Monthly release:     {monitor_settings.monthly_release}")
    console.print(f"  Check interval (s):  {monitor_settings.check_interval}")
    console.print(f"  State file:          {monitor_settings.state_file}")
    console.print(f"  Monthly build file:  {monitor_settings.monthly_build_file}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Notifications:       {'on' if settings.apprise_urls else 'off'}")
    console.print(f"  Log level:           {settings.log_level}")


@app.command()
def state(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the persisted monitor state."""
    from galley.monitor.state import MonitorState, MonthlyBuildState, StateStore

    settings = _load_monitor_settings()
    monitor_state = StateStore(settings.state_file, MonitorState).load()
    monthly = StateStore(settings.monthly_build_file, MonthlyBuildState).load()

    if json_output:
        data = {
            "monitor": monitor_state.model_dump(),
            "monthly": monthly.model_dump(),
        }
        console.print_json(data=data)
        return

    console.print("[bold]Monitor state:[/bold]")
    console.print(f"  Last tag:            {monitor_state.last_tag or '(none)'}")
    console.print(f"  Last build tag:      {monitor_state.last_build_tag or '(none)'}")
    console.print(f"  Last check:          {monitor_state.last_check or '(never)'}")
    console.print()
    console.print("[bold]Monthly cadence:[/bold]")
    console.print(f"  Month:               {monthly.current_month or '(none)'}")
    console.print(f"  Releases this month: {monthly.releases_this_month}")
    console.print(f"  Built this month:    {monthly.built_this_month}")


if __name__ == "__main__":
    app()
