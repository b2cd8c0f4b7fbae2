#!/usr/bin/env python3
"""
LagZero Core - command line entry point for python -m lagzero_core
"""

import asyncio
import signal
import sys
import uuid
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console

from . import __version__
from .app import LagZeroCore
from .utils.config import load_settings
from .utils.errors import LagZeroError
from .utils.logging import get_logger, setup_logging
from .utils.notifications import Event, EventCategory


console = Console()
logger = get_logger("lagzero.cli")


async def _bootstrap(settings_file: Optional[str]) -> LagZeroCore:
    settings = await load_settings([settings_file] if settings_file else None)
    setup_logging(
        app_name=settings.app_name,
        log_level=settings.logging.level,
        log_dir=settings.logging.directory,
        enable_json=settings.logging.format == "json",
        enable_console=settings.logging.enable_console,
        max_bytes=settings.logging.max_size,
        backup_count=settings.logging.backup_count,
        enable_sentry=settings.logging.enable_sentry,
        sentry_dsn=settings.logging.sentry_dsn,
    )
    return LagZeroCore(settings)


def _print_error(error: LagZeroError) -> None:
    console.print(f"[bold red]{error.code}[/bold red] {error.summary}")
    for hint in error.suggestions():
        console.print(f"  [yellow]-[/yellow] {hint}")


def _print_event(event: Event) -> None:
    if event.name == "installer_phase":
        percent = event.data.get("percent")
        suffix = f" {percent}%" if percent is not None else ""
        console.print(f"[cyan]installer[/cyan] {event.data.get('phase')}{suffix}")
    elif event.name == "core_status":
        console.print(f"[green]core[/green] {event.data.get('status')}")
    elif event.name == "monitor_detected":
        console.print(f"[magenta]monitor[/magenta] proxied {', '.join(event.data.get('names', []))}")
    elif event.name == "core_error":
        console.print(f"[bold red]{event.data.get('code')}[/bold red] {event.data.get('summary')}")
        for hint in event.data.get("hints", []):
            console.print(f"  [yellow]-[/yellow] {hint}")


@click.group()
@click.version_option(__version__, prog_name="lagzero-core")
def cli():
    """LagZero Core - supervise the sing-box core and its process rules."""


@cli.command()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Core configuration document')
@click.option('--settings', 'settings_file', type=click.Path(exists=True, dir_okay=False), help='LagZero settings file')
@click.option('--watch', 'watch', multiple=True, help='Process name to proxy together with its descendants')
@click.option('--session', 'session_id', default=None, help='Monitoring session id')
def run(config_path: Optional[str], settings_file: Optional[str], watch: Tuple[str, ...], session_id: Optional[str]):
    """Install if needed, start the core and keep it supervised."""
    sys.exit(asyncio.run(_run(config_path, settings_file, watch, session_id)))


async def _run(config_path, settings_file, watch, session_id) -> int:
    app = await _bootstrap(settings_file)
    app.events.subscribe(
        _print_event,
        categories={EventCategory.INSTALLER, EventCategory.CORE, EventCategory.MONITOR, EventCategory.ERROR},
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

    await app.initialize()
    try:
        try:
            await app.start_core(Path(config_path) if config_path else None)
        except LagZeroError as e:
            _print_error(e)
            return 1

        if watch:
            await app.start_monitoring(session_id or uuid.uuid4().hex[:8], watch)

        console.print("[bold green]LagZero core running[/bold green] (Ctrl-C to stop)")
        try:
            await stop_requested.wait()
        except asyncio.CancelledError:
            pass
        return 0
    finally:
        await app.shutdown()


@cli.command()
@click.option('--settings', 'settings_file', type=click.Path(exists=True, dir_okay=False), help='LagZero settings file')
def install(settings_file: Optional[str]):
    """Make sure the core binary is installed and print its path."""
    sys.exit(asyncio.run(_install(settings_file)))


async def _install(settings_file) -> int:
    app = await _bootstrap(settings_file)
    app.events.subscribe(_print_event, categories={EventCategory.INSTALLER})
    async with app:
        try:
            path = await app.installer.ensure_binary()
        except LagZeroError as e:
            _print_error(e)
            return 1
        version = await app.installer.binary_version()
        console.print(f"{path}" + (f" ({version})" if version else ""))
        return 0


@cli.command()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False), required=True, help='Core configuration document')
@click.option('--settings', 'settings_file', type=click.Path(exists=True, dir_okay=False), help='LagZero settings file')
def check(config_path: str, settings_file: Optional[str]):
    """Validate a core configuration document with the core binary."""
    sys.exit(asyncio.run(_check(config_path, settings_file)))


async def _check(config_path, settings_file) -> int:
    app = await _bootstrap(settings_file)
    async with app:
        try:
            binary = await app.installer.ensure_binary()
        except LagZeroError as e:
            _print_error(e)
            return 1
        result = await app.validator.validate(binary, config_path)
        if result.ok:
            console.print("[green]config check passed[/green]")
            return 0
        _print_error(result.to_error())
        for line in result.lines:
            console.print(f"  [dim]{line}[/dim]")
        return 1


def main():
    """Main entry point for python -m lagzero_core"""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\nLagZero core stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
