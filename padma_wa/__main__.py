"""Entry point: python -m padma_wa."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from padma_wa.config import AppConfig, load_config
from padma_wa.errors import PadmaError
from padma_wa.logging_config import setup_logging
from padma_wa.store.credentials import CredentialStore
from padma_wa.version import get_current_version

logger = logging.getLogger(__name__)

_console = Console()


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def run_server(config: AppConfig) -> int:
    """Run the API server until SIGINT/SIGTERM. Returns the exit code."""
    from padma_wa.app import PadmaApp

    app = PadmaApp(config)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, app.request_stop)

    exit_code = 0
    try:
        exit_code = await app.run()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await app.shutdown()
    return exit_code


def _configure(verbose: bool) -> AppConfig:
    setup_logging(verbose=verbose)
    config = load_config()
    setup_logging(level=config.log_level, verbose=verbose, log_dir=config.logs_dir)
    return config


def _cmd_serve(verbose: bool) -> None:
    """Load config and serve until interrupted."""
    config = _configure(verbose)
    try:
        exit_code = asyncio.run(run_server(config))
    except PadmaError as exc:
        _console.print(f"[bold red]Startup failed:[/bold red] {exc}")
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


# ---------------------------------------------------------------------------
# Store inspection
# ---------------------------------------------------------------------------


async def _persisted_ids(config: AppConfig) -> list[str]:
    store = CredentialStore.from_url(config.redis.url, key_prefix=config.redis.key_prefix)
    try:
        return await store.list_session_ids()
    finally:
        await store.close()


async def _forget(config: AppConfig, session_id: str) -> None:
    store = CredentialStore.from_url(config.redis.url, key_prefix=config.redis.key_prefix)
    try:
        await store.delete(session_id)
    finally:
        await store.close()


def _cmd_sessions(verbose: bool) -> None:
    """Print every session id that has persisted credentials."""
    config = _configure(verbose)
    try:
        ids = asyncio.run(_persisted_ids(config))
    except PadmaError as exc:
        _console.print(f"[bold red]Cannot read sessions:[/bold red] {exc}")
        sys.exit(1)

    _console.print()
    if not ids:
        _console.print("[dim]No persisted sessions.[/dim]")
        _console.print()
        return
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("Session", style="bold green")
    table.add_column("Redis key", style="dim")
    for session_id in ids:
        table.add_row(session_id, f"{config.redis.key_prefix}{session_id}")
    _console.print(
        Panel(table, title=f"[bold]Sessions ({len(ids)})[/bold]", border_style="blue"),
    )
    _console.print()


def _cmd_forget(args: list[str], verbose: bool) -> None:
    """Delete persisted credentials for one session id."""
    positional = [a for a in args if not a.startswith("-")]
    if len(positional) < 2:
        _console.print("[bold yellow]Usage: padma forget <session-id>[/bold yellow]")
        sys.exit(2)
    session_id = positional[1]
    config = _configure(verbose)
    try:
        asyncio.run(_forget(config, session_id))
    except PadmaError as exc:
        _console.print(f"[bold red]Delete failed:[/bold red] {exc}")
        sys.exit(1)
    _console.print(f"[green]Credentials for [bold]{session_id}[/bold] deleted.[/green]")


def _print_version() -> None:
    _console.print(f"padma-wa {get_current_version()}")


def _print_usage() -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold green", min_width=26)
    table.add_column()
    table.add_row("padma [serve]", "Restore sessions and start the API server")
    table.add_row("padma sessions", "List sessions with persisted credentials")
    table.add_row("padma forget <id>", "Delete persisted credentials of a session")
    table.add_row("padma version", "Show installed version")
    table.add_row("-v, --verbose", "Debug logging")
    _console.print()
    _console.print(
        Panel(table, title="[bold]PADMA Commands[/bold]", border_style="blue", padding=(1, 0)),
    )
    _console.print()


def main() -> None:
    """CLI entry point."""
    args = sys.argv[1:]
    verbose = "--verbose" in args or "-v" in args
    positional = [a for a in args if not a.startswith("-")]
    command = positional[0] if positional else "serve"
    if "--help" in args or "-h" in args:
        command = "help"

    dispatch: dict[str, Callable[[], None]] = {
        "help": _print_usage,
        "version": _print_version,
        "serve": lambda: _cmd_serve(verbose),
        "sessions": lambda: _cmd_sessions(verbose),
        "forget": lambda: _cmd_forget(args, verbose),
    }

    handler = dispatch.get(command)
    if handler is None:
        _console.print(f"[bold red]Unknown command:[/bold red] {command}")
        _print_usage()
        sys.exit(2)
    handler()


if __name__ == "__main__":
    main()
