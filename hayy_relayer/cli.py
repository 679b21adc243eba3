"""
CLI entry point for the Hayy relayer.
"""

import logging
import signal
from pathlib import Path
from typing import Optional

import structlog
import typer
from pydantic import ValidationError

from .config import RelayerConfig
from .registrations import RecentRegistrations, collateral_status
from .state import JsonStateStore, clear_event

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

app = typer.Typer(
    name="hayy-relayer",
    help="Hayy Protocol relayer: Stacks collateral events to the Sui borrow registry",
    add_completion=False,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def configure_logging(level: str = "info", json_logs: bool = False) -> None:
    """Configure structlog for the process."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVELS.get(level, logging.INFO)),
    )


def _load_config(config_path: Optional[Path]) -> RelayerConfig:
    try:
        return RelayerConfig.from_env(config_path)
    except ValidationError as e:
        typer.echo("Invalid configuration:", err=True)
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            typer.echo(f"  {field}: {error['msg']}", err=True)
        raise typer.Exit(code=1)


def _build_context(config: RelayerConfig, recent: Optional[RecentRegistrations] = None):
    from .relayer import RelayerContext

    try:
        return RelayerContext.from_config(config, on_registered=recent)
    except ValueError as e:
        # Malformed keys or addresses
        typer.echo(f"Startup failed: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    once: bool = typer.Option(
        False,
        "--once",
        help="Refresh prices, run one poll tick and exit",
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """
    Start the relayer: watch Stacks collateral events and act on Sui.
    """
    from .relayer import Relayer

    config = _load_config(config_path)
    configure_logging(config.settings.log_level, json_logs)

    context = _build_context(config, RecentRegistrations())
    relayer = Relayer(context)

    try:
        if once:
            typer.echo("Running in single-shot mode...")
            results = relayer.run_once()
            for result in results:
                if result.succeeded:
                    suffix = f" (warning: {result.warning})" if result.warning else ""
                    typer.echo(f"✓ {result.event_id}: {result.destination_tx_ref}{suffix}")
                else:
                    typer.echo(f"✗ {result.event_id}: {result.error_message}")
            typer.echo(f"Processed {len(results)} events")
            return

        def _handle_signal(signum: int, frame: object) -> None:
            relayer.stop()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
        relayer.run()
    finally:
        context.close()


@app.command()
def events(
    config_path: Optional[Path] = ConfigOption,
    since: Optional[int] = typer.Option(
        None,
        "--since",
        help="List events after this block height",
    ),
    lookback: int = typer.Option(
        100,
        "--lookback",
        help="Blocks to look back from the latest block when --since is not given",
    ),
) -> None:
    """
    List collateral events without dispatching them.
    """
    from .monitor import StacksEventMonitor
    from .stacks import StacksApiClient

    config = _load_config(config_path)
    settings = config.settings
    configure_logging(settings.log_level)

    api = StacksApiClient(settings.stacks_api_url, timeout=settings.http_timeout_seconds)
    monitor = StacksEventMonitor(api, settings.stacks_collateral_contract, settings.stacks_confirmations)
    try:
        if since is None:
            found = monitor.fetch_recent_events(lookback)
        else:
            found = monitor.fetch_events_since(since)
    finally:
        api.close()

    if not found:
        typer.echo("No collateral events found.")
        return

    typer.echo(f"Found {len(found)} events:\n")
    for event in found:
        typer.echo(f"  ID: {event.id}")
        typer.echo(f"  Kind: {event.kind.value}")
        typer.echo(f"  Block: {event.block_height}")
        typer.echo(f"  User: {event.principal}")
        typer.echo(f"  Amount: {event.amount} microSTX ({event.amount / 1e6:.6f} STX)")
        if event.kind.value == "deposit":
            typer.echo(f"  Sui address: {event.destination_address or 'MISSING'}")
        typer.echo("")


@app.command()
def status(
    principal: str = typer.Argument(..., help="Stacks address to check"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show the collateral registration status for a Stacks address.
    """
    config = _load_config(config_path)
    configure_logging(config.settings.log_level)

    context = _build_context(config)
    try:
        result = collateral_status(
            principal,
            context.state,
            RecentRegistrations(),
            context.destination.get_position,
        )
    finally:
        context.close()

    typer.echo(result.model_dump_json(indent=2, exclude_none=True))
    if result.status in ("error", "invalid"):
        raise typer.Exit(code=1)


StateFileOption = typer.Option(
    Path("./relayer-state.json"),
    "--state-file",
    envvar="STATE_FILE",
    help="Path to the relayer state file",
)

DatabaseOption = typer.Option(
    None,
    "--database-url",
    envvar="STATE_DATABASE_URL",
    help="Read state from this database instead of the state file",
)


def _open_store(state_file: Path, database_url: Optional[str], quarantine: bool = True):
    if database_url:
        from .db import SqlStateStore

        return SqlStateStore(database_url)
    return JsonStateStore(state_file, quarantine=quarantine)


@app.command()
def state(
    state_file: Path = StateFileOption,
    database_url: Optional[str] = DatabaseOption,
) -> None:
    """
    Summarise the relayer state file.
    """
    configure_logging("warn")
    store = _open_store(state_file, database_url, quarantine=False)
    try:
        current = store.load()
    finally:
        store.close()

    failed = [e for e in current.processed_events.values() if not e.succeeded]
    typer.echo(f"State file: {state_file}")
    typer.echo(f"Last processed block: {current.last_processed_block}")
    typer.echo(f"Processed events: {len(current.processed_events)} ({len(failed)} failed)")
    typer.echo(f"Address mappings: {len(current.address_mappings)}")
    price = current.price_cache
    updated = price.last_update.isoformat() if price.last_update else "never"
    fallback = " (fallback)" if price.is_fallback else ""
    typer.echo(f"STX/USD: {price.stx_usd}{fallback}, updated {updated}")

    for event in failed:
        typer.echo(f"  ✗ {event.event_id}: {event.error_message}")


@app.command()
def retry(
    event_id: str = typer.Argument(..., help="Ledger entry to clear, e.g. 0xabc...:deposit"),
    state_file: Path = StateFileOption,
    database_url: Optional[str] = DatabaseOption,
    rewind_to: Optional[int] = typer.Option(
        None,
        "--rewind-to",
        help="Also move the block cursor back to this height so the event is observed again",
    ),
) -> None:
    """
    Clear a ledger entry so the event is dispatched again.

    Stop the relayer first; it owns the state file while running.
    """
    configure_logging("warn")
    store = _open_store(state_file, database_url)
    try:
        current = store.load()

        removed = clear_event(current, event_id)
        if removed is None:
            typer.echo(f"No ledger entry for {event_id}", err=True)
            raise typer.Exit(code=1)

        if rewind_to is not None and rewind_to < current.last_processed_block:
            current.last_processed_block = rewind_to

        if not store.save(current):
            typer.echo("Could not write the relayer state", err=True)
            raise typer.Exit(code=1)
    finally:
        store.close()

    typer.echo(f"Cleared {event_id} (was {removed.status}).")
    typer.echo(f"Block cursor: {current.last_processed_block}")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from hayy_relayer import __version__
    typer.echo(f"hayy-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
