"""
Main entry point for Webhook Brain.

This module provides the command-line interface for the delivery engine:
running it against an event stream, writing a starter configuration and
the operator tasks around it.
"""

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Optional

import click
import structlog

from .config.settings import create_default_config, load_config
from .ingest.transport import LineEventSource
from .server import WebhookBrainServer
from .storage.payloads import FilesystemPayloadStore
from .utils.logging import setup_logging
from .webhooks.deadletter import JsonlDeadLetterSink

logger = structlog.get_logger(__name__)


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set logging level",
)
def serve(config: Optional[Path] = None, log_level: Optional[str] = None) -> None:
    """
    Run the delivery engine.

    Reads events as JSON lines from stdin, one object per line with
    ``event_type``, ``event_id``, ``payload`` and optionally
    ``payload_encoding``. Runs until stdin closes or a signal arrives.
    """
    try:
        config_data = load_config(config_path=config)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    if log_level:
        config_data.server.log_level = log_level.upper()
    setup_logging(config_data.server.log_level)

    logger.info(
        "Starting Webhook Brain",
        version=config_data.version,
        config_file=str(config) if config else "default",
        log_level=config_data.server.log_level,
        registry_source=config_data.registry.source,
    )

    server = WebhookBrainServer(config_data)
    try:
        events = LineEventSource(derive_event_ids=config_data.ingest.derive_missing_event_ids)
        asyncio.run(server.run(events))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    except Exception as e:
        logger.error("Engine failed", error=str(e), exc_info=True)
        sys.exit(1)


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    help="Path to save configuration file",
)
def init_config(config: Optional[Path] = None) -> None:
    """Initialize a configuration file with default settings."""
    config_path = config or Path("config.json")

    if config_path.exists():
        click.echo(f"Configuration file already exists: {config_path}")
        if not click.confirm("Overwrite?"):
            return

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"Failed to create configuration file: {e}", err=True)
        sys.exit(1)

    click.echo(f"Created configuration file: {config_path}")
    click.echo("\nNext steps:")
    click.echo("1. Point registry.path at a JSON file of targets, filters and subscriptions,")
    click.echo("   or set WEBHOOK_BRAIN_REGISTRY_URL to use the registration API.")
    click.echo("2. Pipe events into the engine:")
    click.echo(f"   webhook-brain serve --config {config_path} < events.jsonl")


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Path to configuration file",
)
@click.option(
    "--retention-seconds",
    type=float,
    help="Override payload_store.retention_seconds (never below retry.window_seconds)",
)
def purge_payloads(config: Path, retention_seconds: Optional[float] = None) -> None:
    """Delete stored payloads older than the retention period."""
    config_data = load_config(config_path=config)
    setup_logging(config_data.server.log_level)

    if config_data.payload_store.backend != "filesystem":
        click.echo("Only the filesystem payload store can be purged", err=True)
        sys.exit(1)

    retention = retention_seconds or config_data.payload_store.retention_seconds
    if retention < config_data.retry.window_seconds:
        click.echo(
            f"Retention of {retention}s is shorter than the retry window "
            f"({config_data.retry.window_seconds}s); pending deliveries could lose their payload",
            err=True,
        )
        sys.exit(1)

    store = FilesystemPayloadStore(Path(config_data.payload_store.directory))
    removed = store.purge_expired(retention, now=time.time())
    click.echo(f"Removed {removed} expired payload(s) from {store.directory}")


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Path to configuration file",
)
@click.option("--limit", type=int, default=50, show_default=True, help="Records to show")
def list_dead_letters(config: Path, limit: int) -> None:
    """Print dead-lettered deliveries as JSON lines."""
    config_data = load_config(config_path=config)
    if config_data.dead_letter.backend != "jsonl":
        click.echo("Only the jsonl dead-letter sink can be listed from the CLI", err=True)
        sys.exit(1)

    sink = JsonlDeadLetterSink(Path(config_data.dead_letter.path))
    records = asyncio.run(sink.list(limit=limit))
    for record in records:
        delivery = record.delivery
        click.echo(
            json.dumps(
                {
                    "delivery_id": delivery.delivery_id,
                    "event_id": delivery.event_id,
                    "target_id": delivery.target_id,
                    "url": delivery.url,
                    "attempts": delivery.attempt,
                    "reason": record.description,
                    "status_code": record.status_code,
                    "error": record.error,
                    "dead_lettered_at": record.dead_lettered_at,
                }
            )
        )


@click.group()
@click.version_option(package_name="webhook-brain")
def cli() -> None:
    """Webhook Brain CLI."""


cli.add_command(serve, name="serve")
cli.add_command(init_config, name="init")
cli.add_command(purge_payloads, name="purge-payloads")
cli.add_command(list_dead_letters, name="dead-letters")


if __name__ == "__main__":
    cli()
