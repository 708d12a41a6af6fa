"""
Switchyard CLI

Command-line interface for listening to and publishing on realtime channels.
"""

import asyncio
import logging
from typing import Any

import click
import orjson
import structlog

from switchyard import __version__
from switchyard.config import settings
from switchyard.realtime import ConnectionManager, SubscribeStatus

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    """Route structlog output through a level filter."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
    )


# ══════════════════════════════════════════════════════════════
# CLI Group
# ══════════════════════════════════════════════════════════════


@click.group()
@click.version_option(version=__version__, prog_name="switchyard")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Switchyard - realtime channels over a single connection."""
    configure_logging("DEBUG" if debug else settings.log_level)


# ══════════════════════════════════════════════════════════════
# Channel Commands
# ══════════════════════════════════════════════════════════════


async def _subscribed(client: ConnectionManager, topic: str, private: bool):
    """Subscribe to a topic and wait for the first terminal status."""
    channel = client.channel(topic, {"private": private})
    outcome: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_status(status: SubscribeStatus, error: Exception | None) -> None:
        if not outcome.done():
            outcome.set_result((status, error))

    channel.subscribe(on_status)
    status, error = await outcome
    return channel, status, error


async def _listen(topic: str, event: str, sub_event: str | None, private: bool) -> None:
    client = ConnectionManager(settings.realtime_url, settings.client_options())
    channel = client.channel(topic, {"private": private})

    def echo(payload: dict[str, Any]) -> None:
        click.echo(orjson.dumps(payload, default=str).decode())

    channel.on(event, echo, {"event": sub_event} if sub_event else None)

    try:
        _, status, error = await _subscribed(client, topic, private)
        click.echo(f"{status.value}" + (f": {error}" if error else ""), err=True)
        await asyncio.Event().wait()
    finally:
        client.disconnect()


async def _send(topic: str, event: str, payload: dict[str, Any], private: bool) -> str:
    client = ConnectionManager(settings.realtime_url, settings.client_options())
    try:
        channel, status, error = await _subscribed(client, topic, private)
        if status is not SubscribeStatus.SUBSCRIBED:
            raise click.ClickException(f"subscribe failed: {status.value} {error or ''}".strip())
        return await channel.send("broadcast", event, payload)
    finally:
        client.disconnect()


@cli.command()
@click.argument("topic")
@click.option("--event", "-e", default="broadcast", help="Channel event to listen for")
@click.option("--filter", "-f", "sub_event", default="*", help="Sub-event filter for broadcast/presence/system")
@click.option("--private/--public", default=False, help="Join as a private channel")
def listen(topic: str, event: str, sub_event: str, private: bool) -> None:
    """Subscribe to TOPIC and print incoming events as JSON lines."""
    try:
        asyncio.run(_listen(topic, event, sub_event, private))
    except KeyboardInterrupt:
        click.echo("Stopped", err=True)


@cli.command()
@click.argument("topic")
@click.argument("event")
@click.argument("payload", default="{}")
@click.option("--private/--public", default=False, help="Join as a private channel")
def send(topic: str, event: str, payload: str, private: bool) -> None:
    """Broadcast EVENT with a JSON PAYLOAD on TOPIC."""
    try:
        data = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="PAYLOAD")
    if not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object", param_hint="PAYLOAD")

    status = asyncio.run(_send(topic, event, data, private))
    click.echo(status)


# ══════════════════════════════════════════════════════════════
# Config Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
def config() -> None:
    """Show current configuration."""
    click.echo("Switchyard Configuration\n")

    config_items = [
        ("Realtime URL", settings.realtime_url),
        ("API Key", settings.api_key),
        ("Access Token", settings.access_token or ""),
        ("Protocol vsn", settings.vsn),
        ("Timeout", f"{settings.timeout}s"),
        ("Heartbeat", f"{settings.heartbeat_interval}s"),
        ("Reconnect after", ", ".join(str(d) for d in settings.reconnect_after)),
        ("Rejoin after", ", ".join(str(d) for d in settings.rejoin_after)),
        ("Log level", settings.log_level),
    ]

    for key, value in config_items:
        # Mask sensitive values
        if "key" in key.lower() or "token" in key.lower():
            value = "***" if value else "Not set"
        click.echo(f"  {key:20} {value}")


# ══════════════════════════════════════════════════════════════
# Entry Point
# ══════════════════════════════════════════════════════════════


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
