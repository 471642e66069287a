"""Unified CLI for meshchat using Click."""

import json
import logging
import sys

import click
from loguru import logger

from meshchat.rtc_chat import run_chat

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--room",
    "-r",
    type=str,
    required=True,
    help="Room code to join (case-insensitive).",
)
@click.option(
    "--name",
    "-n",
    type=str,
    required=True,
    help="Display name shown to other participants.",
)
@click.option(
    "--server",
    "-s",
    type=str,
    envvar="MESHCHAT_SIGNALING_HTTP",
    required=False,
    help="Signaling service base URL. Overrides config file value.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for connection diagnostics.",
)
def join(room, name, server, log_level):
    """Join a room and chat with everyone in it.

    Every participant opens a direct WebRTC data channel to every other
    participant; the signaling service is only used to set those up.

    Example:
        meshchat join --room ABC123 --name alice
    """
    if not room.strip():
        logger.error("Room code cannot be empty")
        sys.exit(1)
    if not name.strip():
        logger.error("Name cannot be empty")
        sys.exit(1)

    logging.basicConfig(level=getattr(logging, log_level.upper()))

    try:
        entered = run_chat(room_id=room, username=name, server=server)
    except Exception as e:
        logger.error(f"Chat error: {e}")
        sys.exit(1)

    if not entered:
        logger.error(f"Could not join room {room}")
        sys.exit(1)


@cli.command(name="config")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON.")
def show_config(as_json):
    """Show the effective configuration.

    Values come from environment variables, then meshchat.toml in the
    current directory or ~/.meshchat/config.toml, then defaults.
    """
    from meshchat.config import get_config

    settings = get_config().to_dict()

    if as_json:
        click.echo(json.dumps(settings, indent=2))
        return

    click.echo("")
    click.echo(f"  Environment:          {settings['environment']}")
    click.echo(f"  Config file:          {settings['config_file'] or '(none)'}")
    click.echo(f"  Signaling service:    {settings['signaling_http']}")
    click.echo(f"  Poll interval:        {settings['poll_interval']}s")
    click.echo(f"  Negotiation timeout:  {settings['negotiation_timeout']}s")
    click.echo(f"  Request timeout:      {settings['request_timeout']}s")
    click.echo("  ICE servers:")
    for url in settings["ice_servers"]:
        click.echo(f"    - {url}")
    click.echo("")


if __name__ == "__main__":
    cli()
