"""Unified CLI for vortex-mesh using Click."""

import asyncio
import json
import logging
import sys

import click
from loguru import logger

from vortex_mesh.relay.server import DEFAULT_HOST, DEFAULT_PORT, RelayServer
from vortex_mesh.rtc_session import run_session


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Interface to bind.")
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int, help="Port to listen on.")
def relay(host, port):
    """Run the signaling relay server.

    Peers connect with a websocket and use the relay as a shared document
    store for presence and call records.

    Example:
        vortex-mesh relay --host 0.0.0.0 --port 8765
    """
    logger.info(f"Starting relay on ws://{host}:{port}")
    try:
        asyncio.run(RelayServer().serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped by user")
    except OSError as e:
        logger.error(f"Relay failed to start: {e}")
        sys.exit(1)


@cli.command()
@click.option("--room", "-r", type=str, required=True, help="Room ID to join.")
@click.option("--peer-id", "-p", type=str, required=True, help="Local peer ID.")
@click.option(
    "--sub-room",
    "-s",
    type=str,
    required=False,
    help="Sub-room (channel) to enter on join. Stays in the lobby if omitted.",
)
@click.option(
    "--relay-url",
    type=str,
    envvar="VORTEX_RELAY_URL",
    required=False,
    help="Relay server URL. Overrides config file value.",
)
@click.option(
    "--threshold",
    type=float,
    required=False,
    help="Noise gate RMS threshold (0..1). Overrides config file value.",
)
@click.option(
    "--denoise/--no-denoise",
    default=None,
    help="Enable or disable spectral denoising. Overrides config file value.",
)
def join(room, peer_id, sub_room, relay_url, threshold, denoise):
    """Join a room as a headless peer and stay until interrupted.

    Bandwidth statistics are logged once per stats interval.

    Example:
        vortex-mesh join --room demo --peer-id alice --sub-room general
    """
    if threshold is not None and not 0.0 <= threshold <= 1.0:
        logger.error("--threshold must be between 0 and 1")
        sys.exit(1)

    logger.info(f"Joining room {room} as {peer_id}")
    run_session(
        room_id=room,
        peer_id=peer_id,
        sub_room_id=sub_room,
        relay_url=relay_url,
        threshold=threshold,
        denoise=denoise,
    )


@cli.command(name="config")
def show_config():
    """Print the resolved configuration.

    ICE servers are shown as URLs only; credentials are never printed.
    """
    from vortex_mesh.config import get_config

    config = get_config()
    click.echo(json.dumps(config.as_dict(), indent=2))


if __name__ == "__main__":
    cli()
