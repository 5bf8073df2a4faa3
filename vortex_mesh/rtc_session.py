"""Entry point for a headless vortex-mesh session."""

import asyncio
import logging
from typing import Optional

from vortex_mesh.config import get_config
from vortex_mesh.mesh.stats import format_rate, format_total
from vortex_mesh.relay.websocket import WebSocketRelay
from vortex_mesh.session import EVENT_BANDWIDTH, RoomSession, SessionEvent


def log_session_event(event: SessionEvent):
    """Log the session events a headless peer cares about."""
    if event.kind == EVENT_BANDWIDTH:
        stats = event.payload
        logging.info(
            f"Bandwidth: up {format_rate(stats.upload_rate)} "
            f"({format_total(stats.total_bytes_sent)}), "
            f"down {format_rate(stats.download_rate)} "
            f"({format_total(stats.total_bytes_received)})"
        )
    elif event.peer_id is not None:
        logging.info(f"{event.kind} [{event.peer_id}]: {event.payload}")
    else:
        logging.info(f"{event.kind}: {event.payload}")


async def run_session_async(
    room_id: str,
    peer_id: str,
    sub_room_id: Optional[str],
    relay_url: str,
    stop_event: Optional[asyncio.Event] = None,
):
    """Join a room over the relay and stay until ``stop_event`` is set."""
    relay = await WebSocketRelay.connect(relay_url)
    session = RoomSession(relay, room_id, peer_id)
    session.add_listener(log_session_event)
    try:
        await session.start(sub_room_id)
        if session.pipeline.device_error:
            logging.warning(f"Joined without microphone: {session.pipeline.device_error}")
        await (stop_event or asyncio.Event()).wait()
    finally:
        await session.shutdown()
        await relay.close()


def run_session(
    room_id: str,
    peer_id: str,
    sub_room_id: Optional[str] = None,
    relay_url: Optional[str] = None,
    threshold: Optional[float] = None,
    denoise: Optional[bool] = None,
):
    """Create a RoomSession and run it until interrupted.

    Args:
        room_id: Room to join.
        peer_id: Local peer id.
        sub_room_id: Sub-room to enter on join (lobby if None).
        relay_url: Relay server URL. CLI option overrides config.
        threshold: Noise gate threshold override.
        denoise: Denoise enablement override.
    """
    config = get_config()
    if threshold is not None:
        config.noise_gate_threshold = threshold
    if denoise is not None:
        config.denoise_enabled = denoise
    effective_relay_url = relay_url or config.relay_url

    logging.info(f"Using relay at {effective_relay_url}")
    try:
        asyncio.run(
            run_session_async(room_id, peer_id, sub_room_id, effective_relay_url)
        )
    except KeyboardInterrupt:
        logging.info("Session interrupted by user. Shutting down...")
    finally:
        logging.info("Session exiting...")
