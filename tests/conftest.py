"""Shared fixtures: fake transports and media, in-memory relay, settle helper."""

import asyncio
import itertools
import os
from fractions import Fraction
from typing import Dict, List

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from vortex_mesh.config import Config
from vortex_mesh.mesh.coordinator import MeshCoordinator
from vortex_mesh.mesh.transport import TransportCounters
from vortex_mesh.protocol import Peer
from vortex_mesh.relay.memory import InMemoryRelay

ROOM = "room-1"
SAMPLE_RATE = 48000
FRAME_SIZE = 960

_sdp_ids = itertools.count(1)


# =============================================================================
# Fake transport
# =============================================================================


class FakeTransport:
    """Stands in for ``PeerTransport``, honouring signaling states."""

    def __init__(self):
        self.connection_state = "new"
        self.ice_connection_state = "new"
        self.signaling_state = "stable"
        self.local_description = None
        self.remote_description = None
        self.handlers: Dict[str, List] = {}
        self.senders: Dict[str, MediaStreamTrack] = {}
        self.transceivers = set()
        self.candidates: List[RTCIceCandidate] = []
        self.offers_created = 0
        self.answers_created = 0
        self.ice_restarts = 0
        self.encoding = None
        self.counters = TransportCounters()
        self.closed = False

    # events

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def emit(self, event, *args):
        for handler in list(self.handlers.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)

    def set_connection_state(self, value):
        self.connection_state = value
        self.emit("connectionstatechange")

    def set_ice_state(self, value):
        self.ice_connection_state = value
        self.emit("iceconnectionstatechange")

    # tracks

    def add_track(self, track):
        self.senders[track.kind] = track
        self.transceivers.add(track.kind)

    def ensure_transceiver(self, kind):
        self.transceivers.add(kind)

    def sender_for(self, kind):
        return self.senders.get(kind)

    def has_sender(self, kind):
        return kind in self.senders

    async def replace_track(self, kind, track):
        if kind not in self.senders:
            return False
        self.senders[kind] = track
        return True

    async def remove_track(self, kind):
        return self.senders.pop(kind, None) is not None

    # negotiation

    async def create_offer(self):
        self.offers_created += 1
        return RTCSessionDescription(sdp=f"offer-{next(_sdp_ids)}", type="offer")

    async def create_answer(self):
        if self.signaling_state != "have-remote-offer":
            raise RuntimeError(f"Cannot answer in {self.signaling_state}")
        self.answers_created += 1
        return RTCSessionDescription(sdp=f"answer-{next(_sdp_ids)}", type="answer")

    async def set_local_description(self, description):
        self.local_description = description
        if description.type == "offer":
            self.signaling_state = "have-local-offer"
        else:
            self.signaling_state = "stable"

    async def set_remote_description(self, description):
        if description.type == "answer" and self.signaling_state != "have-local-offer":
            raise RuntimeError(f"Cannot apply answer in {self.signaling_state}")
        self.remote_description = description
        if description.type == "offer":
            self.signaling_state = "have-remote-offer"
        else:
            self.signaling_state = "stable"

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    def restart_ice(self):
        self.ice_restarts += 1
        return True

    # parameters and stats

    async def set_video_encoding(self, max_bitrate, max_framerate):
        if "video" not in self.senders:
            return False
        self.encoding = (max_bitrate, max_framerate)
        return True

    async def get_counters(self):
        return TransportCounters(self.counters.bytes_sent, self.counters.bytes_received)

    def selected_route(self):
        return ("host", "srflx")

    async def close(self):
        self.closed = True
        self.connection_state = "closed"


# =============================================================================
# Fake media
# =============================================================================


def make_audio_frame(samples, pts=0, layout="mono"):
    """Build a packed s16 frame from float samples in [-1, 1]."""
    data = (np.clip(samples, -1, 1) * 32767).astype(np.int16).reshape(1, -1)
    frame = av.AudioFrame.from_ndarray(data, format="s16", layout=layout)
    frame.sample_rate = SAMPLE_RATE
    frame.pts = pts
    frame.time_base = Fraction(1, SAMPLE_RATE)
    return frame


def tone(amplitude, frequency=440.0, n=FRAME_SIZE, offset=0):
    t = (np.arange(n) + offset) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * frequency * t)


class FakeAudioSource(MediaStreamTrack):
    """Microphone stand-in that plays a list of float sample blocks."""

    kind = "audio"

    def __init__(self, blocks=None):
        super().__init__()
        self.blocks = list(blocks or [])
        self._pts = 0

    async def recv(self):
        if self.readyState != "live" or not self.blocks:
            self.stop()
            raise MediaStreamError
        samples = self.blocks.pop(0)
        frame = make_audio_frame(samples, self._pts)
        self._pts += len(samples)
        return frame


class FakeVideoTrack(MediaStreamTrack):
    kind = "video"

    async def recv(self):
        raise MediaStreamError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def relay():
    return InMemoryRelay()


@pytest.fixture
def config(monkeypatch, tmp_path):
    """Config with defaults only, isolated from the environment and files."""
    for name in list(os.environ):
        if name.startswith("VORTEX_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg = Config()
    cfg.load()
    return cfg


@pytest.fixture
def settle():
    """Return ``await settle(relay, *coordinators)`` that runs until quiet."""

    async def _settle(relay, *coordinators, rounds=10):
        for _ in range(rounds):
            await relay.drain()
            for coordinator in coordinators:
                await coordinator.wait_idle()
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def make_coordinator(relay):
    """Factory for coordinators backed by fake transports."""

    def _make(local_id, ice_restart_grace=3.0):
        return MeshCoordinator(
            relay,
            ROOM,
            local_id,
            transport_factory=FakeTransport,
            ice_restart_grace=ice_restart_grace,
        )

    return _make


@pytest.fixture
def mesh_room(relay, make_coordinator, settle):
    """Build coordinators for ``ids`` all in one sub-room and let them converge."""

    async def _build(*ids, sub_room="general"):
        coordinators = {peer_id: make_coordinator(peer_id) for peer_id in ids}
        for coordinator in coordinators.values():
            await coordinator.start()
        members = [Peer(peer_id, sub_room) for peer_id in ids]
        for coordinator in coordinators.values():
            await coordinator.move_to_sub_room(sub_room)
        for coordinator in coordinators.values():
            await coordinator.on_membership_changed(members)
        await settle(relay, *coordinators.values())
        return coordinators

    return _build


@pytest.fixture
def microphone():
    """Device factory handing out ``FakeAudioSource`` tracks.

    ``microphone.sources`` lists every opened source; set ``microphone.error``
    to make the next open fail.
    """

    class _Microphone:
        def __init__(self):
            self.sources = []
            self.error = None
            self.blocks = [tone(0.2, offset=i * FRAME_SIZE) for i in range(50)]

        def __call__(self):
            if self.error is not None:
                raise self.error
            source = FakeAudioSource(self.blocks)
            self.sources.append(source)
            return object(), source

    return _Microphone()
