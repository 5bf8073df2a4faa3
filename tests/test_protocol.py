"""Tests for relay document layout and payload helpers."""

import pytest
from aiortc import RTCIceCandidate, RTCSessionDescription

from vortex_mesh.protocol import (
    ANSWER_CANDIDATES,
    OFFER_CANDIDATES,
    Peer,
    call_path,
    candidate_collections,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
    is_caller,
    make_call_id,
    user_path,
)


class TestCallIdentity:
    """Call ids and caller ownership."""

    def test_call_id_is_order_independent(self):
        assert make_call_id("bob", "alice") == "alice_bob"
        assert make_call_id("alice", "bob") == "alice_bob"

    def test_smaller_id_is_caller(self):
        assert is_caller("alice", "bob")
        assert not is_caller("bob", "alice")

    def test_paths(self):
        assert call_path("r1", "bob", "alice") == "sessions/r1/calls/alice_bob"
        assert user_path("r1", "alice") == "sessions/r1/users/alice"

    def test_candidate_collections_by_role(self):
        assert candidate_collections(True) == (OFFER_CANDIDATES, ANSWER_CANDIDATES)
        assert candidate_collections(False) == (ANSWER_CANDIDATES, OFFER_CANDIDATES)


class TestPeerRecord:
    """Presence documents."""

    def test_from_record(self):
        peer = Peer.from_record({"id": "alice", "subSessionId": "general", "isScreenSharing": True})
        assert peer == Peer("alice", "general", True)

    def test_from_record_defaults(self):
        peer = Peer.from_record({"id": "bob"})
        assert peer.sub_room_id is None
        assert peer.is_screen_sharing is False

    def test_from_record_without_id(self):
        with pytest.raises(ValueError):
            Peer.from_record({"subSessionId": "general"})

    def test_to_record(self):
        assert Peer("carol", "music").to_record() == {
            "id": "carol",
            "subSessionId": "music",
            "isScreenSharing": False,
        }


class TestPayloads:
    """Session description and candidate payloads."""

    def test_description_dict(self):
        data = description_to_dict(RTCSessionDescription(sdp="v=0", type="offer"))
        assert data == {"type": "offer", "sdp": "v=0"}
        parsed = description_from_dict(data)
        assert parsed.type == "offer"
        assert parsed.sdp == "v=0"

    def test_malformed_description(self):
        with pytest.raises(ValueError):
            description_from_dict({"type": "offer"})

    def test_candidate_payload_uses_browser_shape(self):
        candidate = RTCIceCandidate(
            component=1,
            foundation="1",
            ip="192.168.1.2",
            port=5000,
            priority=2130706431,
            protocol="udp",
            type="host",
            sdpMid="0",
            sdpMLineIndex=0,
        )
        data = candidate_to_dict(candidate)
        assert data["candidate"].startswith("candidate:")
        assert data["sdpMid"] == "0"
        assert data["sdpMLineIndex"] == 0

        parsed = candidate_from_dict(data)
        assert parsed.ip == "192.168.1.2"
        assert parsed.port == 5000
        assert parsed.sdpMid == "0"

    def test_end_of_candidates_marker(self):
        assert candidate_from_dict({"candidate": "", "sdpMid": "0"}) is None

    def test_malformed_candidate(self):
        with pytest.raises(ValueError):
            candidate_from_dict({"candidate": "candidate:garbage"})
