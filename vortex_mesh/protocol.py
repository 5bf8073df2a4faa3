"""Relay document protocol for vortex-mesh.

This module defines the document layout and payload formats used to exchange
WebRTC handshake data through the signaling relay. The relay is only a
message bus: peers never talk to each other through it except by reading and
writing these documents.

Document Layout
---------------

**sessions/{room_id}/users/{peer_id}**
    Written by: every peer (its own presence)
    Fields: ``id``, ``subSessionId``, ``isScreenSharing``
    Purpose: membership source; the mesh coordinator reconciles against it

**sessions/{room_id}/calls/{call_id}**
    Written by: the offering peer (offer fields), the answering peer (answer,
    renegotiate)
    Fields: ``offer``, ``answer``, ``callerId``, ``calleeId``, ``connectionId``,
    ``renegotiate``
    Purpose: one Call Record per unordered peer pair. Only the caller ever
    writes offers; a callee that needs a new negotiation (track added, ICE
    restart) writes a fresh ``renegotiate`` token and the caller re-offers.

**sessions/{room_id}/calls/{call_id}/offerCandidates/{auto_id}**
**sessions/{room_id}/calls/{call_id}/answerCandidates/{auto_id}**
    Written by: caller (offerCandidates) / callee (answerCandidates)
    Fields: ``candidate``, ``sdpMid``, ``sdpMLineIndex``
    Purpose: append-only ICE candidate lists

Call Identity
-------------

``call_id`` is the two peer ids sorted and joined with ``_``. The peer with
the smaller id is always the caller, so only one side ever creates the first
offer for a pair (no glare).

Payloads
--------

Session descriptions travel as ``{"type": "offer"|"answer", "sdp": str}``.
Candidates travel as ``{"candidate": "candidate:...", "sdpMid": str,
"sdpMLineIndex": int}``, the same shape browsers produce with
``RTCIceCandidate.toJSON()``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

# Collections
SESSIONS_COLLECTION = "sessions"
CALLS_COLLECTION = "calls"
USERS_COLLECTION = "users"
OFFER_CANDIDATES = "offerCandidates"
ANSWER_CANDIDATES = "answerCandidates"

PATH_SEPARATOR = "/"
CALL_ID_SEPARATOR = "_"

# Call record fields
FIELD_OFFER = "offer"
FIELD_ANSWER = "answer"
FIELD_CALLER_ID = "callerId"
FIELD_CALLEE_ID = "calleeId"
FIELD_CONNECTION_ID = "connectionId"
FIELD_RENEGOTIATE = "renegotiate"

# Presence fields
FIELD_PEER_ID = "id"
FIELD_SUB_SESSION_ID = "subSessionId"
FIELD_IS_SCREEN_SHARING = "isScreenSharing"

# Candidate prefix as produced by browsers
CANDIDATE_PREFIX = "candidate:"


@dataclass(frozen=True)
class Peer:
    """A room participant as seen through the membership source.

    Attributes:
        id: Opaque, orderable peer identifier.
        sub_room_id: Channel the peer is currently in (None while in lobby).
        is_screen_sharing: Whether the peer advertises an active share.
    """

    id: str
    sub_room_id: Optional[str] = None
    is_screen_sharing: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Peer":
        """Build a Peer from a presence document.

        Args:
            record: Presence document with at least ``id``.

        Returns:
            Peer instance.

        Raises:
            ValueError: If the record carries no id.
        """
        peer_id = record.get(FIELD_PEER_ID)
        if not peer_id:
            raise ValueError(f"Presence record without id: {record}")
        return cls(
            id=str(peer_id),
            sub_room_id=record.get(FIELD_SUB_SESSION_ID),
            is_screen_sharing=bool(record.get(FIELD_IS_SCREEN_SHARING, False)),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            FIELD_PEER_ID: self.id,
            FIELD_SUB_SESSION_ID: self.sub_room_id,
            FIELD_IS_SCREEN_SHARING: self.is_screen_sharing,
        }


def join_path(*segments: str) -> str:
    """Join path segments into a relay path."""
    return PATH_SEPARATOR.join(s.strip(PATH_SEPARATOR) for s in segments if s)


def is_caller(local_peer_id: str, remote_peer_id: str) -> bool:
    """Return True if the local peer owns the first offer for this pair."""
    return local_peer_id < remote_peer_id


def make_call_id(peer_a: str, peer_b: str) -> str:
    """Return the order-independent call id for a peer pair."""
    first, second = sorted((peer_a, peer_b))
    return f"{first}{CALL_ID_SEPARATOR}{second}"


def calls_path(room_id: str) -> str:
    return join_path(SESSIONS_COLLECTION, room_id, CALLS_COLLECTION)


def call_path(room_id: str, peer_a: str, peer_b: str) -> str:
    return join_path(calls_path(room_id), make_call_id(peer_a, peer_b))


def users_path(room_id: str) -> str:
    return join_path(SESSIONS_COLLECTION, room_id, USERS_COLLECTION)


def user_path(room_id: str, peer_id: str) -> str:
    return join_path(users_path(room_id), peer_id)


def candidate_collections(caller: bool) -> Tuple[str, str]:
    """Return (local, remote) candidate collection names for a role.

    Args:
        caller: True if the local peer is the caller for this pair.

    Returns:
        Tuple of (collection we write to, collection we listen to).
    """
    if caller:
        return OFFER_CANDIDATES, ANSWER_CANDIDATES
    return ANSWER_CANDIDATES, OFFER_CANDIDATES


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Dict[str, Any]) -> RTCSessionDescription:
    """Parse a session description payload.

    Raises:
        ValueError: If type or sdp is missing.
    """
    if not data or "sdp" not in data or "type" not in data:
        raise ValueError(f"Malformed session description: {data}")
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Parse a candidate payload.

    Returns:
        RTCIceCandidate, or None for an end-of-candidates marker (empty
        candidate string).

    Raises:
        ValueError: If the candidate line cannot be parsed.
    """
    line = (data or {}).get("candidate") or ""
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"Malformed ICE candidate {line!r}: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
