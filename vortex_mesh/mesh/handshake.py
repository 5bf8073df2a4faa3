"""Offer/answer and candidate exchange through Call Records.

Turns a connection's intent into relay writes and relay changes into
transport calls. Races are resolved by signaling-state guards: offers are
only applied in ``stable``, answers only while a local offer is
outstanding, and every relay delivery is deduplicated.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from vortex_mesh.errors import RelayError, RelayNotFoundError
from vortex_mesh.mesh.connection import PeerConnection
from vortex_mesh.protocol import (
    ANSWER_CANDIDATES,
    FIELD_ANSWER,
    FIELD_CALLEE_ID,
    FIELD_CALLER_ID,
    FIELD_CONNECTION_ID,
    FIELD_OFFER,
    FIELD_RENEGOTIATE,
    OFFER_CANDIDATES,
    call_path,
    candidate_collections,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
)
from vortex_mesh.relay.base import ADDED, DocumentChange, SignalingRelay

logger = logging.getLogger(__name__)

STABLE = "stable"
HAVE_LOCAL_OFFER = "have-local-offer"

# Teardown reason when the other side deletes the Call Record
RECORD_REMOVED = "call record removed"


class HandshakeProtocol:
    """Relay-backed signaling for one local peer in one room.

    Args:
        relay: Signaling relay.
        room_id: Room the Call Records live under.
        local_id: Local peer id.
    """

    def __init__(self, relay: SignalingRelay, room_id: str, local_id: str):
        self.relay = relay
        self.room_id = room_id
        self.local_id = local_id

    def call_path(self, remote_id: str) -> str:
        return call_path(self.room_id, self.local_id, remote_id)

    # ── offer side ───────────────────────────────────────────────────────

    async def create_offer(self, conn: PeerConnection, ice_restart: bool = False) -> bool:
        """Write a fresh offer for ``conn`` and watch for the answer.

        Used for the initial offer and for every renegotiation (track added
        or removed, ICE restart). The previous ``answer`` is cleared in the
        same write.

        Returns:
            False if the connection closed before the offer was written.
        """
        if conn.is_closed:
            return False

        async with conn.negotiation_lock:
            if conn.is_closed:
                return False
            if ice_restart and not conn.transport.restart_ice():
                logger.debug(
                    f"Transport has no ICE restart, renegotiating {conn.peer_id} instead"
                )

            offer = await conn.transport.create_offer()
            await conn.transport.set_local_description(offer)
            local = conn.transport.local_description
            conn.local_offer_sdp = local.sdp

            await self.relay.set(
                self.call_path(conn.peer_id),
                {
                    FIELD_OFFER: description_to_dict(local),
                    FIELD_ANSWER: None,
                    FIELD_CALLER_ID: self.local_id,
                    FIELD_CALLEE_ID: conn.peer_id,
                    FIELD_CONNECTION_ID: conn.connection_id,
                },
                merge=True,
            )
            logger.info(
                f"Sent {'ICE restart ' if ice_restart else ''}offer to {conn.peer_id}"
            )

        if conn.answer_watch is None and not conn.is_closed:
            async def on_call_record(data: Optional[Dict[str, Any]]):
                if data is None:
                    await self._on_record_removed(conn)
                    return
                await self._apply_answer(conn, data)
                await self._check_renegotiation_request(conn, data)

            conn.answer_watch = await self.relay.subscribe_document(
                self.call_path(conn.peer_id), on_call_record
            )
            if conn.is_closed:
                conn.answer_watch.unsubscribe()
        return True

    async def _on_record_removed(self, conn: PeerConnection):
        # The callee dropped its side; this connection can never be answered again
        if conn.is_closed:
            return
        logger.info(f"{conn.peer_id} removed the call record")
        await conn.teardown(RECORD_REMOVED, delete_record=False)

    async def _apply_answer(self, conn: PeerConnection, data: Optional[Dict[str, Any]]):
        if conn.is_closed or not data or not data.get(FIELD_ANSWER):
            return
        offer = data.get(FIELD_OFFER) or {}
        # Only the answer to our outstanding offer counts
        if offer.get("sdp") != conn.local_offer_sdp:
            return

        try:
            answer = description_from_dict(data[FIELD_ANSWER])
        except ValueError as e:
            logger.warning(f"Ignoring malformed answer from {conn.peer_id}: {e}")
            return

        async with conn.negotiation_lock:
            if conn.is_closed:
                return
            if answer.sdp == conn.applied_answer_sdp:
                return
            if conn.transport.signaling_state != HAVE_LOCAL_OFFER:
                logger.debug(
                    f"Ignoring answer from {conn.peer_id} in state "
                    f"{conn.transport.signaling_state}"
                )
                return
            try:
                await conn.transport.set_remote_description(answer)
            except Exception as e:
                logger.error(f"Failed to apply answer from {conn.peer_id}: {e}")
                return
            conn.applied_answer_sdp = answer.sdp
            logger.info(f"Applied answer from {conn.peer_id}")
            await self._flush_pending_candidates(conn)

    async def _check_renegotiation_request(
        self, conn: PeerConnection, data: Optional[Dict[str, Any]]
    ):
        token = (data or {}).get(FIELD_RENEGOTIATE)
        if not token or token == conn.renegotiate_token or conn.is_closed:
            return
        conn.renegotiate_token = token
        if conn.applied_answer_sdp is None:
            # Left over from an earlier call on this record
            return
        logger.info(f"{conn.peer_id} requested renegotiation")
        await self.create_offer(conn)

    async def request_renegotiation(self, conn: PeerConnection):
        """Ask the caller of this pair to send a new offer."""
        if conn.is_closed:
            return
        if conn.is_caller:
            await self.create_offer(conn)
            return
        await self.relay.set(
            self.call_path(conn.peer_id),
            {FIELD_RENEGOTIATE: uuid.uuid4().hex},
            merge=True,
        )
        logger.info(f"Requested renegotiation from {conn.peer_id}")

    # ── answer side ──────────────────────────────────────────────────────

    async def handle_offer(self, conn: PeerConnection, offer_payload: Dict[str, Any]) -> bool:
        """Apply a remote offer and write the answer.

        Offers that arrive while a negotiation is in progress are dropped,
        not queued. Duplicate deliveries of an applied offer are ignored.

        Returns:
            True if an answer was written.
        """
        if conn.is_closed:
            return False
        try:
            offer = description_from_dict(offer_payload)
        except ValueError as e:
            logger.warning(f"Ignoring malformed offer from {conn.peer_id}: {e}")
            return False

        async with conn.negotiation_lock:
            if conn.is_closed:
                return False
            if offer.sdp == conn.applied_offer_sdp:
                logger.debug(f"Ignoring duplicate offer from {conn.peer_id}")
                return False
            state = conn.transport.signaling_state
            if state != STABLE:
                logger.warning(f"Dropping offer from {conn.peer_id} received in state {state}")
                return False

            await conn.transport.set_remote_description(offer)
            conn.applied_offer_sdp = offer.sdp
            await self._flush_pending_candidates(conn)

            answer = await conn.transport.create_answer()
            await conn.transport.set_local_description(answer)
            await self.relay.set(
                self.call_path(conn.peer_id),
                {FIELD_ANSWER: description_to_dict(conn.transport.local_description)},
                merge=True,
            )
            logger.info(f"Sent answer to {conn.peer_id}")
        return True

    # ── candidates ───────────────────────────────────────────────────────

    async def exchange_candidates(self, conn: PeerConnection):
        """Publish local candidates and apply the remote side's list.

        The remote subscription is owned by the connection and cancelled on
        teardown.
        """
        local_collection, remote_collection = candidate_collections(conn.is_caller)
        base = self.call_path(conn.peer_id)

        async def on_local_candidate(candidate):
            if candidate is None or conn.is_closed:
                return
            try:
                await self.relay.add(f"{base}/{local_collection}", candidate_to_dict(candidate))
            except RelayError as e:
                logger.warning(f"Failed to publish candidate for {conn.peer_id}: {e}")

        conn.transport.on("icecandidate", on_local_candidate)

        async def on_remote_candidates(changes: List[DocumentChange]):
            await self._apply_remote_candidates(conn, changes)

        subscription = await self.relay.subscribe_collection(
            f"{base}/{remote_collection}", on_remote_candidates
        )
        conn.add_subscription(subscription)

    async def _apply_remote_candidates(
        self, conn: PeerConnection, changes: List[DocumentChange]
    ):
        for change in changes:
            if conn.is_closed:
                return
            if change.type != ADDED or change.doc_id in conn.applied_candidates:
                continue
            conn.applied_candidates.add(change.doc_id)
            try:
                candidate = candidate_from_dict(change.data)
            except ValueError as e:
                logger.warning(f"Skipping candidate from {conn.peer_id}: {e}")
                continue
            if candidate is None:
                continue
            if conn.transport.remote_description is None:
                conn.pending_candidates.append(candidate)
                continue
            await self._add_candidate(conn, candidate)

    async def _flush_pending_candidates(self, conn: PeerConnection):
        pending, conn.pending_candidates = conn.pending_candidates, []
        for candidate in pending:
            if conn.is_closed:
                return
            await self._add_candidate(conn, candidate)

    async def _add_candidate(self, conn: PeerConnection, candidate):
        try:
            await conn.transport.add_ice_candidate(candidate)
            logger.debug(f"Applied ICE candidate from {conn.peer_id}")
        except Exception as e:
            logger.warning(f"Failed to apply ICE candidate from {conn.peer_id}: {e}")

    # ── cleanup ──────────────────────────────────────────────────────────

    async def delete_call_record(self, remote_id: str):
        """Delete a Call Record and its candidate lists, best-effort."""
        base = self.call_path(remote_id)
        try:
            for collection in (OFFER_CANDIDATES, ANSWER_CANDIDATES):
                await self.relay.delete_collection(f"{base}/{collection}")
            await self.relay.delete(base)
            logger.info(f"Deleted call record {base}")
        except RelayNotFoundError:
            logger.debug(f"Call record {base} already gone")
        except RelayError as e:
            logger.warning(f"Failed to delete call record {base}: {e}")
