"""WebSocket relay server.

Exposes an ``InMemoryRelay`` to network clients. Every client message is a
JSON request carrying a ``request_id``; the server answers with a
``response`` message and pushes ``snapshot``/``changes`` messages for the
client's subscriptions.

Client -> server::

    {"type": "get" | "delete", "request_id": 1, "path": "..."}
    {"type": "set", "request_id": 2, "path": "...", "data": {...}, "merge": true}
    {"type": "add" | "list", "request_id": 3, "path": "<collection>", "data": {...}}
    {"type": "subscribe_document", "request_id": 4, "path": "...",
     "subscription_id": "..."}
    {"type": "subscribe_collection", "request_id": 5, "path": "<collection>",
     "where": ["calleeId", "bob"], "subscription_id": "..."}
    {"type": "unsubscribe", "request_id": 6, "subscription_id": "..."}

Server -> client::

    {"type": "response", "request_id": 1, "ok": true, "result": ...}
    {"type": "response", "request_id": 1, "ok": false, "error": "..."}
    {"type": "snapshot", "subscription_id": "...", "data": {...} | null}
    {"type": "changes", "subscription_id": "...",
     "changes": [{"type": "added", "doc_id": "...", "data": {...}}]}
"""

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import websockets

from vortex_mesh.relay.base import DocumentChange, Subscription
from vortex_mesh.relay.memory import InMemoryRelay

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8765


class _ClientSession:
    """Per-socket state: outbound queue and owned subscriptions."""

    def __init__(self, websocket):
        self.websocket = websocket
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.subscriptions: Dict[str, Subscription] = {}

    def push(self, message: Dict[str, Any]):
        self.outbox.put_nowait(json.dumps(message))

    async def writer(self):
        while True:
            message = await self.outbox.get()
            await self.websocket.send(message)


class RelayServer:
    """Serves a document relay over WebSocket.

    Args:
        relay: Backing store. A fresh ``InMemoryRelay`` is created if omitted.
    """

    def __init__(self, relay: Optional[InMemoryRelay] = None):
        self.relay = relay or InMemoryRelay()
        self.clients: List[_ClientSession] = []

    async def handler(self, websocket):
        """Handle a WebSocket connection."""
        client = _ClientSession(websocket)
        self.clients.append(client)
        writer_task = asyncio.create_task(client.writer())
        client_id = id(websocket)
        logger.info(f"Relay client connected: {client_id} (total: {len(self.clients)})")

        try:
            async for raw in websocket:
                try:
                    request = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping non-JSON message from {client_id}")
                    continue
                response = await self.handle_request(client, request)
                client.push(response)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {client_id}")
        finally:
            for subscription in client.subscriptions.values():
                subscription.unsubscribe()
            client.subscriptions.clear()
            writer_task.cancel()
            self.clients.remove(client)
            logger.info(
                f"Removed relay client: {client_id} (remaining: {len(self.clients)})"
            )

    async def handle_request(
        self, client: _ClientSession, request: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Execute one request against the backing relay.

        Args:
            client: Session of the requesting socket.
            request: Decoded request message.

        Returns:
            Response message for the client.
        """
        request_id = request.get("request_id")
        msg_type = request.get("type")
        path = request.get("path", "")

        try:
            if msg_type == "get":
                result = await self.relay.get(path)
            elif msg_type == "set":
                await self.relay.set(
                    path, request.get("data") or {}, merge=request.get("merge", True)
                )
                result = None
            elif msg_type == "add":
                result = await self.relay.add(path, request.get("data") or {})
            elif msg_type == "list":
                result = await self.relay.list(path)
            elif msg_type == "delete":
                await self.relay.delete(path)
                result = None
            elif msg_type == "subscribe_document":
                result = await self._subscribe_document(client, request)
            elif msg_type == "subscribe_collection":
                result = await self._subscribe_collection(client, request)
            elif msg_type == "unsubscribe":
                subscription = client.subscriptions.pop(request.get("subscription_id"), None)
                if subscription:
                    subscription.unsubscribe()
                result = None
            else:
                raise ValueError(f"Unknown request type: {msg_type}")
        except Exception as e:
            logger.warning(f"Relay request {msg_type} {path} failed: {e}")
            return {"type": "response", "request_id": request_id, "ok": False, "error": str(e)}

        return {"type": "response", "request_id": request_id, "ok": True, "result": result}

    async def _subscribe_document(self, client: _ClientSession, request: Dict[str, Any]):
        subscription_id = request["subscription_id"]

        def on_snapshot(data):
            client.push(
                {"type": "snapshot", "subscription_id": subscription_id, "data": data}
            )

        client.subscriptions[subscription_id] = await self.relay.subscribe_document(
            request["path"], on_snapshot
        )
        return subscription_id

    async def _subscribe_collection(self, client: _ClientSession, request: Dict[str, Any]):
        subscription_id = request["subscription_id"]
        where = request.get("where")

        def on_changes(changes: List[DocumentChange]):
            client.push(
                {
                    "type": "changes",
                    "subscription_id": subscription_id,
                    "changes": [asdict(change) for change in changes],
                }
            )

        client.subscriptions[subscription_id] = await self.relay.subscribe_collection(
            request["path"], on_changes, where=tuple(where) if where else None
        )
        return subscription_id

    async def serve(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        """Start the relay server and run forever."""
        async with websockets.serve(self.handler, host, port):
            logger.info(f"Relay server running on ws://{host}:{port}")
            await asyncio.Future()  # Run forever
