"""Network client for the relay server."""

import asyncio
import inspect
import itertools
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

import websockets

from vortex_mesh.errors import RelayError
from vortex_mesh.relay.base import (
    CollectionCallback,
    Document,
    DocumentCallback,
    DocumentChange,
    SignalingRelay,
    Subscription,
    Where,
)
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0


class WebSocketRelay(SignalingRelay):
    """``SignalingRelay`` backed by a ``RelayServer`` over WebSocket.

    Use ``await WebSocketRelay.connect(url)`` to open a connection. A
    background reader task resolves request futures and dispatches pushed
    subscription messages in arrival order.
    """

    def __init__(self, websocket, url: str = ""):
        self.websocket = websocket
        self.url = url
        self._request_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._callbacks: Dict[str, Callable] = {}
        self._tasks = BackgroundTasks("ws-relay")
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    async def connect(cls, url: str) -> "WebSocketRelay":
        """Connect to a relay server.

        Raises:
            RelayError: If the server cannot be reached.
        """
        try:
            websocket = await websockets.connect(url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayError(f"Could not connect to relay at {url}: {e}") from e
        relay = cls(websocket, url)
        relay._reader_task = asyncio.create_task(relay._read_loop())
        logger.info(f"Connected to relay at {url}")
        return relay

    async def _read_loop(self):
        try:
            async for raw in self.websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON message from relay")
                    continue
                self._dispatch(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Relay connection closed")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(RelayError("Relay connection closed"))
            self._pending.clear()

    def _dispatch(self, message: Dict[str, Any]):
        msg_type = message.get("type")

        if msg_type == "response":
            future = self._pending.pop(message.get("request_id"), None)
            if future is None or future.done():
                return
            if message.get("ok"):
                future.set_result(message.get("result"))
            else:
                future.set_exception(RelayError(message.get("error", "Relay error")))
            return

        if msg_type in ("snapshot", "changes"):
            callback = self._callbacks.get(message.get("subscription_id"))
            if callback is None:
                return
            if msg_type == "snapshot":
                payload = message.get("data")
            else:
                payload = [DocumentChange(**c) for c in message.get("changes", [])]
            try:
                result = callback(payload)
            except Exception as e:
                logger.error(f"Relay callback failed: {e}")
                return
            if inspect.isawaitable(result):
                self._tasks.spawn(result, msg_type)
            return

        logger.warning(f"Unknown relay message type: {msg_type}")

    async def _request(self, msg_type: str, **fields) -> Any:
        if self._closed:
            raise RelayError("Relay is closed")
        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.websocket.send(
                json.dumps({"type": msg_type, "request_id": request_id, **fields})
            )
        except websockets.exceptions.ConnectionClosed as e:
            self._pending.pop(request_id, None)
            raise RelayError(f"Relay connection closed: {e}") from e
        try:
            return await asyncio.wait_for(future, REQUEST_TIMEOUT)
        except asyncio.TimeoutError as e:
            self._pending.pop(request_id, None)
            raise RelayError(f"Relay request {msg_type} timed out") from e

    async def get(self, path: str) -> Optional[Document]:
        return await self._request("get", path=path)

    async def set(self, path: str, data: Document, merge: bool = True) -> None:
        await self._request("set", path=path, data=data, merge=merge)

    async def add(self, collection_path: str, data: Document) -> str:
        return await self._request("add", path=collection_path, data=data)

    async def list(self, collection_path: str) -> Dict[str, Document]:
        return await self._request("list", path=collection_path)

    async def delete(self, path: str) -> None:
        await self._request("delete", path=path)

    async def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        return await self._subscribe("subscribe_document", path, callback)

    async def subscribe_collection(
        self,
        collection_path: str,
        callback: CollectionCallback,
        where: Optional[Where] = None,
    ) -> Subscription:
        return await self._subscribe(
            "subscribe_collection",
            collection_path,
            callback,
            where=list(where) if where else None,
        )

    async def _subscribe(self, msg_type: str, path: str, callback: Callable, **fields):
        subscription_id = uuid.uuid4().hex
        # Registered before the request so the first push is never missed
        self._callbacks[subscription_id] = callback
        try:
            await self._request(
                msg_type, path=path, subscription_id=subscription_id, **fields
            )
        except RelayError:
            self._callbacks.pop(subscription_id, None)
            raise

        def cancel():
            self._callbacks.pop(subscription_id, None)
            if not self._closed:
                return self._unsubscribe_remote(subscription_id)

        return Subscription(cancel, f"{msg_type}:{path}", self._tasks)

    async def _unsubscribe_remote(self, subscription_id: str):
        try:
            await self._request("unsubscribe", subscription_id=subscription_id)
        except RelayError as e:
            logger.debug(f"Unsubscribe {subscription_id} failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._callbacks.clear()
        await self.websocket.close()
        if self._reader_task:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        await self._tasks.cancel_all()
        logger.info(f"Disconnected from relay at {self.url}")
