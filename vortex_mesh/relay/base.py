"""Signaling relay interface.

The relay is a path-addressed document store with realtime subscriptions.
Peers use it purely as a message bus for handshake data and presence.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"

Document = Dict[str, Any]
Where = Tuple[str, Any]
DocumentCallback = Callable[[Optional[Document]], Any]
CollectionCallback = Callable[[List["DocumentChange"]], Any]


@dataclass
class DocumentChange:
    """A single change in a subscribed collection.

    Attributes:
        type: One of ``added``, ``modified`` or ``removed``.
        doc_id: Id of the document within its collection.
        data: Document contents (last known contents for ``removed``).
    """

    type: str
    doc_id: str
    data: Document = field(default_factory=dict)


class Subscription:
    """Handle for a relay subscription.

    ``unsubscribe`` may be called any number of times; only the first call
    runs the cancel function. A cancel function that returns an awaitable
    needs ``tasks`` to run it in.
    """

    def __init__(
        self,
        cancel: Callable[[], Any],
        description: str = "",
        tasks: Optional[BackgroundTasks] = None,
    ):
        self._cancel = cancel
        self._tasks = tasks
        self.description = description
        self.active = True

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        try:
            result = self._cancel()
        except Exception as e:
            logger.warning(f"Error cancelling subscription {self.description}: {e}")
            return
        if not inspect.isawaitable(result):
            return
        if self._tasks is None:
            logger.error(f"No task owner to cancel subscription {self.description}")
            if inspect.iscoroutine(result):
                result.close()
            return
        self._tasks.spawn(result, f"unsubscribe-{self.description}")

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.description} {state}>"


def matches(data: Optional[Document], where: Optional[Where]) -> bool:
    """Return True if ``data`` satisfies an equality filter."""
    if data is None:
        return False
    if where is None:
        return True
    key, value = where
    return data.get(key) == value


class SignalingRelay(ABC):
    """Async document store used for signaling.

    Writes are merges unless ``merge=False``. Collection subscriptions deliver
    the current matching documents as ``added`` changes first, then
    incremental changes. Callbacks may be plain functions or coroutine
    functions.
    """

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        """Return the document at ``path`` or None."""

    @abstractmethod
    async def set(self, path: str, data: Document, merge: bool = True) -> None:
        """Write ``data`` to ``path``, merging into existing fields by default."""

    @abstractmethod
    async def add(self, collection_path: str, data: Document) -> str:
        """Append a document with a generated id and return the id."""

    @abstractmethod
    async def list(self, collection_path: str) -> Dict[str, Document]:
        """Return the documents directly under ``collection_path`` by id."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete the document at ``path``. A missing document is not an error."""

    @abstractmethod
    async def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        """Call ``callback(data)`` with the current and every later value."""

    @abstractmethod
    async def subscribe_collection(
        self,
        collection_path: str,
        callback: CollectionCallback,
        where: Optional[Where] = None,
    ) -> Subscription:
        """Call ``callback(changes)`` for documents under ``collection_path``."""

    async def delete_collection(self, collection_path: str) -> None:
        """Delete every document directly under ``collection_path``."""
        docs = await self.list(collection_path)
        for doc_id in docs:
            await self.delete(f"{collection_path}/{doc_id}")

    async def close(self) -> None:
        """Release relay resources."""
