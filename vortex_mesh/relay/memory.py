"""In-process signaling relay.

``InMemoryRelay`` keeps documents in a dict keyed by path and delivers
subscription notifications on the event loop in FIFO order. It backs the
network relay server and lets several sessions share one room inside a
single process.
"""

import asyncio
import copy
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from vortex_mesh.relay.base import (
    ADDED,
    MODIFIED,
    REMOVED,
    CollectionCallback,
    Document,
    DocumentCallback,
    DocumentChange,
    SignalingRelay,
    Subscription,
    Where,
    matches,
)
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


def parent_path(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def doc_id_of(path: str) -> str:
    return path.rsplit("/", 1)[-1]


@dataclass(eq=False)
class _DocumentWatch:
    path: str
    callback: DocumentCallback
    subscription: Optional[Subscription] = None


@dataclass(eq=False)
class _CollectionWatch:
    collection_path: str
    callback: CollectionCallback
    where: Optional[Where] = None
    visible: Set[str] = field(default_factory=set)
    subscription: Optional[Subscription] = None


class InMemoryRelay(SignalingRelay):
    """Single-process document store with realtime subscriptions."""

    def __init__(self):
        self._docs: Dict[str, Document] = {}
        self._doc_watches: List[_DocumentWatch] = []
        self._collection_watches: List[_CollectionWatch] = []
        self._pending_deliveries = 0
        self._tasks = BackgroundTasks("relay")

    # ── document operations ──────────────────────────────────────────────

    async def get(self, path: str) -> Optional[Document]:
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def set(self, path: str, data: Document, merge: bool = True) -> None:
        before = self._docs.get(path)
        if merge and before is not None:
            after = {**before, **copy.deepcopy(data)}
        else:
            after = copy.deepcopy(data)
        self._docs[path] = after
        logger.debug(f"Relay set {path} ({'merge' if merge else 'overwrite'})")
        self._notify(path, before, after)

    async def add(self, collection_path: str, data: Document) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self.set(f"{collection_path}/{doc_id}", data, merge=False)
        return doc_id

    async def list(self, collection_path: str) -> Dict[str, Document]:
        return {
            doc_id_of(path): copy.deepcopy(data)
            for path, data in self._docs.items()
            if parent_path(path) == collection_path
        }

    async def delete(self, path: str) -> None:
        before = self._docs.pop(path, None)
        if before is None:
            logger.debug(f"Relay delete {path}: not found, ignoring")
            return
        logger.debug(f"Relay delete {path}")
        self._notify(path, before, None)

    # ── subscriptions ────────────────────────────────────────────────────

    async def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        watch = _DocumentWatch(path=path, callback=callback)
        self._doc_watches.append(watch)
        watch.subscription = Subscription(
            lambda: self._remove_watch(self._doc_watches, watch),
            f"doc:{path}",
            self._tasks,
        )
        self._deliver(watch.subscription, callback, copy.deepcopy(self._docs.get(path)))
        return watch.subscription

    async def subscribe_collection(
        self,
        collection_path: str,
        callback: CollectionCallback,
        where: Optional[Where] = None,
    ) -> Subscription:
        watch = _CollectionWatch(
            collection_path=collection_path, callback=callback, where=where
        )
        self._collection_watches.append(watch)
        watch.subscription = Subscription(
            lambda: self._remove_watch(self._collection_watches, watch),
            f"collection:{collection_path}",
            self._tasks,
        )
        initial = []
        for path, data in self._docs.items():
            if parent_path(path) == collection_path and matches(data, where):
                doc_id = doc_id_of(path)
                watch.visible.add(doc_id)
                initial.append(DocumentChange(ADDED, doc_id, copy.deepcopy(data)))
        self._deliver(watch.subscription, callback, initial)
        return watch.subscription

    @staticmethod
    def _remove_watch(watches: list, watch: Any):
        if watch in watches:
            watches.remove(watch)

    def _notify(self, path: str, before: Optional[Document], after: Optional[Document]):
        for watch in list(self._doc_watches):
            if watch.path == path:
                self._deliver(watch.subscription, watch.callback, copy.deepcopy(after))

        collection_path = parent_path(path)
        doc_id = doc_id_of(path)
        for watch in list(self._collection_watches):
            if watch.collection_path != collection_path:
                continue
            now_visible = matches(after, watch.where)
            was_visible = doc_id in watch.visible
            if now_visible and was_visible:
                change = DocumentChange(MODIFIED, doc_id, copy.deepcopy(after))
            elif now_visible:
                watch.visible.add(doc_id)
                change = DocumentChange(ADDED, doc_id, copy.deepcopy(after))
            elif was_visible:
                watch.visible.discard(doc_id)
                change = DocumentChange(REMOVED, doc_id, copy.deepcopy(before or {}))
            else:
                continue
            self._deliver(watch.subscription, watch.callback, [change])

    def _deliver(self, subscription: Subscription, callback: Callable, payload: Any):
        loop = asyncio.get_running_loop()
        self._pending_deliveries += 1
        loop.call_soon(self._invoke, subscription, callback, payload)

    def _invoke(self, subscription: Subscription, callback: Callable, payload: Any):
        self._pending_deliveries -= 1
        if not subscription.active:
            return
        try:
            result = callback(payload)
        except Exception as e:
            logger.error(f"Relay callback for {subscription.description} failed: {e}")
            return
        if inspect.isawaitable(result):
            self._tasks.spawn(result, subscription.description)

    # ── helpers ──────────────────────────────────────────────────────────

    async def drain(self, rounds: int = 200):
        """Wait until all queued notifications and their handlers have run."""
        for _ in range(rounds):
            await asyncio.sleep(0)
            if self._pending_deliveries == 0 and not self._tasks:
                return
            await self._tasks.wait()

    def paths(self, prefix: str = "") -> List[str]:
        """Return the stored document paths starting with ``prefix``."""
        return sorted(p for p in self._docs if p.startswith(prefix))

    @property
    def subscription_count(self) -> int:
        return len(self._doc_watches) + len(self._collection_watches)

    async def close(self) -> None:
        for watch in list(self._doc_watches) + list(self._collection_watches):
            watch.subscription.unsubscribe()
        await self._tasks.cancel_all()
