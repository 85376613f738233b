"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections import Counter, defaultdict
from typing import Any, AsyncIterator, Callable

from actionlog_recorder.storage.base import ErrorListener, SortSpec, StoreError
from actionlog_recorder.storage.models import TASK_COLLECTION, ChangeEvent
from actionlog_recorder.storage.query import matches, sort_documents


class InMemoryDocumentStore:
    """Simple in-memory document store with switches for injecting failures.

    ``available`` decides whether ``connect`` succeeds. ``fail_find``,
    ``fail_exists`` and ``fail_create`` make the matching round trip raise
    ``StoreError`` while connected. ``calls`` counts every round trip by name.
    """

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.fail_find = False
        self.fail_exists = False
        self.fail_create: Callable[[str, dict[str, Any]], bool] | None = None
        self.calls: Counter[str] = Counter()
        self.unique_fields: dict[str, str] = {TASK_COLLECTION: "taskId"}

        self._collections: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._listeners: list[ErrorListener] = []
        self._watchers: list[asyncio.Queue[ChangeEvent | BaseException]] = []
        self._ids = itertools.count(1)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.calls["connect"] += 1
        await asyncio.sleep(0)
        if not self.available:
            raise StoreError("store unreachable")
        self._connected = True

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    def drop_connection(self, error: BaseException | None = None) -> None:
        """Simulate a mid-session disconnect: fire listeners and end watch streams."""
        failure = error or StoreError("connection closed")
        self._connected = False
        for queue in list(self._watchers):
            queue.put_nowait(failure)
        for listener in list(self._listeners):
            listener(failure)

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        sort: SortSpec | None = None,
    ) -> dict[str, Any] | None:
        await self._round_trip("find_one")
        if self.fail_find:
            raise StoreError(f"find on {collection} failed")
        found = [doc for doc in self._collections[collection] if matches(doc, filter)]
        ordered = sort_documents(found, sort)
        return copy.deepcopy(ordered[0]) if ordered else None

    async def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        await self._round_trip("create")
        if self.fail_create is not None and self.fail_create(collection, document):
            raise StoreError(f"write to {collection} failed")
        unique = self.unique_fields.get(collection)
        if unique is not None and any(
            doc.get(unique) == document.get(unique) for doc in self._collections[collection]
        ):
            raise StoreError(f"duplicate key {unique}={document.get(unique)!r} in {collection}")

        stored = copy.deepcopy(document)
        stored["_id"] = next(self._ids)
        self._collections[collection].append(stored)
        self._publish(ChangeEvent(collection=collection, operation_type="insert"))
        return copy.deepcopy(stored)

    async def exists(self, collection: str, filter: dict[str, Any]) -> bool:
        await self._round_trip("exists")
        if self.fail_exists:
            raise StoreError(f"exists on {collection} failed")
        return any(matches(doc, filter) for doc in self._collections[collection])

    async def delete_many(self, collection: str, filter: dict[str, Any]) -> int:
        await self._round_trip("delete_many")
        kept = [doc for doc in self._collections[collection] if not matches(doc, filter)]
        removed = len(self._collections[collection]) - len(kept)
        self._collections[collection] = kept
        for _ in range(removed):
            self._publish(ChangeEvent(collection=collection, operation_type="delete"))
        return removed

    def watch(self) -> AsyncIterator[ChangeEvent]:
        return self._watch()

    async def close(self) -> None:
        self._connected = False
        for queue in list(self._watchers):
            queue.put_nowait(StoreError("store closed"))

    def documents(self, collection: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._collections[collection])

    def seed(self, collection: str, *documents: dict[str, Any]) -> None:
        """Insert documents directly, without a round trip or change events."""
        for document in documents:
            stored = copy.deepcopy(document)
            stored.setdefault("_id", next(self._ids))
            self._collections[collection].append(stored)

    async def _watch(self) -> AsyncIterator[ChangeEvent]:
        if not self._connected:
            raise StoreError("not connected")
        queue: asyncio.Queue[ChangeEvent | BaseException] = asyncio.Queue()
        self._watchers.append(queue)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self._watchers.remove(queue)

    def _publish(self, event: ChangeEvent) -> None:
        for queue in list(self._watchers):
            queue.put_nowait(event)

    async def _round_trip(self, name: str) -> None:
        self.calls[name] += 1
        await asyncio.sleep(0)
        if not self._connected:
            raise StoreError(f"{name} failed: not connected")
