"""MongoDB-backed document store built on motor."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from pymongo.monitoring import (
    TopologyClosedEvent,
    TopologyDescriptionChangedEvent,
    TopologyListener,
    TopologyOpenedEvent,
)

from actionlog_recorder.storage.base import ErrorListener, SortSpec, StoreError
from actionlog_recorder.storage.models import ACTION_LOG_COLLECTION, TASK_COLLECTION, ChangeEvent

logger = logging.getLogger(__name__)


class _TopologyMonitor(TopologyListener):
    """Reports a connection error when the deployment loses its last writable server.

    Individual members (a secondary, an arbiter) may come and go without
    affecting writes, so only the topology-wide transition counts. pymongo
    calls these hooks from its monitor threads.
    """

    def __init__(self, store: MotorDocumentStore) -> None:
        self._store = store

    def opened(self, event: TopologyOpenedEvent) -> None:
        return None

    def description_changed(self, event: TopologyDescriptionChangedEvent) -> None:
        previous = event.previous_description
        current = event.new_description
        if previous.has_writable_server() and not current.has_writable_server():
            self._store._dispatch_error(
                StoreError(f"topology {event.topology_id} lost its writable server")
            )

    def closed(self, event: TopologyClosedEvent) -> None:
        return None


class MotorDocumentStore:
    """Persist action records and tasks in MongoDB through an AsyncIOMotorClient."""

    def __init__(
        self,
        uri: str,
        database_name: str,
        *,
        server_selection_timeout_ms: int = 5000,
    ) -> None:
        if not uri:
            raise ValueError("ACTIONLOG_MONGODB_URI is required")
        self.uri = uri
        self.database_name = database_name
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client_class = self._load_motor()
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listeners: list[ErrorListener] = []
        self._monitor = _TopologyMonitor(self)

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._client is None:
            self._client = self._client_class(
                self.uri,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                event_listeners=[self._monitor],
                tz_aware=True,
            )
        try:
            await self._client.admin.command("ping")
            await self._ensure_indexes()
        except PyMongoError as exc:
            raise StoreError(f"connect failed: {exc}") from exc

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        sort: SortSpec | None = None,
    ) -> dict[str, Any] | None:
        try:
            return await self._db[collection].find_one(filter, sort=sort)
        except PyMongoError as exc:
            raise StoreError(f"find on {collection} failed: {exc}") from exc

    async def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        payload = dict(document)
        try:
            result = await self._db[collection].insert_one(payload)
        except PyMongoError as exc:
            raise StoreError(f"write to {collection} failed: {exc}") from exc
        payload["_id"] = result.inserted_id
        return payload

    async def exists(self, collection: str, filter: dict[str, Any]) -> bool:
        try:
            found = await self._db[collection].find_one(filter, projection={"_id": 1})
        except PyMongoError as exc:
            raise StoreError(f"exists on {collection} failed: {exc}") from exc
        return found is not None

    def watch(self) -> AsyncIterator[ChangeEvent]:
        return self._watch()

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _watch(self) -> AsyncIterator[ChangeEvent]:
        # Change streams require a replica set or sharded cluster.
        try:
            async with self._db.watch() as stream:
                async for change in stream:
                    yield ChangeEvent(
                        collection=str((change.get("ns") or {}).get("coll", "")),
                        operation_type=str(change.get("operationType", "")),
                    )
        except PyMongoError as exc:
            raise StoreError(f"change stream failed: {exc}") from exc

    async def _ensure_indexes(self) -> None:
        await self._db[TASK_COLLECTION].create_index([("taskId", ASCENDING)], unique=True)
        await self._db[ACTION_LOG_COLLECTION].create_index([("logId", DESCENDING)])
        await self._db[ACTION_LOG_COLLECTION].create_index(
            [("userId", ASCENDING), ("taskId", ASCENDING), ("timestamp", ASCENDING)]
        )

    def _dispatch_error(self, error: BaseException) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("mongo event=connection_error_dropped error=%s", error)
            return
        for listener in list(self._listeners):
            loop.call_soon_threadsafe(listener, error)

    @property
    def _db(self) -> Any:
        if self._client is None:
            raise StoreError("not connected")
        return self._client[self.database_name]

    @staticmethod
    def _load_motor() -> Any:
        try:
            from motor.motor_asyncio import AsyncIOMotorClient
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "MongoDB storage requires motor. "
                'Install with: python -m pip install "motor>=3.4,<4.0"'
            ) from exc
        return AsyncIOMotorClient
