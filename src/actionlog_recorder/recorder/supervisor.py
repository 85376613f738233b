"""Connection supervision and durable write buffering for action records.

One ``ConnectionSupervisor`` owns every piece of shared state: the connection
state, the write buffer, the log id counter and the task validity cache. All
methods must run on a single asyncio event loop; nothing here takes a lock.

Lifecycle:
- ``connect()`` moves DISCONNECTED -> CONNECTING and spawns a connect attempt.
- A failed attempt goes back to DISCONNECTED and schedules one retry timer.
- A successful attempt goes to CONNECTED, recovers the max log id from the
  store (which drains the buffer) and watches for deletes.
- A connection error while CONNECTED goes back to DISCONNECTED and schedules
  the retry timer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Coroutine, TypeVar

from pydantic import ValidationError

from actionlog_recorder.recorder.buffer import WriteBuffer
from actionlog_recorder.recorder.log_id import LogIdCounter
from actionlog_recorder.recorder.state import ConnectionState
from actionlog_recorder.recorder.task_cache import TaskValidityCache
from actionlog_recorder.recorder.timeouts import bounded
from actionlog_recorder.storage.base import DocumentStore
from actionlog_recorder.storage.models import (
    ACTION_LOG_COLLECTION,
    TASK_COLLECTION,
    ActionRecord,
    TaskDocument,
    describe_validation_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVALID_ACTIONS = "Invalid actions."
NO_CONNECTION = "No database connection"


class ConnectionSupervisor:
    """Persist action records, buffering them while the store is unreachable."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        ignore_invalid_tasks: bool = False,
        retry_delay_s: float = 5.0,
        store_timeout_s: float | None = None,
    ) -> None:
        self.ignore_invalid_tasks = ignore_invalid_tasks
        self.retry_delay_s = retry_delay_s
        self.store_timeout_s = store_timeout_s

        self.buffer = WriteBuffer()
        self.log_ids = LogIdCounter()
        self.task_cache = TaskValidityCache(store, timeout_s=store_timeout_s)

        self._store = store
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._listening = False
        self._closed = False
        # Cleared while a connection has not yet recovered the stored max logId.
        self._log_id_recovered = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connection_ready(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    # ---- connection lifecycle

    def connect(self) -> None:
        """Start a connection attempt unless one is running or already succeeded."""
        if self._closed or self._state is not ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.CONNECTING
        self._cancel_reconnect()
        self._log_id_recovered.clear()
        logger.info("database event=connecting")
        self._spawn(self._attempt_connect(), name="connect")

    async def _attempt_connect(self) -> None:
        try:
            await self._bounded(self._store.connect())
        except Exception as exc:  # noqa: BLE001
            self._state = ConnectionState.DISCONNECTED
            logger.error(
                "database event=connect_failed error=%s retry_in_s=%s",
                exc,
                self.retry_delay_s,
            )
            self._schedule_reconnect()
            return

        if self._closed:
            logger.info("database event=connect_abandoned reason=closed")
            self._state = ConnectionState.DISCONNECTED
            return

        self._state = ConnectionState.CONNECTED
        logger.info("database event=connected")
        if not self._listening:
            self._store.add_error_listener(self._on_connection_error)
            self._listening = True
        self._start_watch()
        await self.recover_max_log_id()

    def _on_connection_error(self, error: BaseException) -> None:
        logger.error("database event=connection_error state=%s error=%s", self._state.value, error)
        if self._closed or self._state is ConnectionState.CONNECTING:
            return
        self._state = ConnectionState.DISCONNECTED
        self._stop_watch()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed or self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.retry_delay_s, self._reconnect_due)

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ---- change notifications

    def _start_watch(self) -> None:
        self._stop_watch()
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch_changes(), name="watch-actionlogs"
        )

    def _stop_watch(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None

    async def _watch_changes(self) -> None:
        try:
            async for event in self._store.watch():
                if event.collection != ACTION_LOG_COLLECTION:
                    continue
                if event.operation_type == "delete":
                    logger.info("change_stream event=delete collection=%s", event.collection)
                    await self.recover_max_log_id()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("change_stream event=error error=%s", exc)

    # ---- log id recovery

    async def recover_max_log_id(self) -> None:
        """Reset the log id counter from the highest logId currently stored."""
        try:
            latest = await self._bounded(
                self._store.find_one(ACTION_LOG_COLLECTION, {}, sort=[("logId", -1)])
            )
        except Exception as exc:  # noqa: BLE001
            # Keep the current value; a lower one could collide with stored records.
            logger.error("log_id event=recover_failed current=%s error=%s", self.log_ids.value, exc)
            return

        max_log_id = int((latest or {}).get("logId") or 0)
        self.log_ids.reset(max_log_id)
        self._log_id_recovered.set()
        logger.info("log_id event=recovered max_log_id=%s", max_log_id)
        self.drain()

    # ---- write path

    def submit(self, records: Any) -> str | None:
        """Queue a batch for persistence.

        Returns an error description for the synchronous rejection cases
        (bad input, no connection) and ``None`` otherwise. Per-record
        outcomes are only logged.
        """
        if not isinstance(records, (list, tuple)):
            logger.warning("submit event=rejected reason=invalid_input type=%s", type(records).__name__)
            return INVALID_ACTIONS

        if not self.connection_ready():
            self.buffer.extend(records)
            logger.error(
                "submit event=buffered reason=no_connection batch=%s buffered=%s",
                len(records),
                len(self.buffer),
            )
            self.connect()
            return NO_CONNECTION

        self.drain()
        for record in records:
            self._spawn(self._persist(record), name="save-action")
        return None

    def drain(self) -> None:
        """Resubmit every buffered record, oldest first."""
        if not len(self.buffer):
            return
        pending = self.buffer.take_all()
        logger.info("buffer event=drain count=%s", len(pending))
        self.submit(pending)

    async def _persist(self, record: Any) -> None:
        error = await self.save_action(record)
        if error:
            logger.warning("actionlog event=dropped reason=%s", error)

    async def save_action(self, record: Any) -> str | None:
        """Validate and persist one record.

        Returns a description when the record is dropped for good. Write
        failures push the original record back onto the buffer and return
        ``None``. A log id is only assigned once the current connection has
        recovered the stored maximum.
        """
        if self.ignore_invalid_tasks:
            task_id = _task_id_of(record)
            if task_id is None or not await self.task_cache.is_valid_task(task_id):
                return f"ignoring action with invalid taskId: {task_id}"

        try:
            action = ActionRecord.model_validate(record)
        except ValidationError as exc:
            return describe_validation_error(exc)

        await self._log_id_recovered.wait()
        if self._closed:
            self.buffer.append(record)
            return None

        document = action.with_log_id(self.log_ids.next()).to_document()
        try:
            await self._bounded(self._store.create(ACTION_LOG_COLLECTION, document))
        except Exception as exc:  # noqa: BLE001
            self.buffer.append(record)
            logger.warning(
                "actionlog event=requeued type=%s task_id=%s buffered=%s error=%s",
                action.type,
                action.task_id,
                len(self.buffer),
                exc,
            )
            return None

        logger.info(
            "actionlog event=saved type=%s task_id=%s log_id=%s",
            action.type,
            action.task_id,
            document["logId"],
        )
        return None

    async def add_task(self, task_id: str) -> bool:
        """Register a task so action records referencing it pass filtering."""
        task = TaskDocument(task_id=task_id)
        try:
            await self._bounded(self._store.create(TASK_COLLECTION, task.model_dump(by_alias=True)))
        except Exception as exc:  # noqa: BLE001
            logger.warning("task event=save_failed task_id=%s error=%s", task_id, exc)
            return False
        logger.info("task event=saved task_id=%s", task_id)
        return True

    # ---- read path

    async def get_first_action_log(self, task_id: str, user_id: str) -> ActionRecord | None:
        return await self._lookup("first", _scope(task_id, user_id), 1, user_id)

    async def get_last_action_log(self, task_id: str, user_id: str) -> ActionRecord | None:
        return await self._lookup("last", _scope(task_id, user_id), -1, user_id)

    async def get_next_action_log(
        self, task_id: str, user_id: str, timestamp: Any
    ) -> ActionRecord | None:
        query = _scope(task_id, user_id, {"timestamp": {"$gt": timestamp}})
        return await self._lookup("next", query, 1, user_id)

    async def get_previous_action_log(
        self, task_id: str, user_id: str, timestamp: Any
    ) -> ActionRecord | None:
        query = _scope(task_id, user_id, {"timestamp": {"$lt": timestamp}})
        return await self._lookup("previous", query, -1, user_id)

    async def _lookup(
        self,
        name: str,
        query: dict[str, Any],
        direction: int,
        user_id: str,
    ) -> ActionRecord | None:
        document = await self._bounded(
            self._store.find_one(ACTION_LOG_COLLECTION, query, sort=[("timestamp", direction)])
        )
        record = ActionRecord.model_validate(document) if document else None
        logger.info(
            "lookup event=%s user_id=%s type=%s",
            name,
            user_id,
            record.type if record else None,
        )
        return record

    # ---- shutdown

    async def wait_idle(self) -> None:
        """Wait until every spawned connect/persist task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        self._cancel_reconnect()
        self._stop_watch()
        # Release writes still waiting for recovery; they go back to the buffer.
        self._log_id_recovered.set()
        await self.wait_idle()
        self._state = ConnectionState.DISCONNECTED
        if len(self.buffer):
            logger.warning("buffer event=discarded_on_close count=%s", len(self.buffer))
        await self._store.close()

    def _spawn(self, coro: Coroutine[Any, Any, T], *, name: str) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await bounded(awaitable, self.store_timeout_s)


def _scope(task_id: str, user_id: str, *extra: dict[str, Any]) -> dict[str, Any]:
    return {
        "$and": [
            {"userId": user_id},
            {"taskId": task_id},
            {"codeState": {"$ne": None}},
            *extra,
        ]
    }


def _task_id_of(record: Any) -> str | None:
    if isinstance(record, ActionRecord):
        return record.task_id
    if isinstance(record, dict):
        task_id = record.get("taskId", record.get("task_id"))
        return task_id if isinstance(task_id, str) else None
    return None
