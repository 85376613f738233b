"""Grow-only cache of task ids known to exist in the store."""

from __future__ import annotations

import logging

from actionlog_recorder.recorder.timeouts import bounded
from actionlog_recorder.storage.base import DocumentStore
from actionlog_recorder.storage.models import TASK_COLLECTION

logger = logging.getLogger(__name__)


class TaskValidityCache:
    """Answer "does this task exist" with a write-through store fallback.

    Entries are never evicted, even if the task is later deleted.
    """

    def __init__(self, store: DocumentStore, *, timeout_s: float | None = None) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._known: set[str] = set()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._known

    def __len__(self) -> int:
        return len(self._known)

    async def is_valid_task(self, task_id: str) -> bool:
        if task_id in self._known:
            return True
        try:
            found = await bounded(
                self._store.exists(TASK_COLLECTION, {"taskId": task_id}),
                self._timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            # Fail closed and cache nothing.
            logger.warning("task_cache event=lookup_failed task_id=%s error=%s", task_id, exc)
            return False
        if found:
            self._known.add(task_id)
        return bool(found)
