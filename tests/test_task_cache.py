from __future__ import annotations

import asyncio

from actionlog_recorder.recorder.task_cache import TaskValidityCache
from actionlog_recorder.storage.memory import InMemoryDocumentStore
from actionlog_recorder.storage.models import TASK_COLLECTION


def test_cache_hit_skips_store_lookup(store: InMemoryDocumentStore) -> None:
    store.seed(TASK_COLLECTION, {"taskId": "task-1"})

    async def scenario() -> None:
        await store.connect()
        cache = TaskValidityCache(store)

        assert await cache.is_valid_task("task-1") is True
        assert store.calls["exists"] == 1
        assert "task-1" in cache

        assert await cache.is_valid_task("task-1") is True
        assert store.calls["exists"] == 1

    asyncio.run(scenario())


def test_unknown_task_is_not_cached_and_found_later(store: InMemoryDocumentStore) -> None:
    async def scenario() -> None:
        await store.connect()
        cache = TaskValidityCache(store)

        assert await cache.is_valid_task("task-2") is False
        assert len(cache) == 0

        store.seed(TASK_COLLECTION, {"taskId": "task-2"})
        assert await cache.is_valid_task("task-2") is True
        assert store.calls["exists"] == 2

    asyncio.run(scenario())


def test_lookup_error_fails_closed(store: InMemoryDocumentStore) -> None:
    store.seed(TASK_COLLECTION, {"taskId": "task-3"})

    async def scenario() -> None:
        await store.connect()
        store.fail_exists = True
        cache = TaskValidityCache(store)

        assert await cache.is_valid_task("task-3") is False
        assert len(cache) == 0

        store.fail_exists = False
        assert await cache.is_valid_task("task-3") is True

    asyncio.run(scenario())


def test_cached_entries_survive_task_deletion(store: InMemoryDocumentStore) -> None:
    store.seed(TASK_COLLECTION, {"taskId": "task-4"})

    async def scenario() -> None:
        await store.connect()
        cache = TaskValidityCache(store)
        assert await cache.is_valid_task("task-4") is True

        await store.delete_many(TASK_COLLECTION, {"taskId": "task-4"})
        assert await cache.is_valid_task("task-4") is True

    asyncio.run(scenario())


def test_store_timeout_fails_closed(store: InMemoryDocumentStore) -> None:
    async def scenario() -> None:
        await store.connect()

        async def hang(_collection, _filter):
            await asyncio.sleep(1)
            return True

        store.exists = hang  # type: ignore[method-assign]
        cache = TaskValidityCache(store, timeout_s=0.01)
        assert await cache.is_valid_task("task-5") is False
        assert len(cache) == 0

    asyncio.run(scenario())
