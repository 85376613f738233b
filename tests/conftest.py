from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable

import pytest

from actionlog_recorder.recorder.supervisor import ConnectionSupervisor
from actionlog_recorder.storage.memory import InMemoryDocumentStore

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def make_action() -> Callable[..., dict[str, Any]]:
    """Producer-shaped action payloads; ``minute`` offsets the timestamp."""

    def _make(
        action_type: str = "edit",
        *,
        task_id: str = "task-1",
        user_id: str = "user-1",
        minute: int = 0,
        code_state: Any = "print('hi')",
        **extra: Any,
    ) -> dict[str, Any]:
        payload = {
            "taskId": task_id,
            "userId": user_id,
            "timestamp": (BASE_TIME + timedelta(minutes=minute)).isoformat(),
            "type": action_type,
            "codeState": code_state,
        }
        payload.update(extra)
        return payload

    return _make


@pytest.fixture
def settle() -> Callable[[ConnectionSupervisor], Awaitable[None]]:
    """Let watcher callbacks run, then wait for every spawned supervisor task."""

    async def _settle(supervisor: ConnectionSupervisor, rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
        await supervisor.wait_idle()

    return _settle


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME
