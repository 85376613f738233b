from __future__ import annotations

import time
from datetime import timedelta
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from actionlog_recorder.api.main import create_app
from actionlog_recorder.config.settings import Settings
from actionlog_recorder.storage.memory import InMemoryDocumentStore
from actionlog_recorder.storage.models import ACTION_LOG_COLLECTION

AUTH = {"Authorization": "secret"}


def _settings(**overrides) -> Settings:
    values = {
        "mongodb_uri": "mongodb://unused:27017",
        "logging_auth_key": "secret",
        "ignore_invalid_tasks": False,
        "retry_delay_s": 0.05,
    }
    values.update(overrides)
    return Settings(**values)


def _wait_for(predicate: Callable[[], bool], timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _connected(client: TestClient) -> bool:
    return client.get("/health").json()["database"] == "connected"


def test_health_reports_database_state(store: InMemoryDocumentStore) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        assert _wait_for(lambda: _connected(client))
        payload = client.get("/health").json()

    assert payload["status"] == "ok"
    assert payload["service"] == "actionlog-recorder"


def test_submit_requires_logging_auth_key(store: InMemoryDocumentStore, make_action) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        missing = client.post("/actions", json=[make_action()])
        wrong = client.post("/actions", json=[make_action()], headers={"Authorization": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert store.documents(ACTION_LOG_COLLECTION) == []


def test_submit_persists_batch(store: InMemoryDocumentStore, make_action) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        assert _wait_for(lambda: _connected(client))
        response = client.post(
            "/actions",
            json=[make_action("open"), make_action("edit", minute=1)],
            headers=AUTH,
        )
        assert response.status_code == 202
        assert response.json() == {"accepted": 2, "error": None}
        assert _wait_for(lambda: len(store.documents(ACTION_LOG_COLLECTION)) == 2)

    log_ids = sorted(doc["logId"] for doc in store.documents(ACTION_LOG_COLLECTION))
    assert log_ids == [1, 2]


def test_submit_rejects_non_list_body(store: InMemoryDocumentStore, make_action) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        response = client.post("/actions", json=make_action(), headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid actions."


def test_submit_during_outage_is_buffered_then_delivered(make_action) -> None:
    store = InMemoryDocumentStore(available=False)
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        response = client.post("/actions", json=[make_action("open")], headers=AUTH)
        assert response.status_code == 202
        assert response.json() == {"accepted": 1, "error": "No database connection"}
        assert client.get("/health").json()["database"] == "disconnected"
        assert store.documents(ACTION_LOG_COLLECTION) == []

        store.available = True
        assert _wait_for(lambda: len(store.documents(ACTION_LOG_COLLECTION)) == 1)
        assert _connected(client)


def test_tasks_and_lookups_roundtrip(
    store: InMemoryDocumentStore, make_action, base_time
) -> None:
    app = create_app(storage=store, settings_override=_settings(ignore_invalid_tasks=True))
    with TestClient(app) as client:
        assert _wait_for(lambda: _connected(client))
        created = client.post("/tasks", json={"taskId": "task-1"})
        assert created.json() == {"taskId": "task-1", "saved": True}

        batch = [
            make_action("first", minute=1),
            make_action("second", minute=2),
            make_action("third", minute=3),
            make_action("orphan", task_id="unknown", minute=4),
        ]
        client.post("/actions", json=batch, headers=AUTH)
        assert _wait_for(lambda: len(store.documents(ACTION_LOG_COLLECTION)) == 3)

        scope = {"taskId": "task-1", "userId": "user-1"}
        pivot = (base_time + timedelta(minutes=2)).isoformat()
        first = client.get("/actionlogs/first", params=scope)
        last = client.get("/actionlogs/last", params=scope)
        following = client.get("/actionlogs/next", params={**scope, "timestamp": pivot})
        preceding = client.get("/actionlogs/previous", params={**scope, "timestamp": pivot})

    assert first.json()["type"] == "first"
    assert last.json()["type"] == "third"
    assert following.json()["type"] == "third"
    assert preceding.json()["type"] == "first"
    assert first.json()["taskId"] == "task-1"
    assert isinstance(first.json()["logId"], int)
    types = {doc["type"] for doc in store.documents(ACTION_LOG_COLLECTION)}
    assert "orphan" not in types


def test_lookup_accepts_pivot_without_timezone(
    store: InMemoryDocumentStore, make_action, base_time
) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        assert _wait_for(lambda: _connected(client))
        client.post(
            "/actions",
            json=[make_action("first", minute=1), make_action("third", minute=3)],
            headers=AUTH,
        )
        assert _wait_for(lambda: len(store.documents(ACTION_LOG_COLLECTION)) == 2)

        pivot = (base_time + timedelta(minutes=2)).replace(tzinfo=None).isoformat()
        scope = {"taskId": "task-1", "userId": "user-1", "timestamp": pivot}
        following = client.get("/actionlogs/next", params=scope)
        preceding = client.get("/actionlogs/previous", params=scope)

    assert following.status_code == 200
    assert following.json()["type"] == "third"
    assert preceding.status_code == 200
    assert preceding.json()["type"] == "first"


def test_lookup_not_found_and_store_failure(store: InMemoryDocumentStore) -> None:
    app = create_app(storage=store, settings_override=_settings())
    with TestClient(app) as client:
        assert _wait_for(lambda: _connected(client))
        scope = {"taskId": "task-1", "userId": "user-1"}
        missing = client.get("/actionlogs/first", params=scope)
        store.fail_find = True
        failed = client.get("/actionlogs/last", params=scope)

    assert missing.status_code == 404
    assert failed.status_code == 503


def test_create_app_requires_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("MONGODB", "LOGGING_AUTH_KEY", "ACTIONLOG_MONGODB_URI", "ACTIONLOG_LOGGING_AUTH_KEY"):
        monkeypatch.delenv(key, raising=False)
    app = create_app(settings_override=Settings(mongodb_uri="", logging_auth_key=""))

    with pytest.raises(RuntimeError, match="ACTIONLOG_MONGODB_URI"):
        with TestClient(app):
            pass
