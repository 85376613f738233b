"""Storage backends and models."""

from actionlog_recorder.storage.base import DocumentStore, StoreError
from actionlog_recorder.storage.memory import InMemoryDocumentStore
from actionlog_recorder.storage.models import (
    ACTION_LOG_COLLECTION,
    TASK_COLLECTION,
    ActionRecord,
    ChangeEvent,
    TaskDocument,
)
from actionlog_recorder.storage.mongo import MotorDocumentStore

__all__ = [
    "ACTION_LOG_COLLECTION",
    "ActionRecord",
    "ChangeEvent",
    "DocumentStore",
    "InMemoryDocumentStore",
    "MotorDocumentStore",
    "StoreError",
    "TASK_COLLECTION",
    "TaskDocument",
]
