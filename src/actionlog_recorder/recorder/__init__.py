"""Connection supervision, write buffering and log id recovery."""

from actionlog_recorder.recorder.buffer import WriteBuffer
from actionlog_recorder.recorder.log_id import LogIdCounter
from actionlog_recorder.recorder.state import ConnectionState
from actionlog_recorder.recorder.supervisor import (
    INVALID_ACTIONS,
    NO_CONNECTION,
    ConnectionSupervisor,
)
from actionlog_recorder.recorder.task_cache import TaskValidityCache

__all__ = [
    "INVALID_ACTIONS",
    "NO_CONNECTION",
    "ConnectionState",
    "ConnectionSupervisor",
    "LogIdCounter",
    "TaskValidityCache",
    "WriteBuffer",
]
