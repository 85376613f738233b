"""Ordered in-memory queue of action records that have not been persisted yet."""

from __future__ import annotations

from collections import deque
from typing import Any, Iterable


class WriteBuffer:
    """Volatile, insertion-ordered retry queue. Contents are lost on restart."""

    def __init__(self) -> None:
        self._records: deque[Any] = deque()

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: Any) -> None:
        self._records.append(record)

    def extend(self, records: Iterable[Any]) -> None:
        self._records.extend(records)

    def take_all(self) -> list[Any]:
        """Remove and return every buffered record, oldest first."""
        records = list(self._records)
        self._records.clear()
        return records

    def snapshot(self) -> list[Any]:
        return list(self._records)
