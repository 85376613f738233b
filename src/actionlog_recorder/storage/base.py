"""Storage interface consumed by the connection supervisor."""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Protocol

from actionlog_recorder.storage.models import ChangeEvent

ErrorListener = Callable[[BaseException], None]
SortSpec = list[tuple[str, int]]


class StoreError(RuntimeError):
    """Raised by a backend when a store round trip fails."""


class DocumentStore(Protocol):
    async def connect(self) -> None: ...

    def add_error_listener(self, listener: ErrorListener) -> None: ...

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        sort: SortSpec | None = None,
    ) -> dict[str, Any] | None: ...

    async def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]: ...

    async def exists(self, collection: str, filter: dict[str, Any]) -> bool: ...

    def watch(self) -> AsyncIterator[ChangeEvent]: ...

    async def close(self) -> None: ...
