"""Store protocol for the shared room tree."""

from __future__ import annotations

from typing import Any, Callable, Protocol


class StoreError(Exception):
    """Transport or backend failure while reading or writing the tree."""


class RevisionConflict(StoreError):
    """A conditional write found the target changed since it was read."""


ChangeCallback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]
ConnectionCallback = Callable[[bool], None]


class Subscription(Protocol):
    def close(self) -> None:
        ...


class RoomStore(Protocol):
    """Capability offered by the real-time document store.

    Paths are "/"-separated and relative to the database root. Keys in an
    update mapping are paths relative to the update's base path; a value of
    None deletes that path.
    """

    async def read(self, path: str) -> Any:
        ...

    async def read_with_revision(self, path: str) -> tuple[Any, str]:
        ...

    async def update(
        self,
        path: str,
        values: dict[str, Any],
        expected_revision: str | None = None,
    ) -> None:
        ...

    async def remove(self, path: str) -> None:
        ...

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        ...

    async def register_on_disconnect(self, path: str) -> None:
        ...

    async def cancel_on_disconnect(self, path: str) -> None:
        ...

    def watch_connection(self, callback: ConnectionCallback) -> Subscription:
        ...

    async def close(self) -> None:
        ...
