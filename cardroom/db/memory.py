"""In-memory store implementation for testing and local simulation.

``InMemoryDatabase`` plays the role of the remote store; each client talks
to it through its own ``InMemoryRoomStore`` connection so that presence
(on-disconnect actions) and connectivity are tracked per client.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from cardroom.db.repository import (
    ChangeCallback,
    ConnectionCallback,
    ErrorCallback,
    RevisionConflict,
    StoreError,
)
from cardroom.db.tree import (
    apply_updates,
    get_at,
    is_related,
    join_path,
    prune,
    relative_path,
    revision_of,
    set_at,
    split_path,
)

logger = logging.getLogger("cardroom.store.memory")


@dataclass
class _Listener:
    client_id: str
    path: str
    on_change: ChangeCallback
    on_error: ErrorCallback | None = None
    active: bool = True

    def close(self) -> None:
        self.active = False


@dataclass
class _ConnectionWatch:
    callback: ConnectionCallback
    active: bool = True

    def close(self) -> None:
        self.active = False


@dataclass
class _Client:
    connected: bool = True
    on_disconnect: list[str] = field(default_factory=list)
    watches: list[_ConnectionWatch] = field(default_factory=list)


class InMemoryDatabase:
    """Shared tree with last-writer-wins multi-path updates."""

    def __init__(self, latency: float = 0.0) -> None:
        self.tree: Any = None
        self.latency = latency
        self.fail_reads = False
        self.fail_writes = False
        self.write_count = 0
        self._listeners: list[_Listener] = []
        self._clients: dict[str, _Client] = {}

    def connect(self, client_id: str) -> InMemoryRoomStore:
        self._clients.setdefault(client_id, _Client())
        return InMemoryRoomStore(self, client_id)

    def get(self, path: str = "") -> Any:
        """Direct read for tests; bypasses connectivity and latency."""
        return copy.deepcopy(get_at(self.tree, path))

    def seed(self, path: str, value: Any) -> None:
        """Direct write for tests; notifies listeners like a real write."""
        self._write({path: value})

    def is_connected(self, client_id: str) -> bool:
        return self._clients[client_id].connected

    def disconnect(self, client_id: str) -> None:
        """Simulate a transport drop: run the client's on-disconnect actions."""
        client = self._clients[client_id]
        if not client.connected:
            return
        client.connected = False
        paths, client.on_disconnect = client.on_disconnect, []
        if paths:
            self._write({p: None for p in paths})
        self._notify_connection(client, False)
        logger.info(
            json.dumps({"event": "client_disconnected", "client_id": client_id, "removed": paths})
        )

    def cancel_listeners(self, path: str, reason: str = "permission denied") -> None:
        """Simulate the store cancelling subscriptions (e.g. rules changed)."""
        for listener in list(self._listeners):
            if listener.active and is_related(listener.path, path):
                listener.active = False
                if listener.on_error:
                    listener.on_error(StoreError(reason))

    def reconnect(self, client_id: str) -> None:
        client = self._clients[client_id]
        if client.connected:
            return
        client.connected = True
        self._notify_connection(client, True)

    def _notify_connection(self, client: _Client, connected: bool) -> None:
        for watch in list(client.watches):
            if watch.active:
                watch.callback(connected)

    def _write(self, values: dict[str, Any]) -> None:
        for path, value in values.items():
            self.tree = prune(set_at(self.tree, split_path(path), value))
        self.write_count += 1
        self._fan_out(list(values))

    def _fan_out(self, written: list[str]) -> None:
        for listener in list(self._listeners):
            if not listener.active:
                continue
            if not self._clients[listener.client_id].connected:
                continue
            if any(is_related(listener.path, w) for w in written):
                listener.on_change(copy.deepcopy(get_at(self.tree, listener.path)))


class InMemoryRoomStore:
    """One client's connection to an ``InMemoryDatabase``."""

    def __init__(self, db: InMemoryDatabase, client_id: str) -> None:
        self._db = db
        self.client_id = client_id

    @property
    def database(self) -> InMemoryDatabase:
        return self._db

    async def _round_trip(self, write: bool) -> None:
        await asyncio.sleep(self._db.latency)
        if not self._db.is_connected(self.client_id):
            raise StoreError("client is offline")
        if write and self._db.fail_writes:
            raise StoreError("write rejected by store")
        if not write and self._db.fail_reads:
            raise StoreError("read failed")

    async def read(self, path: str) -> Any:
        await self._round_trip(write=False)
        return self._db.get(path)

    async def read_with_revision(self, path: str) -> tuple[Any, str]:
        await self._round_trip(write=False)
        value = self._db.get(path)
        return value, revision_of(value)

    async def update(
        self,
        path: str,
        values: dict[str, Any],
        expected_revision: str | None = None,
    ) -> None:
        await self._round_trip(write=True)
        if expected_revision is not None:
            current = get_at(self._db.tree, path)
            if revision_of(current) != expected_revision:
                raise RevisionConflict(f"{path} changed since it was read")
            # Conditional writes replace the whole subtree, as the REST API does
            self._db._write({path: apply_updates(current, values)})
            return
        self._db._write({join_path(path, rel): v for rel, v in values.items()})

    async def remove(self, path: str) -> None:
        await self._round_trip(write=True)
        self._db._write({path: None})

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> _Listener:
        listener = _Listener(self.client_id, path, on_change, on_error)
        self._db._listeners.append(listener)

        def _initial() -> None:
            if listener.active and self._db.is_connected(self.client_id):
                on_change(self._db.get(path))

        asyncio.get_running_loop().call_soon(_initial)
        return listener

    async def register_on_disconnect(self, path: str) -> None:
        await self._round_trip(write=True)
        self._db._clients[self.client_id].on_disconnect.append(path)

    async def cancel_on_disconnect(self, path: str) -> None:
        client = self._db._clients[self.client_id]
        client.on_disconnect = [
            p for p in client.on_disconnect if relative_path(path, p) is None
        ]

    def watch_connection(self, callback: ConnectionCallback) -> _ConnectionWatch:
        watch = _ConnectionWatch(callback)
        self._db._clients[self.client_id].watches.append(watch)
        return watch

    async def close(self) -> None:
        self._db.disconnect(self.client_id)
