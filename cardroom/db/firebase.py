"""Firebase Realtime Database store over the REST API, using httpx."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from cardroom.db.repository import (
    ChangeCallback,
    ConnectionCallback,
    ErrorCallback,
    RevisionConflict,
    StoreError,
)
from cardroom.db.tree import apply_updates, prune, set_at, split_path
from cardroom.utils.constants import HTTP_TIMEOUT_SECONDS, STREAM_RECONNECT_SECONDS

logger = logging.getLogger("cardroom.store.firebase")

_timeout = float(os.environ.get("CARDROOM_HTTP_TIMEOUT", HTTP_TIMEOUT_SECONDS))


@dataclass
class ServerEvent:
    event: str
    data: Any


def parse_sse(lines: list[str]) -> list[ServerEvent]:
    """Parse a block of Server-Sent Events lines into events."""
    events: list[ServerEvent] = []
    name, data_lines = "", []
    for line in lines + [""]:
        if not line:
            if name:
                raw = "\n".join(data_lines)
                try:
                    data = json.loads(raw) if raw else None
                except json.JSONDecodeError:
                    data = raw
                events.append(ServerEvent(name, data))
            name, data_lines = "", []
        elif line.startswith("event:"):
            name = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
    return events


@dataclass
class _Stream:
    task: asyncio.Task | None = None
    cache: Any = None

    def close(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass
class _ConnectionWatch:
    owner: FirebaseRoomStore
    callback: ConnectionCallback

    def close(self) -> None:
        if self in self.owner._watches:
            self.owner._watches.remove(self)


@dataclass
class _Presence:
    paths: list[str] = field(default_factory=list)


class FirebaseRoomStore:
    """RoomStore backed by the Realtime Database REST endpoints.

    Connectivity is derived from the state of the event streams.

    Known gap: the REST protocol has no server-side on-disconnect, so
    presence is only emulated. Registered paths are kept client-side and
    removed when ``close()`` runs. A client that crashes or loses its
    process never removes its player entry; the room is only cleared later
    by the stale-room sweep.
    """

    def __init__(
        self,
        base_url: str | None = None,
        secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        reconnect_delay: float = STREAM_RECONNECT_SECONDS,
    ) -> None:
        self._base = (base_url or os.environ.get("CARDROOM_DATABASE_URL", "")).rstrip("/")
        if not self._base:
            raise StoreError("CARDROOM_DATABASE_URL is not configured")
        self._secret = secret if secret is not None else os.environ.get(
            "CARDROOM_DATABASE_SECRET", ""
        )
        self._client = client or httpx.AsyncClient(timeout=_timeout)
        self._reconnect_delay = reconnect_delay
        self._connected = True
        self._watches: list[_ConnectionWatch] = []
        self._streams: list[_Stream] = []
        self._presence = _Presence()

    def _url(self, path: str) -> str:
        return f"{self._base}/{'/'.join(split_path(path))}.json"

    def _params(self) -> dict:
        return {"auth": self._secret} if self._secret else {}

    async def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": self._params(), "headers": headers or {}}
        if payload is not None:
            kwargs["content"] = json.dumps(payload)
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Store %s %s failed: %s", method, path, e)
            raise StoreError(f"network error: {e}") from e
        if response.status_code == 412:
            raise RevisionConflict(f"{path} changed since it was read")
        if response.status_code >= 400:
            logger.warning(
                "Store %s %s rejected: %s %s",
                method, path, response.status_code, response.text,
            )
            raise StoreError(f"store rejected {method} ({response.status_code})")
        return response

    async def read(self, path: str) -> Any:
        response = await self._request("GET", path)
        return response.json()

    async def read_with_revision(self, path: str) -> tuple[Any, str]:
        response = await self._request("GET", path, headers={"X-Firebase-ETag": "true"})
        return response.json(), response.headers.get("ETag", "")

    async def update(
        self,
        path: str,
        values: dict[str, Any],
        expected_revision: str | None = None,
    ) -> None:
        if expected_revision is None:
            await self._request("PATCH", path, payload=values)
            return
        current, revision = await self.read_with_revision(path)
        if revision != expected_revision:
            raise RevisionConflict(f"{path} changed since it was read")
        await self._request(
            "PUT",
            path,
            payload=apply_updates(current, values),
            headers={"if-match": expected_revision},
        )

    async def remove(self, path: str) -> None:
        await self._request("DELETE", path)

    def subscribe(
        self,
        path: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> _Stream:
        stream = _Stream()
        stream.task = asyncio.get_running_loop().create_task(
            self._run_stream(stream, path, on_change, on_error)
        )
        self._streams.append(stream)
        return stream

    async def _event_blocks(self, response: httpx.Response) -> AsyncIterator[list[str]]:
        block: list[str] = []
        async for line in response.aiter_lines():
            if line:
                block.append(line)
            elif block:
                yield block
                block = []
        if block:
            yield block

    async def _run_stream(
        self,
        stream: _Stream,
        path: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        while True:
            try:
                async with self._client.stream(
                    "GET",
                    self._url(path),
                    params=self._params(),
                    headers={"Accept": "text/event-stream"},
                    timeout=httpx.Timeout(_timeout, read=None),
                ) as response:
                    if response.status_code >= 400:
                        raise StoreError(f"stream rejected ({response.status_code})")
                    self._set_connected(True)
                    async for block in self._event_blocks(response):
                        for event in parse_sse(block):
                            if not self._handle_event(stream, event, on_change, on_error):
                                return
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, StoreError) as e:
                logger.warning("Stream on %s dropped: %s", path, e)
            self._set_connected(False)
            await asyncio.sleep(self._reconnect_delay)

    def _handle_event(
        self,
        stream: _Stream,
        event: ServerEvent,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None,
    ) -> bool:
        """Apply one event to the stream cache; False ends the stream."""
        if event.event in ("put", "patch") and isinstance(event.data, dict):
            parts = split_path(event.data.get("path", "/"))
            data = event.data.get("data")
            if event.event == "put":
                stream.cache = prune(set_at(stream.cache, parts, data))
            else:
                for key, value in (data or {}).items():
                    stream.cache = prune(set_at(stream.cache, parts + split_path(key), value))
            on_change(copy.deepcopy(stream.cache))
        elif event.event in ("cancel", "auth_revoked"):
            logger.warning("Stream cancelled by store: %s", event.event)
            if on_error is not None:
                on_error(StoreError(f"subscription {event.event}"))
            return False
        return True

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(json.dumps({"event": "connectivity", "connected": connected}))
        for watch in list(self._watches):
            watch.callback(connected)

    async def register_on_disconnect(self, path: str) -> None:
        if path not in self._presence.paths:
            self._presence.paths.append(path)

    async def cancel_on_disconnect(self, path: str) -> None:
        prefix = split_path(path)
        self._presence.paths = [
            p for p in self._presence.paths if split_path(p)[:len(prefix)] != prefix
        ]

    def watch_connection(self, callback: ConnectionCallback) -> _ConnectionWatch:
        watch = _ConnectionWatch(self, callback)
        self._watches.append(watch)
        return watch

    async def close(self) -> None:
        for stream in self._streams:
            stream.close()
        paths, self._presence.paths = self._presence.paths, []
        for path in paths:
            try:
                await self.remove(path)
            except StoreError:
                logger.warning("Could not remove presence %s on close", path)
        await self._client.aclose()
