"""Room lifecycle and presence management."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from cardroom.db.repository import StoreError
from cardroom.db.tree import join_path
from cardroom.game.engine import ActionResult, GameEngine, Mutation, failure
from cardroom.game.errors import INVALID_ARGUMENT, NOT_FOUND, STORE_ERROR
from cardroom.game.models import RoomDocument, RoomSettings
from cardroom.utils.constants import (
    MAX_PLAYERS,
    ROOM_CODE_ATTEMPTS,
    ROOM_CODE_PATTERN,
    STALE_ACTIVE_MS,
    STATE_WAITING,
)
from cardroom.utils.crypto import generate_room_code

logger = logging.getLogger("cardroom.lobby")

# Characters the store does not allow in keys
_FORBIDDEN_KEY_CHARS = re.compile(r"[.$#\[\]/\x00-\x1f\x7f]")
_CODE_IN_USE = "Room code already in use"


def validate_player_name(name: str) -> str | None:
    """Return an error message, or None if `name` can be a player key."""
    if not name:
        return "Please enter a name"
    if _FORBIDDEN_KEY_CHARS.search(name):
        return "Names cannot contain . $ # [ ] or /"
    return None


def validate_room_code(code: str) -> str | None:
    if not code:
        return "Please enter a room code"
    if not re.match(ROOM_CODE_PATTERN, code):
        return "Room code must be a 4-digit number"
    return None


@dataclass
class RoomResult:
    success: bool
    code: str | None = None
    room: RoomDocument | None = None
    joined: bool = False
    error: str | None = None
    kind: str | None = None


def _from_action(result: ActionResult, code: str, joined: bool = False) -> RoomResult:
    return RoomResult(
        success=result.success,
        code=code,
        room=result.room,
        joined=joined and result.success,
        error=result.error,
        kind=result.kind,
    )


class RoomManager:
    def __init__(self, engine: GameEngine) -> None:
        self._engine = engine
        self._store = engine.store
        self._tasks: set[asyncio.Task] = set()

    def _room_path(self, code: str) -> str:
        return self._engine.room_path(code)

    def _player_path(self, code: str, name: str) -> str:
        return join_path(self._engine.room_path(code), "players", name)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background cleanups started by this manager."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def create_room(self, host_name: str, settings: RoomSettings) -> RoomResult:
        """Create a room with a fresh code. Host is auto-joined."""
        name = host_name.strip()
        error = validate_player_name(name) or settings.validate()
        if error:
            return RoomResult(success=False, error=error, kind=INVALID_ARGUMENT)

        def compute(room: RoomDocument | None) -> Mutation | ActionResult:
            if room is not None:
                return failure(STORE_ERROR, _CODE_IN_USE)
            return Mutation(
                updates={
                    "settings": settings.to_dict(),
                    "state": STATE_WAITING,
                    "host": name,
                    f"players/{name}": {"ready": False},
                },
                event={"host": name, "num_decks": settings.num_decks},
            )

        code = generate_room_code(self._engine.rng)
        result = await self._engine.apply(code, "create_room", compute, allow_missing=True)
        for _ in range(ROOM_CODE_ATTEMPTS - 1):
            if result.success or result.error != _CODE_IN_USE:
                break
            code = generate_room_code(self._engine.rng)
            result = await self._engine.apply(code, "create_room", compute, allow_missing=True)
        if not result.success:
            if result.error == _CODE_IN_USE:
                result = failure(STORE_ERROR, "Could not allocate a free room code")
            return _from_action(result, code)

        self.schedule_cleanup(STALE_ACTIVE_MS, "lastActive", exclude=code)
        return _from_action(result, code, joined=True)

    async def join_room(self, code: str, player_name: str) -> RoomResult:
        """Join a room by code.

        A full room or a taken name is not an error: the result has
        success=True and joined=False, and the room is left untouched.
        """
        code, name = code.strip(), player_name.strip()
        error = validate_player_name(name) or validate_room_code(code)
        if error:
            return RoomResult(success=False, code=code, error=error, kind=INVALID_ARGUMENT)

        admitted = {"joined": False}

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if len(room.players) >= MAX_PLAYERS or name in room.players:
                admitted["joined"] = False
                return ActionResult(success=True, room=room)
            admitted["joined"] = True
            return Mutation(
                updates={f"players/{name}": {"ready": False}},
                event={"player": name, "players": len(room.players) + 1},
            )

        result = await self._engine.apply(code, "join_room", compute)
        return _from_action(result, code, joined=admitted["joined"])

    async def set_ready(self, code: str, player_name: str) -> RoomResult:
        """Toggle the player's ready flag."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if player_name not in room.players:
                return failure(NOT_FOUND, "You are not in this room", room)
            ready = not room.players[player_name]
            return Mutation(
                updates={f"players/{player_name}/ready": ready},
                event={"player": player_name, "ready": ready},
            )

        return _from_action(await self._engine.apply(code, "set_ready", compute), code)

    async def register_presence(self, code: str, player_name: str) -> None:
        """Have the store drop this player's entry if the connection is lost."""
        await self._store.register_on_disconnect(self._player_path(code, player_name))

    async def cancel_presence(self, code: str, player_name: str) -> None:
        await self._store.cancel_on_disconnect(self._player_path(code, player_name))

    async def leave_room(self, code: str, player_name: str) -> RoomResult:
        """Remove this player's presence entry; other data is kept."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if player_name not in room.players:
                return ActionResult(success=True, room=room)
            return Mutation(
                updates={f"players/{player_name}": None},
                event={"player": player_name},
            )

        result = await self._engine.apply(code, "leave_room", compute)
        if result.kind == NOT_FOUND:
            return RoomResult(success=True, code=code)
        return _from_action(result, code)

    async def exit_room(self, code: str, player_name: str, is_host: bool) -> RoomResult:
        """Host exit deletes the whole room; anyone else just leaves."""
        if not is_host:
            return await self.leave_room(code, player_name)
        try:
            await self._store.remove(self._room_path(code))
        except StoreError as e:
            logger.warning("Failed to delete room %s: %s", code, e)
            return RoomResult(
                success=False, code=code, error=f"Failed to delete room: {e}", kind=STORE_ERROR
            )
        logger.info(json.dumps({"event": "room_deleted", "room": code, "by": player_name}))
        return RoomResult(success=True, code=code)

    async def rejoin_room(self, code: str, player_name: str) -> RoomResult:
        """Re-insert this player after a reconnect if the room still exists.

        A waiting room whose seat was taken while this player was away is
        full: the result has success=True and joined=False.
        """
        admitted = {"joined": False}

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if player_name in room.players:
                admitted["joined"] = True
                return ActionResult(success=True, room=room)
            if not room.started and len(room.players) >= MAX_PLAYERS:
                admitted["joined"] = False
                return ActionResult(success=True, room=room)
            admitted["joined"] = True
            return Mutation(
                updates={f"players/{player_name}": {"ready": False}},
                event={"player": player_name},
            )

        result = await self._engine.apply(code, "rejoin_room", compute)
        return _from_action(result, code, joined=admitted["joined"])

    async def migrate_host(self, code: str, new_host: str) -> RoomResult:
        """Hand host authority to `new_host` if the current host is gone."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if room.host in room.players or new_host not in room.players:
                return ActionResult(success=True, room=room)
            return Mutation(
                updates={"host": new_host},
                event={"previous": room.host, "host": new_host},
            )

        return _from_action(await self._engine.apply(code, "migrate_host", compute), code)

    async def cleanup_stale_rooms(
        self,
        threshold_ms: int,
        field: str = "lastActive",
        exclude: str | None = None,
    ) -> list[str]:
        """Best-effort sweep deleting rooms idle for longer than `threshold_ms`.

        Failures are logged and the sweep continues.
        """
        cutoff = self._engine.now() - threshold_ms
        try:
            rooms = await self._store.read(self._engine.rooms_path)
        except StoreError as e:
            logger.warning("Stale room sweep could not list rooms: %s", e)
            return []

        deleted: list[str] = []
        for code, node in (rooms or {}).items():
            if code == exclude:
                continue
            stamp = node.get(field, 0) if isinstance(node, dict) else 0
            if not isinstance(stamp, (int, float)) or stamp < cutoff:
                try:
                    await self._store.remove(self._room_path(code))
                except StoreError as e:
                    logger.warning("Failed to delete stale room %s: %s", code, e)
                    continue
                deleted.append(code)

        if deleted:
            logger.info(
                json.dumps({"event": "stale_rooms_deleted", "field": field, "rooms": deleted})
            )
        return deleted

    def schedule_cleanup(self, threshold_ms: int, field: str, exclude: str | None = None) -> None:
        self._spawn(self.cleanup_stale_rooms(threshold_ms, field, exclude))
