"""Per-player session: owns the view state and the room subscription.

A ``GameSession`` is the single coordinator for one player's client. Every
user action goes through the engine or room manager; the visible state only
changes when a room snapshot arrives, so a failed write leaves it intact.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable

from cardroom.client.debounce import Debouncer
from cardroom.client.deps import Deps
from cardroom.client.state import (
    BusyChanged,
    ConnectivityChanged,
    HostDialogCleared,
    Notice,
    NoticeCleared,
    NoticeRaised,
    RoomEntered,
    RoomExited,
    SelectionCleared,
    SelectionToggled,
    SnapshotReceived,
    SuccessCleared,
    SuccessRaised,
    ViewState,
    elect_host,
)
from cardroom.client.store import StateStore
from cardroom.db.repository import StoreError, Subscription
from cardroom.db.tree import join_path
from cardroom.game.engine import ActionResult
from cardroom.game.errors import (
    CRITICAL,
    INVALID_ARGUMENT,
    INVALID_STATE,
    NOT_FOUND,
    TRANSIENT,
    severity_for,
)
from cardroom.game.models import Card, RoomSettings, SchemaError
from cardroom.lobby.manager import RoomResult
from cardroom.utils.constants import (
    DEBOUNCE_SECONDS,
    SORT_BY_RANK,
    SORT_BY_SUIT,
    STALE_UPDATED_MS,
    TRANSIENT_NOTICE_SECONDS,
)

logger = logging.getLogger("cardroom.session")


class GameSession:
    def __init__(
        self,
        deps: Deps,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        notice_seconds: float = TRANSIENT_NOTICE_SECONDS,
    ) -> None:
        self.engine = deps.engine
        self.rooms = deps.room_manager
        self._store = deps.store
        self._notice_seconds = notice_seconds
        self.state_store = StateStore()
        self._debouncer = Debouncer(debounce_seconds, self._reconcile)
        self._subscription: Subscription | None = None
        self._connection: Subscription | None = None
        self._notice_ids = itertools.count(1)
        self._timers: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()
        self.reconcile_count = 0

    @property
    def state(self) -> ViewState:
        return self.state_store.state

    def _dispatch(self, event: object) -> ViewState:
        return self.state_store.dispatch(event)

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Begin tracking connectivity. Call once from a running loop."""
        if self._connection is None:
            self._connection = self._store.watch_connection(self._on_connectivity)

    async def close(self) -> None:
        """Tear down subscriptions, timers and pending background work."""
        self._stop_listening()
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for background host migrations, rejoins and cleanups."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.rooms.wait_idle()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    # -- notices -------------------------------------------------------

    def _notify(self, message: str, severity: str = TRANSIENT) -> Notice:
        notice = Notice(id=next(self._notice_ids), message=message, severity=severity)
        self._dispatch(NoticeRaised(notice))
        if severity == TRANSIENT:
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle | None = None

            def expire() -> None:
                self._timers.discard(handle)
                self._dispatch(NoticeCleared(notice.id))

            handle = loop.call_later(self._notice_seconds, expire)
            self._timers.add(handle)
        return notice

    def _report(self, result: ActionResult | RoomResult) -> None:
        self._notify(result.error or "Operation failed", severity_for(result.kind))

    def clear_notice(self) -> None:
        """Acknowledge the current notice (required for critical ones)."""
        self._dispatch(NoticeCleared())

    def clear_success(self) -> None:
        self._dispatch(SuccessCleared())

    def acknowledge_new_host(self) -> None:
        self._dispatch(HostDialogCleared())

    # -- room subscription ---------------------------------------------

    def _listen(self, code: str) -> None:
        self._stop_listening()
        self._subscription = self._store.subscribe(
            self.engine.room_path(code), self._debouncer.push, self._on_sync_error
        )

    def _stop_listening(self) -> None:
        self._debouncer.cancel()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _on_sync_error(self, error: Exception) -> None:
        logger.warning("Room subscription failed: %s", error)
        self._notify(f"Database sync error: {error}", CRITICAL)

    def _reconcile(self, snapshot: Any) -> None:
        code = self.state.room_code
        if not code:
            return
        self.reconcile_count += 1
        try:
            room = self.engine.decode(code, snapshot)
        except SchemaError as e:
            logger.warning("Room %s snapshot is malformed: %s", code, e)
            self._notify(f"Fatal sync error: room {code} is malformed", CRITICAL)
            return

        if room is None:
            self._leave_locally()
            self._notify(f"Room {code} no longer exists", CRITICAL)
            return

        host = room.host
        new_host = elect_host(room)
        if new_host is not None:
            host = new_host
            self._spawn(self._migrate_host(code, new_host))
        self._dispatch(SnapshotReceived(room, host))

    async def _migrate_host(self, code: str, new_host: str) -> None:
        result = await self.rooms.migrate_host(code, new_host)
        if not result.success:
            logger.warning("Host migration in room %s failed: %s", code, result.error)

    def _on_connectivity(self, connected: bool) -> None:
        was_connected = self.state.is_connected
        self._dispatch(ConnectivityChanged(connected))
        if connected and not was_connected and self.state.room_code:
            self._spawn(self._rejoin())

    async def _rejoin(self) -> None:
        code, name = self.state.room_code, self.state.player_name
        result = await self.rooms.rejoin_room(code, name)
        if result.kind == NOT_FOUND:
            self._leave_locally()
            self._notify(f"Room {code} no longer exists", CRITICAL)
            return
        if not result.success:
            self._report(result)
            return
        if not result.joined:
            self._leave_locally()
            self._notify(f"Room {code} filled up while you were away", CRITICAL)
            return
        await self._register_presence(code, name)
        self._listen(code)
        logger.info(json.dumps({"event": "rejoined", "room": code, "player": name}))

    async def _register_presence(self, code: str, name: str) -> None:
        try:
            await self.rooms.register_presence(code, name)
        except StoreError as e:
            logger.warning("Presence registration for %s failed: %s", name, e)
            self._notify(f"Could not register presence: {e}")

    async def _enter_room(self, code: str, name: str, is_host: bool) -> None:
        self._dispatch(RoomEntered(code, name, is_host))
        await self._register_presence(code, name)
        self._listen(code)

    def _leave_locally(self) -> None:
        self._stop_listening()
        self._dispatch(RoomExited())

    # -- room lifecycle ------------------------------------------------

    async def _busy(self, action: Callable[[], Awaitable[Any]]) -> Any:
        self._dispatch(BusyChanged(True))
        try:
            return await action()
        finally:
            self._dispatch(BusyChanged(False))

    async def create_room(
        self,
        host_name: str,
        num_decks: int = 1,
        include_jokers: bool = False,
        deal_count: int = 5,
    ) -> bool:
        settings = RoomSettings(
            num_decks=num_decks, include_jokers=include_jokers, deal_count=deal_count
        )
        result: RoomResult = await self._busy(
            lambda: self.rooms.create_room(host_name, settings)
        )
        if not result.success:
            self._report(result)
            return False
        self.rooms.schedule_cleanup(STALE_UPDATED_MS, "lastUpdated", exclude=result.code)
        await self._enter_room(result.code, host_name.strip(), is_host=True)
        self._dispatch(SuccessRaised(f"Room {result.code} created!"))
        return True

    async def join_room(self, code: str, player_name: str) -> bool:
        code, name = code.strip(), player_name.strip()
        result: RoomResult = await self._busy(lambda: self.rooms.join_room(code, name))
        if not result.success:
            self._report(result)
            return False
        if not result.joined:
            self._notify(f"Room {code} is full or name {name!r} is taken", CRITICAL)
            return False
        await self._enter_room(code, name, is_host=False)
        self._dispatch(SuccessRaised(f"Joined room {code} as {name}!"))
        return True

    async def leave_room(self) -> bool:
        """Leave the room, keeping it alive for the others."""
        code, name = self.state.room_code, self.state.player_name
        if not code:
            return True
        self._stop_listening()
        result = await self._busy(lambda: self.rooms.leave_room(code, name))
        await self._cancel_presence(code, name)
        self._dispatch(RoomExited())
        if not result.success:
            self._report(result)
        return result.success

    async def exit_game(self) -> bool:
        """Leave the room; the host's exit deletes it for everyone."""
        code, name = self.state.room_code, self.state.player_name
        if not code:
            return True
        is_host = self.state.is_host
        self._stop_listening()
        result = await self._busy(lambda: self.rooms.exit_room(code, name, is_host))
        await self._cancel_presence(code, name)
        self._dispatch(RoomExited())
        if not result.success:
            self._report(result)
        return result.success

    async def _cancel_presence(self, code: str, name: str) -> None:
        try:
            await self.rooms.cancel_presence(code, name)
        except StoreError as e:
            logger.warning("Cancelling presence for %s failed: %s", name, e)

    async def toggle_ready(self) -> bool:
        code, name = self.state.room_code, self.state.player_name
        result = await self._busy(lambda: self.rooms.set_ready(code, name))
        if not result.success:
            self._report(result)
        return result.success

    # -- game actions --------------------------------------------------

    async def _act(
        self,
        action: Callable[[], Awaitable[ActionResult]],
        success: str | Callable[[ActionResult], str] | None = None,
    ) -> ActionResult:
        result: ActionResult = await self._busy(action)
        if not result.success:
            self._report(result)
            return result
        if success:
            message = success(result) if callable(success) else success
            self._dispatch(SuccessRaised(message))
        return result

    def _reject(self, message: str, kind: str = INVALID_ARGUMENT) -> ActionResult:
        result = ActionResult(success=False, error=message, kind=kind)
        self._report(result)
        return result

    async def _players(self) -> list[str] | None:
        """Fresh player list, read straight from the store."""
        code = self.state.room_code
        try:
            raw = await self._store.read(join_path(self.engine.room_path(code), "players"))
        except StoreError as e:
            self._notify(f"Network error while loading players: {e}")
            return None
        return list(raw) if isinstance(raw, dict) else []

    async def start_game(self, deal_count: int | None = None, num_decks: int = 0) -> ActionResult:
        return await self._start(deal_count, num_decks, restart=False)

    async def restart_game(self, deal_count: int | None = None, num_decks: int = 0) -> ActionResult:
        return await self._start(deal_count, num_decks, restart=True)

    async def _start(self, deal_count: int | None, num_decks: int, restart: bool) -> ActionResult:
        if not self.state.is_host:
            return self._reject("Only the host can start the game", INVALID_STATE)
        players = await self._players()
        if players is None:
            return ActionResult(success=False, error="Could not load players")
        if deal_count is None:
            settings = self.state.settings or RoomSettings()
            deal_count = settings.deal_count
        start = self.engine.restart_game if restart else self.engine.start_game
        return await self._act(
            lambda: start(self.state.room_code, players, deal_count, num_decks),
            lambda r: f"Game {'restarted' if restart else 'started'} with {r.value} cards!",
        )

    def toggle_selection(self, card_id: str) -> None:
        self._dispatch(SelectionToggled(card_id))

    def _selection(self, verb: str) -> list[Card] | None:
        cards = self.state.selected_cards
        if not cards:
            self._reject(f"No cards selected to {verb}!")
            return None
        return cards

    async def play_selected(self) -> ActionResult | None:
        cards = self._selection("play")
        if cards is None:
            return None
        result = await self._act(
            lambda: self.engine.play_cards(self.state.room_code, self.state.player_name, cards),
            f"{len(cards)} card(s) played!",
        )
        if result.success:
            self._dispatch(SelectionCleared())
        return result

    async def discard_selected(self) -> ActionResult | None:
        cards = self._selection("discard")
        if cards is None:
            return None
        result = await self._act(
            lambda: self.engine.discard_cards(self.state.room_code, self.state.player_name, cards),
            f"{len(cards)} card(s) discarded!",
        )
        if result.success:
            self._dispatch(SelectionCleared())
        return result

    async def move_selected_to(self, target: str) -> ActionResult | None:
        cards = self._selection("move")
        if cards is None:
            return None
        result = await self._act(
            lambda: self.engine.move_cards(
                self.state.room_code, self.state.player_name, target, cards
            ),
            f"Moved {len(cards)} card(s) to {target}!",
        )
        if result.success:
            self._dispatch(SelectionCleared())
        return result

    async def recall(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.recall_last_pile(self.state.room_code, self.state.player_name),
            "Last pile recalled!",
        )

    async def draw(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.draw_card(self.state.room_code, self.state.player_name),
            "Card drawn!",
        )

    async def draw_from_discard(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.draw_from_discard(self.state.room_code, self.state.player_name),
            "Card drawn from discard!",
        )

    async def shuffle(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.shuffle_deck(self.state.room_code), "Deck shuffled!"
        )

    async def deal(self, count: int) -> ActionResult:
        if count <= 0:
            return self._reject("Enter a positive number of cards to deal")
        players = await self._players()
        if players is None:
            return ActionResult(success=False, error="Could not load players")
        return await self._act(
            lambda: self.engine.deal_deck(self.state.room_code, players, count),
            f"Dealt {count} cards to each player!",
        )

    async def sort_by_rank(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.sort_hand(
                self.state.room_code, self.state.player_name, SORT_BY_RANK
            ),
            "Hand sorted by rank!",
        )

    async def sort_by_suit(self) -> ActionResult:
        return await self._act(
            lambda: self.engine.sort_hand(
                self.state.room_code, self.state.player_name, SORT_BY_SUIT
            ),
            "Hand sorted by suit!",
        )

    async def reorder_hand(self, card_ids: list[str]) -> ActionResult:
        return await self._act(
            lambda: self.engine.sync_hand(self.state.room_code, self.state.player_name, card_ids)
        )
