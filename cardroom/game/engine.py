"""Game operations engine: every action is read, compute, one atomic write."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable

from cardroom.db.repository import RevisionConflict, RoomStore, StoreError
from cardroom.db.tree import apply_updates, join_path
from cardroom.game.deck import (
    deal,
    draw_from_deck,
    draw_from_discard,
    generate_deck,
    shuffle_cards,
    sort_by_rank,
    sort_by_suit,
    take_cards,
)
from cardroom.game.errors import (
    EMPTY_RESOURCE,
    INSUFFICIENT_CARDS,
    INVALID_ARGUMENT,
    INVALID_STATE,
    NOT_FOUND,
    STORE_ERROR,
)
from cardroom.game.models import (
    Card,
    GameData,
    LastPlayed,
    RoomDocument,
    RoomSettings,
    SchemaError,
    card_ids,
    cards_to_wire,
    decode_room,
)
from cardroom.game.resources import CardResources
from cardroom.utils.clock import now_ms
from cardroom.utils.constants import (
    DEFAULT_ROOMS_PATH,
    OPERATION_TIMEOUT_SECONDS,
    SORT_BY_RANK,
    SORT_BY_SUIT,
    STATE_STARTED,
    WRITE_ATTEMPTS,
)
from cardroom.utils.crypto import create_rng

logger = logging.getLogger("cardroom.engine")


@dataclass
class ActionResult:
    success: bool
    room: RoomDocument | None = None
    error: str | None = None
    kind: str | None = None
    value: Any = None
    events: list[dict] = field(default_factory=list)


@dataclass
class Mutation:
    """Paths to write (relative to the room) plus what to report."""

    updates: dict[str, Any]
    event: dict
    value: Any = None


Compute = Callable[[RoomDocument | None], "Mutation | ActionResult"]


def failure(kind: str, error: str, room: RoomDocument | None = None) -> ActionResult:
    return ActionResult(success=False, room=room, error=error, kind=kind)


def _ids(cards: list[Card] | list[str]) -> list[str]:
    return [c.id if isinstance(c, Card) else c for c in cards]


def _hand_path(player: str) -> str:
    return f"gameData/playerHands/{player}"


def _game(room: RoomDocument) -> GameData | ActionResult:
    if not room.started or room.game_data is None:
        return failure(INVALID_STATE, "The game has not started", room)
    return room.game_data


class GameEngine:
    """Stateless engine. All state lives in the store.

    With ``use_revisions`` (the default) each write is conditional on the
    room being unchanged since it was read; a conflicting write by another
    client triggers a fresh read and recompute, up to ``max_attempts``.
    Without it, writes are plain last-writer-wins multi-path updates.
    """

    def __init__(
        self,
        store: RoomStore,
        resources: CardResources | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], int] = now_ms,
        rooms_path: str = DEFAULT_ROOMS_PATH,
        use_revisions: bool = True,
        max_attempts: int = WRITE_ATTEMPTS,
        operation_timeout: float = OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self.resources = resources or CardResources()
        self._rng = rng or create_rng()
        self._clock = clock
        self.rooms_path = rooms_path
        self._use_revisions = use_revisions
        self._max_attempts = max_attempts if use_revisions else 1
        self._timeout = operation_timeout

    @property
    def store(self) -> RoomStore:
        return self._store

    @property
    def rng(self) -> random.Random:
        return self._rng

    def now(self) -> int:
        return self._clock()

    def room_path(self, code: str) -> str:
        return join_path(self.rooms_path, code)

    def decode(self, code: str, node: Any) -> RoomDocument | None:
        room = decode_room(code, node, self.resources)
        if room is not None and room.quarantined:
            logger.warning(
                json.dumps({"event": "quarantined_nodes", "room": code, "paths": room.quarantined})
            )
        return room

    async def apply(
        self,
        code: str,
        action: str,
        compute: Compute,
        allow_missing: bool = False,
    ) -> ActionResult:
        """Run one read-compute-write cycle against room `code`."""
        path = self.room_path(code)
        try:
            async with asyncio.timeout(self._timeout):
                for attempt in range(1, self._max_attempts + 1):
                    raw, revision = await self._store.read_with_revision(path)
                    room = self.decode(code, raw)
                    if room is None and not allow_missing:
                        return failure(NOT_FOUND, f"Room {code} does not exist")

                    outcome = compute(room)
                    if isinstance(outcome, ActionResult):
                        return outcome

                    now = self.now()
                    updates = dict(outcome.updates)
                    updates.setdefault("lastActive", now)
                    updates.setdefault("lastUpdated", now)
                    try:
                        await self._store.update(
                            path,
                            updates,
                            expected_revision=revision if self._use_revisions else None,
                        )
                    except RevisionConflict:
                        logger.warning(
                            json.dumps({
                                "event": "revision_conflict",
                                "action": action,
                                "room": code,
                                "attempt": attempt,
                            })
                        )
                        continue

                    event = {"event": action, "room": code, **outcome.event}
                    logger.info(json.dumps(event))
                    after = self.decode(code, apply_updates(raw, updates))
                    return ActionResult(
                        success=True, room=after, value=outcome.value, events=[event]
                    )
        except TimeoutError:
            logger.warning("Operation %s on room %s timed out", action, code)
            return failure(STORE_ERROR, f"Network timeout during {action}")
        except StoreError as e:
            logger.warning("Operation %s on room %s failed: %s", action, code, e)
            return failure(STORE_ERROR, f"Network error during {action}: {e}")
        except SchemaError as e:
            logger.warning("Room %s is malformed: %s", code, e)
            return failure(INVALID_STATE, f"Room {code} is malformed")

        return failure(STORE_ERROR, "The room changed concurrently, try again")

    # -- game lifecycle -------------------------------------------------

    async def start_game(
        self,
        code: str,
        players: list[str],
        deal_count: int,
        num_decks: int = 0,
        restart: bool = False,
    ) -> ActionResult:
        """Generate a deck, deal `deal_count` cards to each player in order.

        num_decks <= 0 keeps the room's configured deck count. The overrides
        only shape this deal; the stored room settings are left as created.
        """
        if not players or len(set(players)) != len(players):
            return failure(INVALID_ARGUMENT, "A distinct, non-empty player list is required")
        if deal_count < 0:
            return failure(INVALID_ARGUMENT, "Deal count must be non-negative")

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            if room.started and not restart:
                return failure(INVALID_STATE, "The game has already started", room)
            settings = RoomSettings(
                num_decks=num_decks if num_decks > 0 else room.settings.num_decks,
                include_jokers=room.settings.include_jokers,
                deal_count=deal_count,
            )
            deck = generate_deck(settings, self.resources, self._rng)
            if len(deck) < deal_count * len(players):
                return failure(
                    INSUFFICIENT_CARDS,
                    f"Not enough cards to deal {deal_count} to {len(players)} players",
                    room,
                )
            hands, remaining = deal(deck, players, deal_count)
            game_data = GameData(deck=remaining, player_hands=hands)
            return Mutation(
                updates={
                    "state": STATE_STARTED,
                    "gameData": game_data.to_dict(),
                },
                event={
                    "players": players,
                    "deal_count": deal_count,
                    "num_decks": settings.num_decks,
                    "deck_total": len(deck),
                    "deck_remaining": len(remaining),
                },
                value=len(deck),
            )

        return await self.apply(code, "restart_game" if restart else "start_game", compute)

    async def restart_game(
        self, code: str, players: list[str], deal_count: int, num_decks: int = 0
    ) -> ActionResult:
        return await self.start_game(code, players, deal_count, num_decks, restart=True)

    # -- card actions ---------------------------------------------------

    async def play_cards(
        self, code: str, player: str, cards: list[Card] | list[str]
    ) -> ActionResult:
        """Move cards from the player's hand onto a new table pile."""
        ids = _ids(cards)
        if not ids:
            return failure(INVALID_ARGUMENT, "No cards selected to play")

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                played, kept = take_cards(game.hand(player), ids)
            except ValueError as e:
                return failure(INVALID_STATE, str(e), room)
            piles = game.piles + [played]
            return Mutation(
                updates={
                    _hand_path(player): cards_to_wire(kept),
                    "gameData/table/piles": [cards_to_wire(p) for p in piles],
                    "gameData/lastPlayed": LastPlayed(player, played).to_dict(),
                },
                event={"player": player, "cards": card_ids(played), "hand_size": len(kept)},
                value=played,
            )

        return await self.apply(code, "play_cards", compute)

    async def discard_cards(
        self, code: str, player: str, cards: list[Card] | list[str]
    ) -> ActionResult:
        """Move cards from the player's hand to the top of the discard pile."""
        ids = _ids(cards)
        if not ids:
            return failure(INVALID_ARGUMENT, "No cards selected to discard")

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                discarded, kept = take_cards(game.hand(player), ids)
            except ValueError as e:
                return failure(INVALID_STATE, str(e), room)
            pile = game.discard_pile + discarded
            return Mutation(
                updates={
                    _hand_path(player): cards_to_wire(kept),
                    "gameData/discardPile": cards_to_wire(pile),
                },
                event={"player": player, "cards": card_ids(discarded), "discard_size": len(pile)},
                value=discarded,
            )

        return await self.apply(code, "discard_cards", compute)

    async def recall_last_pile(self, code: str, player: str) -> ActionResult:
        """Take back the player's own last play if it is still on top."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            last = game.last_played
            if last is None or last.player != player:
                return failure(INVALID_STATE, "Not your last play", room)
            if (
                not last.hand
                or not game.piles
                or card_ids(game.piles[-1]) != card_ids(last.hand)
            ):
                return failure(INVALID_STATE, "No valid pile to recall", room)
            hand = game.hand(player) + last.hand
            return Mutation(
                updates={
                    _hand_path(player): cards_to_wire(hand),
                    "gameData/table/piles": [cards_to_wire(p) for p in game.piles[:-1]],
                    "gameData/lastPlayed": None,
                },
                event={"player": player, "cards": card_ids(last.hand)},
                value=last.hand,
            )

        return await self.apply(code, "recall_last_pile", compute)

    async def draw_card(self, code: str, player: str) -> ActionResult:
        """Draw the front card of the deck into the player's hand."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                card, deck = draw_from_deck(game.deck)
            except ValueError:
                return failure(EMPTY_RESOURCE, "Deck is empty, shuffle or end the game", room)
            hand = game.hand(player) + [card]
            return Mutation(
                updates={
                    "gameData/deck": cards_to_wire(deck),
                    _hand_path(player): cards_to_wire(hand),
                },
                event={"player": player, "card": card.id, "deck_remaining": len(deck)},
                value=card,
            )

        return await self.apply(code, "draw_card", compute)

    async def draw_from_discard(self, code: str, player: str) -> ActionResult:
        """Pick up the top of the discard pile."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                card, pile = draw_from_discard(game.discard_pile)
            except ValueError:
                return failure(EMPTY_RESOURCE, "Discard pile is empty", room)
            hand = game.hand(player) + [card]
            return Mutation(
                updates={
                    "gameData/discardPile": cards_to_wire(pile),
                    _hand_path(player): cards_to_wire(hand),
                },
                event={"player": player, "card": card.id, "discard_size": len(pile)},
                value=card,
            )

        return await self.apply(code, "draw_from_discard", compute)

    async def shuffle_deck(self, code: str) -> ActionResult:
        """Shuffle every table pile back into the deck."""

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            if not game.piles:
                return failure(INVALID_STATE, "No cards on table to shuffle", room)
            table_cards = shuffle_cards(
                [c for pile in game.piles for c in pile], self._rng
            )
            deck = shuffle_cards(game.deck + table_cards, self._rng)
            return Mutation(
                updates={
                    "gameData/deck": cards_to_wire(deck),
                    "gameData/table/piles": None,
                },
                event={"from_table": len(table_cards), "deck_size": len(deck)},
                value=len(table_cards),
            )

        return await self.apply(code, "shuffle_deck", compute)

    async def deal_deck(self, code: str, players: list[str], count: int) -> ActionResult:
        """Deal `count` more cards from the deck to each listed player."""
        if count <= 0:
            return failure(INVALID_ARGUMENT, "Deal count must be positive")
        if not players or len(set(players)) != len(players):
            return failure(INVALID_ARGUMENT, "A distinct, non-empty player list is required")

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                dealt, deck = deal(game.deck, players, count)
            except ValueError:
                max_each = len(game.deck) // len(players)
                return failure(
                    INSUFFICIENT_CARDS,
                    f"Cannot deal {count} cards, max is {max_each} per player",
                    room,
                )
            hands = {p: game.hand(p) + dealt[p] for p in players}
            updates: dict[str, Any] = {"gameData/deck": cards_to_wire(deck)}
            for p, hand in hands.items():
                updates[_hand_path(p)] = cards_to_wire(hand)
            return Mutation(
                updates=updates,
                event={"players": players, "count": count, "deck_remaining": len(deck)},
                value=hands,
            )

        return await self.apply(code, "deal_deck", compute)

    async def move_cards(
        self,
        code: str,
        from_player: str,
        to_player: str,
        cards: list[Card] | list[str],
    ) -> ActionResult:
        """Hand cards from one player to another."""
        ids = _ids(cards)
        if not ids:
            return failure(INVALID_ARGUMENT, "No cards selected to move")
        if from_player == to_player:
            return failure(INVALID_ARGUMENT, "Cannot move cards to yourself")

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            try:
                moved, kept = take_cards(game.hand(from_player), ids)
            except ValueError as e:
                return failure(INVALID_STATE, str(e), room)
            return Mutation(
                updates={
                    _hand_path(from_player): cards_to_wire(kept),
                    _hand_path(to_player): cards_to_wire(game.hand(to_player) + moved),
                },
                event={"from": from_player, "to": to_player, "cards": card_ids(moved)},
                value=moved,
            )

        return await self.apply(code, "move_cards", compute)

    # -- hand order -----------------------------------------------------

    async def sync_hand(
        self, code: str, player: str, cards: list[Card] | list[str]
    ) -> ActionResult:
        """Persist a new order for the player's hand.

        The new order must hold exactly the cards currently in the hand.
        """
        ids = _ids(cards)

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            hand = game.hand(player)
            if sorted(ids) != sorted(card_ids(hand)):
                return failure(INVALID_STATE, "Hand changed, refresh and try again", room)
            by_id = {c.id: c for c in hand}
            ordered = [by_id[i] for i in ids]
            return Mutation(
                updates={_hand_path(player): cards_to_wire(ordered)},
                event={"player": player, "hand_size": len(ordered)},
                value=ordered,
            )

        return await self.apply(code, "sync_hand", compute)

    async def sort_hand(self, code: str, player: str, by: str = SORT_BY_RANK) -> ActionResult:
        if by not in (SORT_BY_RANK, SORT_BY_SUIT):
            return failure(INVALID_ARGUMENT, f"Unknown sort order: {by}")
        sorter = sort_by_rank if by == SORT_BY_RANK else sort_by_suit

        def compute(room: RoomDocument) -> Mutation | ActionResult:
            game = _game(room)
            if isinstance(game, ActionResult):
                return game
            ordered = sorter(game.hand(player))
            return Mutation(
                updates={_hand_path(player): cards_to_wire(ordered)},
                event={"player": player, "by": by},
                value=ordered,
            )

        return await self.apply(code, "sort_hand", compute)
