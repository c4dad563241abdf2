"""Client-visible view state and the reducer that derives it.

Every change goes through ``reduce(state, event)``. Snapshot projection is a
full re-derivation from the room document: nothing but the local identity,
selection and notices survives from the previous state, so re-running it
after a reconnect is always safe.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from cardroom.game.models import Card, RoomDocument, RoomSettings, card_ids
from cardroom.utils.constants import MAX_PLAYERS

SCREEN_HOME = "home"
SCREEN_ROOM = "room"


@dataclass(frozen=True)
class Notice:
    id: int
    message: str
    severity: str


@dataclass(frozen=True)
class ViewState:
    screen: str = SCREEN_HOME
    room_code: str = ""
    player_name: str = ""
    settings: RoomSettings | None = None
    players: tuple[str, ...] = ()
    ready: dict[str, bool] = field(default_factory=dict)
    host: str = ""
    is_host: bool = False
    game_started: bool = False
    my_hand: tuple[Card, ...] = ()
    table: tuple[tuple[Card, ...], ...] = ()
    discard_pile: tuple[Card, ...] = ()
    deck_size: int = 0
    deck_empty: bool = True
    other_players_hand_sizes: dict[str, int] = field(default_factory=dict)
    can_recall: bool = False
    selected: frozenset[str] = frozenset()
    is_connected: bool = True
    show_new_host_dialog: bool = False
    busy: bool = False
    notice: Notice | None = None
    success_message: str = ""

    @property
    def selected_cards(self) -> list[Card]:
        return [c for c in self.my_hand if c.id in self.selected]

    @property
    def room_full(self) -> bool:
        return len(self.players) >= MAX_PLAYERS


# Events ---------------------------------------------------------------


@dataclass(frozen=True)
class RoomEntered:
    code: str
    player_name: str
    is_host: bool


@dataclass(frozen=True)
class RoomExited:
    pass


@dataclass(frozen=True)
class SnapshotReceived:
    room: RoomDocument
    host: str


@dataclass(frozen=True)
class ConnectivityChanged:
    connected: bool


@dataclass(frozen=True)
class NoticeRaised:
    notice: Notice


@dataclass(frozen=True)
class NoticeCleared:
    id: int | None = None


@dataclass(frozen=True)
class SuccessRaised:
    message: str


@dataclass(frozen=True)
class SuccessCleared:
    pass


@dataclass(frozen=True)
class HostDialogCleared:
    pass


@dataclass(frozen=True)
class SelectionToggled:
    card_id: str


@dataclass(frozen=True)
class SelectionCleared:
    pass


@dataclass(frozen=True)
class BusyChanged:
    busy: bool


def elect_host(room: RoomDocument) -> str | None:
    """New host when the recorded one has left, else None.

    The lexicographically smallest name wins so every client elects the
    same player.
    """
    if not room.players or room.host in room.players:
        return None
    return min(room.players)


def can_recall(room: RoomDocument, player: str) -> bool:
    game = room.game_data
    if game is None or game.last_played is None:
        return False
    last = game.last_played
    return (
        last.player == player
        and bool(last.hand)
        and bool(game.piles)
        and card_ids(game.piles[-1]) == card_ids(last.hand)
    )


def project(state: ViewState, room: RoomDocument, host: str) -> ViewState:
    """Derive every room-dependent field from one snapshot."""
    me = state.player_name
    players = tuple(room.player_names)
    is_host = me == host
    game = room.game_data
    started = room.started and game is not None

    deck_size = game.deck_count if game is not None else 0
    hand_counts = game.hand_counts if game is not None else {}

    my_hand: tuple[Card, ...] = ()
    table: tuple[tuple[Card, ...], ...] = ()
    discard: tuple[Card, ...] = ()
    if started:
        my_hand = tuple(game.hand(me))
        table = tuple(tuple(pile) for pile in game.piles)
        discard = tuple(game.discard_pile)

    hand_ids = {c.id for c in my_hand}
    return replace(
        state,
        settings=room.settings,
        players=players,
        ready=dict(room.players),
        host=host,
        is_host=is_host,
        show_new_host_dialog=state.show_new_host_dialog or (is_host and not state.is_host),
        game_started=started,
        deck_size=deck_size,
        deck_empty=deck_size == 0,
        other_players_hand_sizes={p: hand_counts.get(p, 0) for p in players if p != me},
        my_hand=my_hand,
        table=table,
        discard_pile=discard,
        can_recall=started and can_recall(room, me),
        selected=frozenset(i for i in state.selected if i in hand_ids),
    )


def reduce(state: ViewState, event: object) -> ViewState:
    if isinstance(event, SnapshotReceived):
        return project(state, event.room, event.host)
    if isinstance(event, RoomEntered):
        return ViewState(
            screen=SCREEN_ROOM,
            room_code=event.code,
            player_name=event.player_name,
            host=event.player_name if event.is_host else "",
            is_host=event.is_host,
            is_connected=state.is_connected,
            success_message=state.success_message,
        )
    if isinstance(event, RoomExited):
        return ViewState(
            is_connected=state.is_connected,
            notice=state.notice,
            success_message=state.success_message,
        )
    if isinstance(event, ConnectivityChanged):
        return replace(state, is_connected=event.connected)
    if isinstance(event, NoticeRaised):
        return replace(state, notice=event.notice)
    if isinstance(event, NoticeCleared):
        if state.notice is None or (event.id is not None and state.notice.id != event.id):
            return state
        return replace(state, notice=None)
    if isinstance(event, SuccessRaised):
        return replace(state, success_message=event.message)
    if isinstance(event, SuccessCleared):
        return replace(state, success_message="")
    if isinstance(event, HostDialogCleared):
        return replace(state, show_new_host_dialog=False)
    if isinstance(event, SelectionToggled):
        if event.card_id in state.selected:
            return replace(state, selected=state.selected - {event.card_id})
        return replace(state, selected=state.selected | {event.card_id})
    if isinstance(event, SelectionCleared):
        return replace(state, selected=frozenset())
    if isinstance(event, BusyChanged):
        return replace(state, busy=event.busy)
    raise TypeError(f"Unknown event: {type(event).__name__}")
