"""Data models and wire schema for a card room.

The room tree is stored as plain JSON in the real-time store. Everything
crossing that boundary goes through the to_dict/from_dict pairs below; card
nodes that cannot be decoded are dropped and their paths recorded in
``RoomDocument.quarantined`` instead of being defaulted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cardroom.game.resources import CardResources
from cardroom.utils.constants import JOKER_SUIT, STATE_STARTED, STATE_WAITING


class SchemaError(ValueError):
    """Raised when a room node is not shaped like a room at all."""


@dataclass(frozen=True, eq=False)
class Card:
    """A single playing card.

    Two cards are the same logical card iff their ids match; suit and rank
    repeat across decks.
    """

    suit: str
    rank: str
    id: str
    resource: str = ""

    @property
    def is_joker(self) -> bool:
        return self.suit == JOKER_SUIT

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Card):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def display(self) -> str:
        if self.is_joker:
            return f"{self.rank} Joker"
        return f"{self.rank} of {self.suit}"

    def to_dict(self) -> dict:
        """Serialize for storage. The resource is never persisted."""
        return {"suit": self.suit, "rank": self.rank, "id": self.id}

    @classmethod
    def from_dict(cls, d: Any, resources: CardResources) -> Card | None:
        """Deserialize from storage.

        Returns None for nodes that are not card records or whose face does
        not resolve to a real resource.
        """
        if not isinstance(d, dict):
            return None
        suit, rank, card_id = d.get("suit"), d.get("rank"), d.get("id")
        if not all(isinstance(v, str) and v for v in (suit, rank, card_id)):
            return None
        resource = resources.resolve(suit, rank)
        if resource is None:
            return None
        return cls(suit=suit, rank=rank, id=card_id, resource=resource)


def card_ids(cards: list[Card]) -> list[str]:
    return [c.id for c in cards]


def cards_to_wire(cards: list[Card]) -> list[dict]:
    return [c.to_dict() for c in cards]


@dataclass(frozen=True)
class RoomSettings:
    num_decks: int = 1
    include_jokers: bool = False
    deal_count: int = 5

    def validate(self) -> str | None:
        """Return an error message, or None if the settings are usable."""
        if not isinstance(self.num_decks, int) or self.num_decks < 1:
            return "Number of decks must be a positive integer"
        if not isinstance(self.deal_count, int) or self.deal_count < 0:
            return "Deal count must be a non-negative integer"
        return None

    def to_dict(self) -> dict:
        return {
            "numDecks": self.num_decks,
            "includeJokers": self.include_jokers,
            "dealCount": self.deal_count,
        }

    @classmethod
    def from_dict(cls, d: Any) -> RoomSettings:
        if not isinstance(d, dict):
            return cls()
        num_decks = _as_int(d.get("numDecks", 1))
        return cls(
            num_decks=num_decks if num_decks > 0 else 1,
            include_jokers=bool(d.get("includeJokers", False)),
            deal_count=max(_as_int(d.get("dealCount", 5)), 0),
        )


@dataclass(frozen=True)
class LastPlayed:
    player: str
    hand: list[Card]

    def to_dict(self) -> dict:
        return {"player": self.player, "hand": cards_to_wire(self.hand)}


def _children(node: Any) -> list[tuple[str, Any]]:
    """Ordered (key, child) pairs of a sequence node.

    The store returns arrays either as lists (with holes as None) or, once
    sparse, as objects keyed by index.
    """
    if node is None:
        return []
    if isinstance(node, list):
        return [(str(i), v) for i, v in enumerate(node) if v is not None]
    if isinstance(node, dict):
        try:
            keys = sorted(node, key=int)
        except ValueError:
            keys = list(node)
        return [(k, node[k]) for k in keys if node[k] is not None]
    raise SchemaError(f"expected a sequence, got {type(node).__name__}")


def child_count(node: Any) -> int:
    """Raw number of children, regardless of whether they decode."""
    if isinstance(node, (list, dict)):
        return sum(1 for _, v in _children(node))
    return 0


class _Decoder:
    """Collects quarantined paths while decoding one room."""

    def __init__(self, resources: CardResources) -> None:
        self.resources = resources
        self.quarantined: list[str] = []

    def cards(self, node: Any, path: str) -> list[Card]:
        try:
            children = _children(node)
        except SchemaError:
            self.quarantined.append(path)
            return []
        cards: list[Card] = []
        for key, child in children:
            card = Card.from_dict(child, self.resources)
            if card is None:
                self.quarantined.append(f"{path}/{key}")
            else:
                cards.append(card)
        return cards

    def mapping(self, node: Any, path: str) -> dict:
        if node is None:
            return {}
        if not isinstance(node, dict):
            self.quarantined.append(path)
            return {}
        return node


@dataclass
class GameData:
    deck: list[Card] = field(default_factory=list)
    player_hands: dict[str, list[Card]] = field(default_factory=dict)
    piles: list[list[Card]] = field(default_factory=list)
    discard_pile: list[Card] = field(default_factory=list)
    last_played: LastPlayed | None = None
    # Raw child counts as seen in the snapshot, before decoding
    deck_count: int = 0
    hand_counts: dict[str, int] = field(default_factory=dict)

    def hand(self, player: str) -> list[Card]:
        return list(self.player_hands.get(player, []))

    def all_cards(self) -> list[Card]:
        cards = list(self.deck)
        for hand in self.player_hands.values():
            cards.extend(hand)
        for pile in self.piles:
            cards.extend(pile)
        cards.extend(self.discard_pile)
        return cards

    def to_dict(self) -> dict:
        return {
            "deck": cards_to_wire(self.deck),
            "playerHands": {
                name: cards_to_wire(hand) for name, hand in self.player_hands.items()
            },
            "table": {"piles": [cards_to_wire(p) for p in self.piles]},
            "discardPile": cards_to_wire(self.discard_pile),
            "lastPlayed": self.last_played.to_dict() if self.last_played else {},
        }

    @classmethod
    def _decode(cls, d: Any, decoder: _Decoder) -> GameData:
        node = decoder.mapping(d, "gameData")
        hands_node = decoder.mapping(node.get("playerHands"), "gameData/playerHands")
        table = decoder.mapping(node.get("table"), "gameData/table")

        piles: list[list[Card]] = []
        try:
            pile_nodes = _children(table.get("piles"))
        except SchemaError:
            decoder.quarantined.append("gameData/table/piles")
            pile_nodes = []
        for key, pile_node in pile_nodes:
            piles.append(decoder.cards(pile_node, f"gameData/table/piles/{key}"))

        last_played = None
        lp = decoder.mapping(node.get("lastPlayed"), "gameData/lastPlayed")
        if lp:
            player = lp.get("player")
            if isinstance(player, str) and player:
                last_played = LastPlayed(
                    player=player,
                    hand=decoder.cards(lp.get("hand"), "gameData/lastPlayed/hand"),
                )
            else:
                decoder.quarantined.append("gameData/lastPlayed")

        return cls(
            deck=decoder.cards(node.get("deck"), "gameData/deck"),
            player_hands={
                name: decoder.cards(hand, f"gameData/playerHands/{name}")
                for name, hand in hands_node.items()
            },
            piles=piles,
            discard_pile=decoder.cards(node.get("discardPile"), "gameData/discardPile"),
            last_played=last_played,
            deck_count=child_count(node.get("deck")),
            hand_counts={name: child_count(hand) for name, hand in hands_node.items()},
        )


@dataclass
class RoomDocument:
    """Complete state of one room (one subtree of the store)."""

    code: str
    settings: RoomSettings
    state: str
    host: str
    players: dict[str, bool]  # name -> ready
    last_active: int = 0
    last_updated: int = 0
    game_data: GameData | None = None
    quarantined: list[str] = field(default_factory=list)

    @property
    def player_names(self) -> list[str]:
        return list(self.players)

    @property
    def started(self) -> bool:
        return self.state == STATE_STARTED

    def to_dict(self) -> dict:
        d = {
            "settings": self.settings.to_dict(),
            "state": self.state,
            "host": self.host,
            "players": {name: {"ready": ready} for name, ready in self.players.items()},
            "lastActive": self.last_active,
            "lastUpdated": self.last_updated,
        }
        if self.game_data is not None:
            d["gameData"] = self.game_data.to_dict()
        return d

    @classmethod
    def from_dict(cls, code: str, d: Any, resources: CardResources) -> RoomDocument:
        if not isinstance(d, dict):
            raise SchemaError(f"room {code} is not a mapping")
        decoder = _Decoder(resources)

        players: dict[str, bool] = {}
        for name, entry in decoder.mapping(d.get("players"), "players").items():
            ready = entry.get("ready", False) if isinstance(entry, dict) else False
            players[name] = bool(ready)

        state = d.get("state", STATE_WAITING)
        if state not in (STATE_WAITING, STATE_STARTED):
            decoder.quarantined.append("state")
            state = STATE_WAITING

        game_data = None
        if "gameData" in d:
            game_data = GameData._decode(d["gameData"], decoder)

        host = d.get("host")
        return cls(
            code=code,
            settings=RoomSettings.from_dict(d.get("settings")),
            state=state,
            host=host if isinstance(host, str) else "",
            players=players,
            last_active=_as_int(d.get("lastActive")),
            last_updated=_as_int(d.get("lastUpdated")),
            game_data=game_data,
            quarantined=decoder.quarantined,
        )


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def decode_room(code: str, node: Any, resources: CardResources) -> RoomDocument | None:
    """Decode a room snapshot; None when the room does not exist."""
    if node is None:
        return None
    return RoomDocument.from_dict(code, node, resources)
