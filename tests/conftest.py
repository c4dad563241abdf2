"""Shared test fixtures for the card room."""

from __future__ import annotations

import pytest

from cardroom.client.deps import build_deps
from cardroom.client.session import GameSession
from cardroom.db.memory import InMemoryDatabase
from cardroom.game.engine import GameEngine
from cardroom.game.models import Card, RoomSettings
from cardroom.game.resources import CardResources
from cardroom.lobby.manager import RoomManager
from cardroom.utils.crypto import create_rng


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def card(suit: str, rank: str, card_id: str | None = None) -> Card:
    """Build a card with a resolved resource."""
    resource = CardResources().resolve_or_back(suit, rank)
    return Card(suit=suit, rank=rank, id=card_id or f"{suit}-{rank}", resource=resource)


def room_node(
    players: list[str],
    host: str | None = None,
    state: str = "waiting",
    settings: RoomSettings | None = None,
    game_data: dict | None = None,
    stamp: int = 1_700_000_000_000,
) -> dict:
    """Raw room node as stored in the database."""
    node = {
        "settings": (settings or RoomSettings()).to_dict(),
        "state": state,
        "host": host if host is not None else players[0],
        "players": {p: {"ready": False} for p in players},
        "lastActive": stamp,
        "lastUpdated": stamp,
    }
    if game_data is not None:
        node["gameData"] = game_data
    return node


def make_session(db: InMemoryDatabase, client_id: str, seed: int = 42, **kwargs) -> GameSession:
    deps = build_deps(store=db.connect(client_id), rng=create_rng(seed))
    session = GameSession(deps, **kwargs)
    session.start()
    return session


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def rng():
    return create_rng(42)


@pytest.fixture
def resources():
    return CardResources()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db):
    return db.connect("alice")


@pytest.fixture
def engine(store, resources, rng, clock):
    return GameEngine(store, resources=resources, rng=rng, clock=clock)


@pytest.fixture
def manager(engine):
    return RoomManager(engine)
