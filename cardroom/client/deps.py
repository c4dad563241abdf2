"""Dependency container for a client session."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import random

    from cardroom.db.repository import RoomStore
    from cardroom.game.engine import GameEngine
    from cardroom.game.resources import CardResources
    from cardroom.lobby.manager import RoomManager


@dataclass
class Deps:
    """Bundles the store, engine and room manager a session talks to."""

    store: RoomStore
    engine: GameEngine
    room_manager: RoomManager


def build_deps(
    store: RoomStore | None = None,
    resources: CardResources | None = None,
    rng: random.Random | None = None,
    use_revisions: bool = True,
) -> Deps:
    """Wire up dependencies. Without a store, connect to the configured database."""
    from cardroom.game.engine import GameEngine
    from cardroom.lobby.manager import RoomManager
    from cardroom.utils.constants import DEFAULT_ROOMS_PATH

    if store is None:
        from cardroom.db.firebase import FirebaseRoomStore

        store = FirebaseRoomStore()

    engine = GameEngine(
        store,
        resources=resources,
        rng=rng,
        rooms_path=os.environ.get("CARDROOM_ROOMS_PATH", DEFAULT_ROOMS_PATH),
        use_revisions=use_revisions,
    )
    return Deps(store=store, engine=engine, room_manager=RoomManager(engine))
