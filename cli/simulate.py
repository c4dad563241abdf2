"""Simulate concurrent clients playing in one room.

Every round, each client fires one random action at the same time against a
shared in-memory store; the room is then checked for lost or duplicated
cards.

Usage: python -m cli.simulate --clients 4 --rounds 200 [--seed 42]
       [--last-writer-wins] [--verbose]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import time

from cardroom.db.memory import InMemoryDatabase
from cardroom.game.engine import ActionResult, GameEngine
from cardroom.game.integrity import validate_room_integrity
from cardroom.game.models import RoomDocument, RoomSettings
from cardroom.lobby.manager import RoomManager
from cardroom.utils.constants import MAX_PLAYERS, SORT_BY_RANK, SORT_BY_SUIT
from cardroom.utils.crypto import create_rng

ACTIONS = ["draw", "discard", "play", "recall", "draw_discard", "shuffle", "move", "sort"]


async def random_action(
    engine: GameEngine,
    code: str,
    player: str,
    room: RoomDocument,
    rng: random.Random,
) -> tuple[str, ActionResult]:
    """Pick and run one action for `player` from a possibly stale view."""
    game = room.game_data
    assert game is not None
    hand = game.hand(player)
    action = rng.choice(ACTIONS)

    if action in ("discard", "play", "move") and hand:
        picked = rng.sample(hand, rng.randint(1, min(3, len(hand))))
        if action == "discard":
            return action, await engine.discard_cards(code, player, picked)
        if action == "play":
            return action, await engine.play_cards(code, player, picked)
        others = [p for p in room.player_names if p != player]
        if others:
            return action, await engine.move_cards(code, player, rng.choice(others), picked)
    if action == "recall":
        return action, await engine.recall_last_pile(code, player)
    if action == "draw_discard":
        return action, await engine.draw_from_discard(code, player)
    if action == "shuffle":
        return action, await engine.shuffle_deck(code)
    if action == "sort":
        by = rng.choice([SORT_BY_RANK, SORT_BY_SUIT])
        return action, await engine.sort_hand(code, player, by)
    return "draw", await engine.draw_card(code, player)


async def simulate(
    num_clients: int,
    rounds: int,
    rng: random.Random,
    use_revisions: bool = True,
    verbose: bool = False,
) -> dict:
    db = InMemoryDatabase()
    players = [f"p{i + 1}" for i in range(num_clients)]
    engines = [
        GameEngine(db.connect(p), rng=create_rng(rng.randrange(2**32)), use_revisions=use_revisions)
        for p in players
    ]
    manager = RoomManager(engines[0])
    settings = RoomSettings(num_decks=1, include_jokers=True, deal_count=5)

    created = await manager.create_room(players[0], settings)
    if not created.success:
        return {"error": created.error}
    code = created.code
    for engine, player in zip(engines[1:], players[1:]):
        joined = await RoomManager(engine).join_room(code, player)
        if not joined.joined:
            return {"error": f"{player} could not join: {joined.error}"}

    started = await engines[0].start_game(code, players, settings.deal_count)
    if not started.success:
        return {"error": started.error}
    expected = started.value

    ok: dict[str, int] = {}
    failed: dict[str, int] = {}
    for round_number in range(1, rounds + 1):
        room = engines[0].decode(code, db.get(engines[0].room_path(code)))
        assert room is not None
        outcomes = await asyncio.gather(*[
            random_action(engine, code, player, room, rng)
            for engine, player in zip(engines, players)
        ])
        for action, result in outcomes:
            bucket = ok if result.success else failed
            bucket[action] = bucket.get(action, 0) + 1

        room = engines[0].decode(code, db.get(engines[0].room_path(code)))
        assert room is not None
        errors = validate_room_integrity(room, expected_total=expected)
        if errors:
            return {"error": f"Round {round_number}: {errors}", "ok": ok, "failed": failed}
        if verbose and round_number % 50 == 0:
            game = room.game_data
            print(
                f"  Round {round_number}: deck={len(game.deck)} "
                f"piles={len(game.piles)} discard={len(game.discard_pile)}"
            )

    return {"error": None, "ok": ok, "failed": failed, "writes": db.write_count}


def main() -> None:
    parser = argparse.ArgumentParser(description="Card room concurrency simulator")
    parser.add_argument("--clients", type=int, default=4, choices=range(2, MAX_PLAYERS + 1))
    parser.add_argument("--rounds", type=int, default=200)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--last-writer-wins",
        action="store_true",
        help="Write without revision checks",
    )
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.ERROR)

    seed = args.seed if args.seed is not None else int(time.time())
    mode = "last-writer-wins" if args.last_writer_wins else "revision-checked"
    print(f"Simulating {args.clients} clients for {args.rounds} rounds ({mode}, seed: {seed})")

    result = asyncio.run(
        simulate(
            args.clients,
            args.rounds,
            create_rng(seed),
            use_revisions=not args.last_writer_wins,
            verbose=args.verbose,
        )
    )

    print("\nResults:")
    if result.get("error"):
        print(f"  Integrity violated: {result['error']}")
    else:
        print(f"  All {args.rounds} rounds consistent")
        print(f"  Store writes: {result['writes']}")
    print(f"  Succeeded: {result.get('ok', {})}")
    print(f"  Rejected: {result.get('failed', {})}")
    if result.get("error"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
