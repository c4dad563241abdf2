"""Inspect and validate an exported room.

The file holds one room node as exported from the database (the value at
``rooms/<code>``).

Usage:
  python -m cli.inspect_state --file room.json
  python -m cli.inspect_state --file room.json --player alice --show hand
  python -m cli.inspect_state --file room.json --show table
  python -m cli.inspect_state --file room.json --validate
"""

from __future__ import annotations

import argparse
import json
import sys

from cardroom.game.integrity import validate_room_integrity
from cardroom.game.models import SchemaError, decode_room
from cardroom.game.resources import CardResources


def inspect_state(
    file_path: str,
    code: str,
    player: str | None,
    show: str | None,
    validate: bool,
) -> None:
    with open(file_path) as f:
        data = json.load(f)

    try:
        room = decode_room(code, data, CardResources())
    except SchemaError as e:
        print(f"Not a room: {e}")
        sys.exit(1)
    if room is None:
        print("File holds no room")
        sys.exit(1)

    if validate:
        errors = validate_room_integrity(room)
        if errors:
            print("Integrity errors:")
            for e in errors:
                print(f"  - {e}")
            sys.exit(1)
        else:
            print("Room is consistent")
        return

    game = room.game_data
    if player and show == "hand":
        if player not in room.players:
            print(f"Player {player} not found")
            sys.exit(1)
        hand = game.hand(player) if game else []
        print(f"Hand of {player} ({len(hand)} cards):")
        for i, card in enumerate(hand, 1):
            print(f"  {i:2d}. {card.display()} [{card.id[:8]}]")
        return

    if show == "table":
        if game is None or not game.piles:
            print("No piles on the table")
        else:
            print("Table piles:")
            for i, pile in enumerate(game.piles):
                print(f"  [{i}] {' | '.join(c.display() for c in pile)}")
            if game.last_played:
                print(f"Last played by {game.last_played.player}")
        return

    # Default: summary
    print(f"Room: {room.code}")
    print(f"State: {room.state}")
    print(f"Host: {room.host}")
    print(
        f"Settings: {room.settings.num_decks} deck(s), "
        f"jokers={'on' if room.settings.include_jokers else 'off'}, "
        f"deal={room.settings.deal_count}"
    )
    print("Players:")
    for name, ready in room.players.items():
        cards = game.hand_counts.get(name, 0) if game else 0
        print(f"  {name}: {cards} cards{' (ready)' if ready else ''}")
    if game is not None:
        print(f"Deck: {game.deck_count} cards")
        print(f"Discard: {len(game.discard_pile)} cards")
        if game.discard_pile:
            print(f"  Top: {game.discard_pile[-1].display()}")
    if room.quarantined:
        print(f"Malformed nodes: {', '.join(room.quarantined)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect an exported card room")
    parser.add_argument("--file", required=True, help="Path to room JSON")
    parser.add_argument("--code", default="0000", help="Room code to report")
    parser.add_argument("--player", help="Player name to inspect")
    parser.add_argument("--show", choices=["hand", "table"], help="What to show")
    parser.add_argument("--validate", action="store_true", help="Validate integrity")
    args = parser.parse_args()
    inspect_state(args.file, args.code, args.player, args.show, args.validate)


if __name__ == "__main__":
    main()
