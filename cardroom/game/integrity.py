"""State integrity checker for a room document."""

from __future__ import annotations

from cardroom.game.deck import deck_size_for
from cardroom.game.models import RoomDocument
from cardroom.utils.constants import MAX_PLAYERS, STATE_WAITING


def card_locations(room: RoomDocument) -> dict[str, list[str]]:
    """Map each card id to every location it was found in."""
    locations: dict[str, list[str]] = {}
    game = room.game_data
    if game is None:
        return locations

    def add(cards, where: str) -> None:
        for card in cards:
            locations.setdefault(card.id, []).append(where)

    add(game.deck, "deck")
    for name, hand in game.player_hands.items():
        add(hand, f"hand:{name}")
    for i, pile in enumerate(game.piles):
        add(pile, f"pile:{i}")
    add(game.discard_pile, "discard")
    return locations


def validate_room_integrity(
    room: RoomDocument, expected_total: int | None = None
) -> list[str]:
    """Validate room invariants. Returns list of errors (empty = OK).

    Checks:
    1. Host is one of the players (when there are players)
    2. At most MAX_PLAYERS players while waiting
    3. Total cards = deck + hands + piles + discard (started games). Pass
       the generated total when the deal overrode the room's deck count.
    4. Every card id is in exactly one location
    """
    errors: list[str] = []

    if room.players and room.host not in room.players:
        errors.append(f"Host {room.host!r} is not a player")

    if room.state == STATE_WAITING and len(room.players) > MAX_PLAYERS:
        errors.append(f"{len(room.players)} players waiting, max {MAX_PLAYERS}")

    game = room.game_data
    if not room.started or game is None:
        return errors

    total = len(game.all_cards())
    expected = expected_total if expected_total is not None else deck_size_for(room.settings)
    if total != expected:
        errors.append(f"Total cards = {total}, expected {expected}")

    for card_id, places in card_locations(room).items():
        if len(places) > 1:
            errors.append(f"Card {card_id} found in {len(places)} places: {', '.join(places)}")

    if room.quarantined:
        errors.append(f"Malformed nodes: {', '.join(room.quarantined)}")

    return errors
