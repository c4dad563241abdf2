"""Deck operations: generation, shuffle, sort, deal, draw."""

from __future__ import annotations

import random

from cardroom.game.models import Card, RoomSettings
from cardroom.game.resources import CardResources
from cardroom.utils.constants import (
    CARDS_PER_DECK,
    JOKER_RANKS,
    JOKER_SUIT,
    JOKERS_PER_DECK,
    RANK_VALUES,
    RANKS,
    SUIT_ORDER,
    SUITS,
)
from cardroom.utils.crypto import new_card_id


def deck_size_for(settings: RoomSettings) -> int:
    """Number of cards generate_deck() produces for these settings."""
    per_deck = CARDS_PER_DECK + (JOKERS_PER_DECK if settings.include_jokers else 0)
    return settings.num_decks * per_deck


def generate_deck(
    settings: RoomSettings, resources: CardResources, rng: random.Random
) -> list[Card]:
    """Build num_decks standard decks (plus two jokers each), shuffled.

    Every card instance gets its own id, so duplicate decks never collide.
    """
    faces = [(suit, rank) for suit in SUITS for rank in RANKS]
    if settings.include_jokers:
        faces += [(JOKER_SUIT, rank) for rank in JOKER_RANKS]

    cards: list[Card] = []
    for _ in range(settings.num_decks):
        for suit, rank in faces:
            cards.append(
                Card(
                    suit=suit,
                    rank=rank,
                    id=new_card_id(rng),
                    resource=resources.resolve_or_back(suit, rank),
                )
            )
    return shuffle_cards(cards, rng)


def shuffle_cards(cards: list[Card], rng: random.Random) -> list[Card]:
    """Fisher-Yates shuffle using provided RNG. Returns a new list."""
    shuffled = list(cards)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def rank_value(card: Card) -> int:
    return RANK_VALUES.get(card.rank, 0) if not card.is_joker else 0


def suit_order(card: Card) -> int:
    return SUIT_ORDER.get(card.suit, 0)


def sort_by_rank(cards: list[Card]) -> list[Card]:
    """Stable sort by rank, then suit. Jokers sort first."""
    return sorted(cards, key=lambda c: (rank_value(c), suit_order(c)))


def sort_by_suit(cards: list[Card]) -> list[Card]:
    """Stable sort by suit, then rank. Jokers sort first."""
    return sorted(cards, key=lambda c: (suit_order(c), rank_value(c)))


def deal(
    deck: list[Card], players: list[str], count: int
) -> tuple[dict[str, list[Card]], list[Card]]:
    """Deal `count` contiguous cards to each player in list order.

    Returns (dealt, remaining_deck).
    Raises ValueError if the deck is too small.
    """
    needed = count * len(players)
    if len(deck) < needed:
        raise ValueError("Not enough cards to deal")
    dealt = {
        player: list(deck[i * count:(i + 1) * count])
        for i, player in enumerate(players)
    }
    return dealt, list(deck[needed:])


def draw_from_deck(deck: list[Card]) -> tuple[Card, list[Card]]:
    """Draw the top card (front) from the deck.

    Returns (drawn_card, remaining_deck).
    Raises ValueError if deck is empty.
    """
    if not deck:
        raise ValueError("Deck is empty")
    remaining = list(deck)
    card = remaining.pop(0)
    return card, remaining


def draw_from_discard(discard_pile: list[Card]) -> tuple[Card, list[Card]]:
    """Pick up the top card from the discard pile (last element).

    Returns (picked_card, remaining_pile).
    Raises ValueError if pile is empty.
    """
    if not discard_pile:
        raise ValueError("Discard pile is empty")
    remaining = list(discard_pile)
    card = remaining.pop()
    return card, remaining


def take_cards(
    hand: list[Card], ids: list[str]
) -> tuple[list[Card], list[Card]]:
    """Split `hand` into (taken, kept) by card id.

    Taken cards keep the order of `ids`. Raises ValueError if an id is not
    in the hand or is repeated.
    """
    by_id = {c.id: c for c in hand}
    if len(set(ids)) != len(ids):
        raise ValueError("Duplicate card in selection")
    missing = [i for i in ids if i not in by_id]
    if missing:
        raise ValueError(f"{len(missing)} selected card(s) not in hand")
    wanted = set(ids)
    taken = [by_id[i] for i in ids]
    kept = [c for c in hand if c.id not in wanted]
    return taken, kept
