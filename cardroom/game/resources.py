"""Card face resources.

A resource reference is an opaque handle the renderer understands (here the
asset name). It is never persisted: it is derived from suit and rank every
time a card is built or decoded.
"""

from __future__ import annotations

from cardroom.utils.constants import (
    CARD_BACK,
    JOKER_RANKS,
    JOKER_SUIT,
    RANKS,
    SUITS,
)


def resource_key(suit: str, rank: str) -> str:
    return f"{suit}_{rank}"


def default_resource_map() -> dict[str, str]:
    """Asset names for a standard deck plus both jokers."""
    mapping = {
        resource_key(suit, rank): f"{suit.lower()}_{rank.lower()}"
        for suit in SUITS
        for rank in RANKS
    }
    for rank in JOKER_RANKS:
        mapping[resource_key(JOKER_SUIT, rank)] = f"{rank.lower()}_joker"
    return mapping


class CardResources:
    """Resolves (suit, rank) pairs to resource references."""

    def __init__(
        self,
        mapping: dict[str, str] | None = None,
        card_back: str = CARD_BACK,
    ) -> None:
        self._mapping = dict(mapping) if mapping is not None else default_resource_map()
        self.card_back = card_back

    def resolve(self, suit: str, rank: str) -> str | None:
        """Return the resource for a face, or None if it is unknown."""
        resource = self._mapping.get(resource_key(suit, rank))
        if not resource or resource == self.card_back:
            return None
        return resource

    def resolve_or_back(self, suit: str, rank: str) -> str:
        """Like resolve(), but falls back to the card back."""
        return self.resolve(suit, rank) or self.card_back
