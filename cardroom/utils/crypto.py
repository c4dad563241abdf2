"""Random utilities: rng creation, room codes, card ids."""

import random
import secrets
import uuid

from cardroom.utils.constants import ROOM_CODE_LENGTH


def create_rng(seed: int | None = None) -> random.Random:
    """Create a Random instance.

    If seed is provided, returns a deterministic Random (for tests/replay).
    If seed is None, returns SystemRandom (cryptographically secure).
    """
    if seed is not None:
        return random.Random(seed)
    return secrets.SystemRandom()


def generate_room_code(rng: random.Random, length: int = ROOM_CODE_LENGTH) -> str:
    """Generate a numeric room code with no leading zero ("1000".."9999")."""
    low = 10 ** (length - 1)
    return str(rng.randint(low, 10 * low - 1))


def new_card_id(rng: random.Random) -> str:
    """UUID4-shaped id drawn from the given rng so seeded decks are replayable."""
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))
