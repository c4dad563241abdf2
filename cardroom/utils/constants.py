"""Game constants for the card room client."""

# Suits (wire names)
SPADES = "Spades"
HEARTS = "Hearts"
CLUBS = "Clubs"
DIAMONDS = "Diamonds"
JOKER_SUIT = "Joker"
SUITS = [SPADES, HEARTS, CLUBS, DIAMONDS]

# Ranks (wire names)
RANKS = [
    "Ace", "2", "3", "4", "5", "6", "7", "8", "9", "10", "Jack", "Queen", "King",
]
JOKER_RED = "Red"
JOKER_BLACK = "Black"
JOKER_RANKS = [JOKER_RED, JOKER_BLACK]

# Sort keys; anything unknown (jokers) falls into bucket 0
RANK_VALUES = {rank: i for i, rank in enumerate(RANKS, start=1)}
SUIT_ORDER = {suit: i for i, suit in enumerate(SUITS, start=1)}

# Deck composition
CARDS_PER_DECK = 52
JOKERS_PER_DECK = 2

# Resource references
CARD_BACK = "card_back_red"

# Room parameters
MAX_PLAYERS = 4
ROOM_CODE_LENGTH = 4
ROOM_CODE_PATTERN = r"^\d{4}$"
ROOM_CODE_ATTEMPTS = 5
DEFAULT_ROOMS_PATH = "rooms"

# Room states
STATE_WAITING = "waiting"
STATE_STARTED = "started"

# Timing
DEBOUNCE_SECONDS = 0.2
TRANSIENT_NOTICE_SECONDS = 3.0
OPERATION_TIMEOUT_SECONDS = 10.0
HTTP_TIMEOUT_SECONDS = 10.0
STREAM_RECONNECT_SECONDS = 2.0
STALE_ACTIVE_MS = 5 * 60 * 1000
STALE_UPDATED_MS = 15 * 60 * 1000

# Optimistic concurrency
WRITE_ATTEMPTS = 3

# Hand sort modes
SORT_BY_RANK = "rank"
SORT_BY_SUIT = "suit"
