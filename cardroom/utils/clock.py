"""Wall clock helpers."""

from datetime import datetime, timezone


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)
