"""Failure kinds reported by room and game operations."""

STORE_ERROR = "StoreError"
NOT_FOUND = "NotFound"
INVALID_ARGUMENT = "InvalidArgument"
INSUFFICIENT_CARDS = "InsufficientCards"
EMPTY_RESOURCE = "EmptyResource"
INVALID_STATE = "InvalidState"

# Notification severities
TRANSIENT = "transient"
CRITICAL = "critical"

_CRITICAL_KINDS = {NOT_FOUND}


def severity_for(kind: str | None) -> str:
    """Critical failures must be acknowledged; the rest auto-dismiss."""
    return CRITICAL if kind in _CRITICAL_KINDS else TRANSIENT
