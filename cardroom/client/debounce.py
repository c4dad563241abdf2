"""Coalescing of rapid change notifications."""

from __future__ import annotations

import asyncio
from typing import Any, Callable


class Debouncer:
    """Deliver only the latest value of a burst.

    The first value of a burst arms a timer of `window` seconds; values
    arriving before it fires replace the pending one. When the timer fires
    the callback runs once with the most recent value.
    """

    def __init__(self, window: float, callback: Callable[[Any], None]) -> None:
        self._window = window
        self._callback = callback
        self._pending: Any = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def push(self, value: Any) -> None:
        self._pending = value
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._window, self._flush)

    def _flush(self) -> None:
        self._handle = None
        value, self._pending = self._pending, None
        self._callback(value)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None
