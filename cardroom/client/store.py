"""Observable holder for the view state."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from cardroom.client.state import ViewState, reduce

Listener = Callable[[ViewState], None]


class StateStore:
    """Owns the current ViewState; the only way to change it is dispatch()."""

    def __init__(self, initial: ViewState | None = None) -> None:
        self._state = initial or ViewState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ViewState:
        return self._state

    def dispatch(self, event: object) -> ViewState:
        new_state = reduce(self._state, event)
        if new_state != self._state:
            self._state = new_state
            for listener in list(self._listeners):
                listener(new_state)
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def updates(self) -> AsyncIterator[ViewState]:
        """Yield every new state, starting with the current one."""
        queue: asyncio.Queue[ViewState] = asyncio.Queue()
        queue.put_nowait(self._state)
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
