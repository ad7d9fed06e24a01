"""
Nonce generation for authenticated Kraken calls.

Kraken rejects any private request whose nonce is not strictly greater than
the previous one seen for the API key. ``NonceManager`` combines a microsecond
wall clock with a per-tick increment so that rapid consecutive calls, a clock
that stalls or steps backwards, and process restarts all keep the sequence
strictly increasing.

Examples:
    >>> clock = iter([1000, 1000, 999]).__next__
    >>> nonces = NonceManager(clock=clock)
    >>> [nonces.next() for _ in range(3)]
    [1001, 1002, 1003]
"""

import time
from typing import Callable, Optional

from .logging_setup import logger
from .models import NonceState
from .persistence import StateStore


def _now_us() -> int:
    return time.time_ns() // 1000


class NonceManager:
    """Strictly increasing nonce source, persisted after every call.

    Args:
        store: Optional state store; the last state is loaded on construction
            and saved after each ``next()``
        clock: Callable returning the current time in integer microseconds
    """

    def __init__(self, store: Optional[StateStore] = None, clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.clock = clock or _now_us
        self._last_nonce = 0
        self._increment = 0
        if store is not None:
            state = store.load_nonce()
            if state is not None:
                self._last_nonce = state.last_nonce
                self._increment = state.increment
                logger.info(f"Nonce state restored | last_nonce={state.last_nonce} increment={state.increment}")

    @property
    def state(self) -> NonceState:
        return NonceState(last_nonce=self._last_nonce, increment=self._increment)

    def next(self) -> int:
        now = self.clock()
        # compare with the last emitted value, not the last tick
        if now > self._last_nonce + self._increment:
            self._last_nonce = now
            self._increment = 0
        self._increment += 1
        nonce = self._last_nonce + self._increment
        self._persist()
        return nonce

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save_nonce(self.state)
        except Exception as e:
            logger.warning(f"Failed to persist nonce state | error={e}")
