"""
Global circuit breaker for the upstream quote API.

A single "blocked until" deadline shared by every caller. Tripping is
binary: while the deadline lies in the future no outbound call is made,
for any symbol or endpoint.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

log = logging.getLogger("breaker")

TripListener = Callable[[float], None]
ResetListener = Callable[[], None]


class CircuitBreaker:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._blocked_until = 0.0
        self._listeners: list[TripListener] = []
        self._reset_listeners: list[ResetListener] = []

    @property
    def blocked_until(self) -> float:
        return self._blocked_until

    def add_listener(self, listener: TripListener) -> None:
        self._listeners.append(listener)

    def add_reset_listener(self, listener: ResetListener) -> None:
        self._reset_listeners.append(listener)

    def trip(self, cooldown_seconds: float) -> None:
        """Block all outbound calls for ``cooldown_seconds`` from now.

        A trip while already blocked replaces the deadline; cooldowns do
        not stack.
        """
        self._blocked_until = self._clock() + max(cooldown_seconds, 0.0)
        log.warning(f"Breaker tripped: all upstream requests blocked for {cooldown_seconds:.0f}s")
        for listener in list(self._listeners):
            try:
                listener(self._blocked_until)
            except Exception:
                log.exception("Breaker trip listener failed")

    def is_blocked(self) -> bool:
        return self._clock() < self._blocked_until

    def remaining(self) -> float:
        return max(0.0, self._blocked_until - self._clock())

    def restore(self, blocked_until: float) -> bool:
        """Adopt a persisted deadline if it is still in the future."""
        if blocked_until <= self._clock():
            return False
        self._blocked_until = blocked_until
        log.info(f"Breaker restored: blocked for another {self.remaining():.0f}s")
        return True

    def reset(self) -> None:
        if self._blocked_until:
            log.info("Breaker reset by administrator")
        self._blocked_until = 0.0
        for listener in list(self._reset_listeners):
            try:
                listener()
            except Exception:
                log.exception("Breaker reset listener failed")

    def status(self) -> dict:
        return {
            "blocked": self.is_blocked(),
            "blocked_until": self._blocked_until,
            "remaining_s": round(self.remaining(), 1),
        }
