"""Exponential backoff with jitter."""

from __future__ import annotations

import random
from typing import Callable


class Backoff:
    """Capped exponential backoff.

    ``next_delay()`` returns ``base * 2**attempt`` capped at ``cap``, minus up
    to ``jitter`` of itself so concurrent channels do not retry in lockstep.
    The result never exceeds ``cap``.
    """

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 60.0,
        jitter: float = 0.2,
        rand: Callable[[], float] = random.random,
    ):
        if base <= 0 or cap < base:
            raise ValueError("backoff requires 0 < base <= cap")
        self.base = base
        self.cap = cap
        self.jitter = max(0.0, min(jitter, 1.0))
        self._rand = rand
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(self.cap, self.base * (2 ** min(self.attempt, 32)))
        self.attempt += 1
        return delay * (1.0 - self.jitter * self._rand())

    def reset(self) -> None:
        self.attempt = 0
