"""
auth/limiter.py -- Sliding-window limiter for login attempts.

Keyed by (identifier, client ip). Each key holds the timestamps of its recent
attempts; an attempt is admitted while fewer than max_attempts fall inside the
trailing window. Throttled attempts are not recorded, so hammering a locked key
does not push its unlock time further out.

Memory is bounded two ways:
  - LRU: at most max_keys keys. The least recently touched key is evicted
    first (OrderedDict.move_to_end / popitem(last=False)).
  - TTL: purge_stale() drops keys whose newest attempt has left the window.
    AuthService.sweep() calls it periodically.

check_and_record() runs under one lock, so two concurrent attempts for the same
key cannot both observe "one slot left".

This is separate from the slowapi limiter on the HTTP route: slowapi is a
coarse per-IP flood guard, this is the per-identity brute-force guard the
facade consults before touching the credential store.
"""

from __future__ import annotations

import math
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass

from core.clock import Clock, SystemClock


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class LoginRateLimiter:
    def __init__(
        self,
        max_attempts: int,
        window_seconds: int,
        max_keys: int = 10_000,
        clock: Clock | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.window = window_seconds
        self.max_keys = max_keys
        self.clock = clock or SystemClock()
        self._attempts: OrderedDict[tuple[str, str], deque[float]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(identifier: str, ip: str | None) -> tuple[str, str]:
        return identifier.strip().lower(), ip or "unknown"

    def check_and_record(self, key: tuple[str, str]) -> RateDecision:
        """Admit and record one attempt for key, or report how long to wait."""
        with self._lock:
            now = self.clock.now()
            attempts = self._attempts.get(key)
            if attempts is None:
                attempts = deque()
                self._attempts[key] = attempts
            self._attempts.move_to_end(key)

            cutoff = now - self.window
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()

            if len(attempts) >= self.max_attempts:
                retry_after = max(1, math.ceil(attempts[0] + self.window - now))
                return RateDecision(allowed=False, retry_after=retry_after)

            attempts.append(now)
            while len(self._attempts) > self.max_keys:
                self._attempts.popitem(last=False)
            return RateDecision(allowed=True)

    def reset(self, key: tuple[str, str]) -> None:
        """Forget a key's attempts (after a successful login)."""
        with self._lock:
            self._attempts.pop(key, None)

    def purge_stale(self) -> int:
        """Drop keys with no attempts inside the window. Returns the count removed."""
        with self._lock:
            cutoff = self.clock.now() - self.window
            stale = [k for k, v in self._attempts.items() if not v or v[-1] <= cutoff]
            for k in stale:
                del self._attempts[k]
            return len(stale)

    def __len__(self) -> int:
        return len(self._attempts)
