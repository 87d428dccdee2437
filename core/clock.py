"""
core/clock.py -- Time source used by every expiry decision in authcore.

Stores, the token service and the rate limiter take a Clock instead of calling
time.time() directly, so expiry boundaries can be tested exactly and a single
process never mixes two notions of "now".

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Return the current time as POSIX seconds."""
        ...


class SystemClock:
    """Wall-clock time from the host."""

    def now(self) -> float:
        return time.time()


def to_iso(ts: float) -> str:
    """Render POSIX seconds as an ISO 8601 UTC string for API responses."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
