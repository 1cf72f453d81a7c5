"""Clock ports and system adapters.

Two notions of time are used by the service:

- :class:`ClockPort` — monotonic seconds for request deadlines.
  Immune to NTP and manual clock changes; only differences between
  ``now()`` calls are meaningful (PEP 418).
- :data:`WallClock` — a zero-argument callable returning an aware UTC
  :class:`~datetime.datetime`, used for persisted timestamps such as a
  device's ``last_seen``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

type WallClock = Callable[[], datetime]
"""Callable returning the current aware UTC datetime."""


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for deadlines.

    The default implementation wraps ``time.monotonic()``.  Tests
    inject a deterministic fake clock.
    """

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``.

    Satisfies :class:`ClockPort` via structural subtyping.
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()


def utc_now() -> datetime:
    """Default :data:`WallClock`: the current time in UTC."""
    return datetime.now(UTC)
