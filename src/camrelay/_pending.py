"""Table of outstanding requests awaiting an asynchronous reply.

Each entry pairs a one-shot :class:`asyncio.Future` with a deadline.
The table is owned by the event loop: none of its operations await,
so registration, resolution and removal are atomic with respect to
concurrent deliveries, timeouts and cancellations.  Resolution always
pops the entry before completing its future, which is what makes a
second resolution of the same key a no-op.

Removal by the waiting side (timeout, cancellation, publish failure)
goes through :meth:`PendingTable.discard`, which only removes the entry
if it is still the caller's own.  A stale cleanup can therefore never
evict a newer registration for the same key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from camrelay._errors import RequestInFlight, RequestSuperseded

logger = logging.getLogger(__name__)


class OverlapPolicy(StrEnum):
    """What :meth:`PendingTable.register` does when the key is taken."""

    REJECT = "reject"
    SUPERSEDE = "supersede"


@dataclass(eq=False)
class PendingEntry:
    """One outstanding request."""

    key: Hashable
    deadline: float
    future: asyncio.Future[Any] = field(repr=False)

    @property
    def resolved(self) -> bool:
        return self.future.done()


class PendingTable:
    """Keyed one-shot completion slots with single-fire semantics.

    Args:
        policy: Behaviour on a second registration for a pending key.
        name: Label used in log messages.
    """

    def __init__(
        self,
        *,
        policy: OverlapPolicy = OverlapPolicy.REJECT,
        name: str = "pending",
    ) -> None:
        self._policy = policy
        self._name = name
        self._entries: dict[Hashable, PendingEntry] = {}

    @property
    def policy(self) -> OverlapPolicy:
        return self._policy

    def register(self, key: Hashable, deadline: float) -> PendingEntry:
        """Create a slot for *key*.

        Raises:
            RequestInFlight: If *key* is pending and the policy is
                ``REJECT``.
        """
        existing = self._entries.get(key)
        if existing is not None:
            if self._policy is OverlapPolicy.REJECT:
                raise RequestInFlight(key)
            del self._entries[key]
            if not existing.future.done():
                existing.future.set_exception(RequestSuperseded(key))
            logger.info("%s: superseded outstanding request %r", self._name, key)

        entry = PendingEntry(
            key=key,
            deadline=deadline,
            future=asyncio.get_running_loop().create_future(),
        )
        self._entries[key] = entry
        return entry

    def resolve(self, key: Hashable, value: Any) -> bool:
        """Complete the slot for *key* with *value*.

        Returns:
            True if a waiter was resolved, False if none was pending.
        """
        entry = self._entries.pop(key, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def reject(self, key: Hashable, error: BaseException) -> bool:
        """Fail the slot for *key* with *error*.

        Returns:
            True if a waiter was failed, False if none was pending.
        """
        entry = self._entries.pop(key, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(error)
        return True

    def discard(self, entry: PendingEntry) -> None:
        """Remove *entry* if it is still the registered slot for its key."""
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]

    def drain(self, error: BaseException) -> int:
        """Fail every outstanding slot with *error*; return how many."""
        entries = list(self._entries.values())
        self._entries.clear()
        failed = 0
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(error)
                failed += 1
        return failed

    async def wait(self, entry: PendingEntry, timeout: float) -> Any:
        """Suspend until *entry* completes or *timeout* seconds pass.

        The entry is always discarded on the way out, whether the wait
        ended in a result, an error, a timeout or a cancellation.

        If the timer and a resolution land in the same loop iteration,
        the resolution wins: the future already holds a value and that
        value is returned.

        Raises:
            TimeoutError: If nothing resolved the entry in time.
        """
        try:
            async with asyncio.timeout(timeout):
                return await entry.future
        except TimeoutError:
            if entry.future.done() and not entry.future.cancelled():
                return entry.future.result()
            raise
        finally:
            self.discard(entry)

    def get(self, key: Hashable) -> PendingEntry | None:
        return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[Hashable]:
        return list(self._entries)
