"""Time sources for the team cache.

Everything time-dependent (lease expiry, staleness, eligibility, timers) reads
time through a Clock so tests can drive virtual time instead of sleeping.

Public API:
    Clock: Protocol implemented by time sources
    SystemClock: Wall clock (UTC) with asyncio sleeping
    ManualClock: Virtual clock advanced explicitly by tests
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Source of the current time and of cancellable sleeps."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds`` of this clock's time."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Virtual clock whose time only moves when ``advance`` is called.

    Sleepers are woken in deadline order once the clock passes their deadline.

    Example:
        >>> clock = ManualClock(datetime(2026, 1, 1, tzinfo=UTC))
        >>> await clock.advance(timedelta(minutes=10))
    """

    # Event loop iterations granted to woken tasks before advance() returns
    SETTLE_ITERATIONS = 200

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._sleepers: list[tuple[datetime, asyncio.Future[None]]] = []

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        """Jump to ``moment`` without waking sleepers (setup helper)."""
        self._now = moment

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (self._now + timedelta(seconds=seconds), future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    async def advance(self, delta: timedelta | float) -> None:
        """Move time forward, waking due sleepers and letting them run."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        target = self._now + delta
        # Let newly started tasks reach their first sleep
        await self._settle()

        # Step through deadlines so periodic tasks fire once per elapsed interval
        while True:
            due = sorted(
                (entry for entry in self._sleepers if entry[0] <= target and not entry[1].done()),
                key=lambda entry: entry[0],
            )
            if not due:
                break
            deadline = due[0][0]
            self._now = max(self._now, deadline)
            for when, future in due:
                if when <= self._now and not future.done():
                    future.set_result(None)
            await self._settle()

        self._now = target
        await self._settle()

    async def _settle(self) -> None:
        for _ in range(self.SETTLE_ITERATIONS):
            await asyncio.sleep(0)


__all__ = ["Clock", "ManualClock", "SystemClock"]
