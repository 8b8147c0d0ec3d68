"""Lease-based soft lock over the object store.

Philosophy:
- No lock service: a lease is a small JSON document at a well-known key
- Leases expire on their own, so a crashed holder blocks others for at most
  one lease TTL
- Best effort, not linearizable: head-then-put is not atomic, so two clients
  can both acquire when they race on an absent or expired lease. The
  protected work (re-fetch and overwrite) is idempotent, so a race costs one
  extra upstream call and never corrupts data
- After an unconditional write the lease is read back and kept only if it
  still names this holder, which leaves a double win only when one client reads its lease back
  before the other client's write lands
- Where the store supports if-absent writes, a fresh lease is created
  conditionally, which closes the race for the absent-lease case

Lease document (at ``teams/{team_id}/cache.lock``)::

    {"kind": "lease", "holder": "...", "acquired_at": "...", "expires_at": "..."}

Public API:
    SoftLock: Lease record
    SoftLockManager: acquire / release / inspect / hold
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from teamcache.clock import Clock, SystemClock
from teamcache.errors import (
    CorruptedData,
    LockNotAcquired,
    SerializationError,
    StoreError,
    sanitize_error_message,
)
from teamcache.keys import team_lock_key
from teamcache.models import format_datetime, parse_datetime
from teamcache.store.base import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = timedelta(seconds=120)
LEASE_KIND = "lease"


@dataclass(frozen=True)
class SoftLock:
    """A lease on one team's refresh."""

    holder: str
    expires_at: datetime
    acquired_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": LEASE_KIND,
            "holder": self.holder,
            "acquired_at": format_datetime(self.acquired_at),
            "expires_at": format_datetime(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SoftLock":
        try:
            if data.get("kind", LEASE_KIND) != LEASE_KIND:
                raise ValueError(f"not a lease document: kind={data.get('kind')!r}")
            expires_at = parse_datetime(data["expires_at"])
            if expires_at is None:
                raise ValueError("expires_at is required")
            return cls(
                holder=str(data["holder"]),
                expires_at=expires_at,
                acquired_at=parse_datetime(data.get("acquired_at")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CorruptedData(f"Invalid lease document: {e}") from e


class SoftLockManager:
    """Acquire and release per-team refresh leases.

    Example:
        >>> locks = SoftLockManager(store)
        >>> async with locks.hold("platform-team", identity.holder_id):
        ...     await refresh()
    """

    def __init__(
        self,
        store: ObjectStore,
        clock: Clock | None = None,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.lease_ttl = lease_ttl

    async def inspect(self, team_id: str) -> SoftLock | None:
        """Return the current lease document, or None if absent or unreadable."""
        try:
            document = await self.store.get_document(team_lock_key(team_id))
            if document is None:
                return None
            return SoftLock.from_dict(document)
        except (SerializationError, CorruptedData) as e:
            logger.warning(f"Ignoring unreadable lease for team {team_id}: {e}")
            return None

    async def acquire(self, team_id: str, holder_id: str, lease_ttl: timedelta | None = None) -> bool:
        """Try to take the team's lease.

        Steps: head the lock key; if present, read it and refuse when another
        holder's lease has not expired; otherwise write a new lease expiring
        ``lease_ttl`` from now. A lease written without an if-absent
        guard is read back and kept only if it still names this holder.
        An expired lease is treated as abandoned and stolen. Re-acquiring
        one's own live lease renews it.

        Returns:
            True if this holder now owns the lease

        Raises:
            StoreError: If the store is unreachable or denies access
        """
        acquired, _ = await self._try_acquire(team_id, holder_id, lease_ttl or self.lease_ttl)
        return acquired

    async def _try_acquire(
        self, team_id: str, holder_id: str, lease_ttl: timedelta
    ) -> tuple[bool, SoftLock | None]:
        lock_key = team_lock_key(team_id)

        exists = await self.store.head(lock_key)
        if exists:
            current = await self.inspect(team_id)
            now = self.clock.now()
            if current is not None and not current.is_expired(now) and current.holder != holder_id:
                logger.debug(
                    f"Lease for team {team_id} held by {current.holder} "
                    f"for another {current.remaining_seconds(now):.0f}s"
                )
                return False, current
            if current is not None and current.is_expired(now):
                logger.info(f"Taking over expired lease for team {team_id} from {current.holder}")

        now = self.clock.now()
        lease = SoftLock(holder=holder_id, acquired_at=now, expires_at=now + lease_ttl)

        if not exists and self.store.supports_conditional_writes:
            created = await self.store.put_document(lock_key, lease.to_dict(), if_absent=True)
            if not created:
                logger.debug(f"Lease for team {team_id} was created concurrently by another client")
                return False, await self.inspect(team_id)
        else:
            await self.store.put_document(lock_key, lease.to_dict())
            # Last unconditional writer owns the lease
            current = await self.inspect(team_id)
            if current is None or current.holder != holder_id:
                logger.debug(
                    f"Lease for team {team_id} was overwritten concurrently by "
                    f"{current.holder if current else 'an unknown client'}"
                )
                return False, current

        logger.info(f"Acquired lease for team {team_id} as {holder_id} until {format_datetime(lease.expires_at)}")
        return True, lease

    async def release(self, team_id: str, holder_id: str) -> bool:
        """Release the lease by overwriting it with an already-expired one.

        A live lease owned by a different holder is left untouched: a client
        whose own lease lapsed and was taken over must not cut the new
        holder's lease short. The ownership check is a read followed by a
        write, so it narrows but does not close that window.

        Returns:
            True if the lease is now released (or was absent), False if it
            belongs to another live holder

        Raises:
            StoreError: If the store is unreachable or denies access
        """
        lock_key = team_lock_key(team_id)
        current = await self.inspect(team_id)
        now = self.clock.now()

        if current is None and not await self.store.head(lock_key):
            logger.debug(f"No lease to release for team {team_id}")
            return True

        if current is not None and current.holder != holder_id and not current.is_expired(now):
            logger.warning(
                f"Not releasing lease for team {team_id}: held by {current.holder}, not {holder_id}"
            )
            return False

        released = SoftLock(holder=holder_id, acquired_at=now, expires_at=now - timedelta(seconds=1))
        await self.store.put_document(lock_key, released.to_dict())
        logger.info(f"Released lease for team {team_id} held by {holder_id}")
        return True

    @asynccontextmanager
    async def hold(
        self, team_id: str, holder_id: str, lease_ttl: timedelta | None = None
    ) -> AsyncIterator[SoftLock]:
        """Hold the team's lease for the duration of the block.

        The release runs on every exit path (success, error, cancellation) and
        is shielded from cancellation so an interrupted refresh still frees
        its lease. A failed release is logged; the lease then lapses on its own.

        Raises:
            LockNotAcquired: If another client holds a live lease
            StoreError: If acquisition fails on the store
        """
        acquired, lease = await self._try_acquire(team_id, holder_id, lease_ttl or self.lease_ttl)
        if not acquired:
            raise LockNotAcquired(team_id, lease.holder if lease else None)

        try:
            yield lease  # type: ignore[misc]
        finally:
            try:
                await asyncio.shield(self.release(team_id, holder_id))
            except StoreError as e:
                logger.error(
                    f"Failed to release lease for team {team_id}; it expires on its own: "
                    f"{sanitize_error_message(e)}"
                )


__all__ = ["DEFAULT_LEASE_TTL", "SoftLock", "SoftLockManager"]
