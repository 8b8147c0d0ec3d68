"""Refresh scheduler for the team cache.

Philosophy:
- One coordinator object owns every per-team map (state, busy flags,
  errors, timers); nothing is process-global, so independent coordinators
  coexist (one per simulated client in tests)
- One cancellable periodic timer per tracked team, driven by an injectable
  Clock
- The object store is the source of truth; in-memory state is a
  cache-of-a-cache recomputed from the latest entry whenever it is loaded
- Soft-fail refreshes: a failed fetch is recorded but never advances the
  next-eligible timestamps, so the next tick retries

Refresh attempt (per team, serialized in-process by a busy flag):
    acquire lease -> fetch -> write entry (always, bumping the revision)
    -> release lease (always) -> audit (manual only) -> idle

Public API (the "studs"):
    TeamCacheCoordinator: Per-client scheduler and state owner
    PeriodicTask: Cancellable repeating task on a Clock
    RefreshReason, RefreshOutcome, ManualRefreshDecision
    compute_jittered_interval: Per-process auto-refresh interval
"""

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum

from teamcache.audit import DEFAULT_RETENTION, AuditLogWriter
from teamcache.clock import Clock, SystemClock
from teamcache.config_manager import TeamCacheConfig
from teamcache.errors import (
    CorruptedData,
    LockNotAcquired,
    SerializationError,
    StoreError,
    sanitize_error_message,
)
from teamcache.fetcher import CostFetch
from teamcache.identity import Identity
from teamcache.keys import CacheDataType, generate_key, team_cache_key
from teamcache.lock import SoftLockManager
from teamcache.models import (
    CacheLookup,
    CacheMetadata,
    CostSnapshot,
    RefreshedBy,
    RemoteCacheEntry,
    TeamCacheState,
    TeamProfile,
)
from teamcache.store import ObjectStore, create_store

logger = logging.getLogger(__name__)

AUTO_INTERVAL = timedelta(hours=6)
MANUAL_COOLDOWN = timedelta(minutes=30)
CHECK_INTERVAL = timedelta(minutes=10)
LEASE_TTL = timedelta(seconds=120)
ENTRY_TTL = timedelta(hours=24)
JITTER_PERCENTAGE = 0.1


def compute_jittered_interval(
    base: timedelta = AUTO_INTERVAL,
    jitter: float = JITTER_PERCENTAGE,
    rng: random.Random | None = None,
) -> timedelta:
    """Perturb ``base`` by up to +/- ``jitter`` to desynchronize clients."""
    factor = 1 + (rng or random).uniform(-jitter, jitter)
    return base * factor


class RefreshReason(StrEnum):
    """Why a refresh was attempted."""

    AUTO = "auto"
    MANUAL = "manual"


class RefreshOutcome(StrEnum):
    """Result of one refresh attempt."""

    REFRESHED = "refreshed"
    FETCH_FAILED = "fetch_failed"
    LOCK_NOT_ACQUIRED = "lock_not_acquired"
    UP_TO_DATE = "up_to_date"
    BUSY = "busy"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class ManualRefreshDecision:
    """Answer to a manual refresh request: accepted, or rejected with a wait."""

    accepted: bool
    seconds_remaining: float = 0.0
    outcome: RefreshOutcome | None = None

    @classmethod
    def accept(cls, outcome: RefreshOutcome) -> "ManualRefreshDecision":
        return cls(accepted=True, outcome=outcome)

    @classmethod
    def reject(cls, seconds_remaining: float) -> "ManualRefreshDecision":
        return cls(accepted=False, seconds_remaining=seconds_remaining)


class PeriodicTask:
    """Run an async callback every ``interval`` on a Clock until stopped.

    Stopping cancels the task only while it sleeps; a callback already
    running is allowed to finish.
    """

    def __init__(
        self,
        name: str,
        interval: timedelta,
        callback: Callable[[], Awaitable[object]],
        clock: Clock,
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._sleeping = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        while not self._stopping:
            self._sleeping = True
            try:
                await self._clock.sleep(self.interval.total_seconds())
            finally:
                self._sleeping = False
            if self._stopping:
                break
            try:
                await self._callback()
            except Exception as e:
                logger.error(f"Periodic task {self.name} failed: {sanitize_error_message(e)}")

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stopping = True
        if self._sleeping:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None


class TeamCacheCoordinator:
    """Coordinates refreshes of shared team caches for one client.

    Example:
        >>> coordinator = TeamCacheCoordinator(store, fetch_costs)
        >>> await coordinator.track_team(TeamProfile("platform", "123456789012"))
        >>> coordinator.start()
        >>> decision = await coordinator.request_manual_refresh("platform")
    """

    def __init__(
        self,
        store: ObjectStore,
        fetcher: CostFetch,
        clock: Clock | None = None,
        identity: Identity | None = None,
        *,
        auto_interval: timedelta | None = None,
        manual_cooldown: timedelta = MANUAL_COOLDOWN,
        check_interval: timedelta = CHECK_INTERVAL,
        lease_ttl: timedelta = LEASE_TTL,
        entry_ttl: timedelta = ENTRY_TTL,
        audit: AuditLogWriter | None = None,
        audit_enabled: bool = True,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.clock = clock or SystemClock()
        self.identity = identity or Identity.for_process()
        self.auto_interval = auto_interval or compute_jittered_interval(rng=rng)
        self.manual_cooldown = manual_cooldown
        self.check_interval = check_interval
        self.lease_ttl = lease_ttl
        self.entry_ttl = entry_ttl
        self.locks = SoftLockManager(store, clock=self.clock, lease_ttl=lease_ttl)
        self.audit = audit or AuditLogWriter(store, clock=self.clock)
        self.audit_enabled = audit_enabled

        self._profiles: dict[str, TeamProfile] = {}
        self._states: dict[str, TeamCacheState] = {}
        self._entries: dict[str, RemoteCacheEntry] = {}
        self._busy: set[str] = set()
        self._errors: dict[str, str] = {}
        self._timers: dict[str, PeriodicTask] = {}
        self._running = False

        logger.info(
            f"Team cache coordinator for {self.identity.display_name} ({self.identity.holder_id}) "
            f"using auto interval of {int(self.auto_interval.total_seconds() / 60)} minutes"
        )

    @classmethod
    def from_config(
        cls,
        config: TeamCacheConfig,
        fetcher: CostFetch,
        clock: Clock | None = None,
        identity: Identity | None = None,
    ) -> "TeamCacheCoordinator":
        """Build a coordinator (and its store) from configuration."""
        clock = clock or SystemClock()
        store = create_store(config, clock=clock)
        retention = timedelta(days=config.audit_retention_days) if config.audit_retention_days > 0 else DEFAULT_RETENTION
        return cls(
            store,
            fetcher,
            clock=clock,
            identity=identity or Identity.for_process(config.display_name),
            lease_ttl=timedelta(seconds=config.lease_ttl),
            entry_ttl=timedelta(seconds=config.entry_ttl_seconds),
            audit=AuditLogWriter(store, clock=clock, retention=retention),
            audit_enabled=config.enable_audit_logging,
        )

    # ------------------------------------------------------------------
    # Team registry and state
    # ------------------------------------------------------------------

    @property
    def tracked_teams(self) -> list[str]:
        return sorted(self._profiles)

    @property
    def is_running(self) -> bool:
        return self._running

    def is_refreshing(self, team_id: str) -> bool:
        return team_id in self._busy

    def last_error(self, team_id: str) -> str | None:
        return self._errors.get(team_id)

    def cached_entry(self, team_id: str) -> RemoteCacheEntry | None:
        """Entry seen by the last load or write, if any."""
        return self._entries.get(team_id)

    async def track_team(self, profile: TeamProfile) -> TeamCacheState:
        """Start tracking a team: load its state and, if running, its timer."""
        self._profiles[profile.team_id] = profile
        state = await self.load_state(profile.team_id)
        if self._running:
            self._start_timer(profile.team_id)
        logger.info(f"Tracking team {profile.team_id} (account {profile.account_id})")
        return state

    async def untrack_team(self, team_id: str) -> None:
        timer = self._timers.pop(team_id, None)
        if timer is not None:
            await timer.stop()
        self._profiles.pop(team_id, None)
        self._states.pop(team_id, None)
        self._entries.pop(team_id, None)
        self._errors.pop(team_id, None)

    def get_state(self, team_id: str) -> TeamCacheState:
        """Current state of a tracked team.

        Raises:
            KeyError: If the team is not tracked
        """
        try:
            return self._states[team_id]
        except KeyError:
            raise KeyError(f"Team not tracked: {team_id}") from None

    def _profile(self, team_id: str) -> TeamProfile:
        try:
            return self._profiles[team_id]
        except KeyError:
            raise KeyError(f"Team not tracked: {team_id}") from None

    async def load_state(self, team_id: str) -> TeamCacheState:
        """Recompute a team's state from the latest stored entry.

        Unreadable entries count as expired (refresh needed). Transport
        errors are surfaced per team and leave the in-memory state as it was
        (or a fresh default if there is none).
        """
        self._profile(team_id)
        now = self.clock.now()
        try:
            lookup = await self._read_entry(team_id)
        except StoreError as e:
            self._errors[team_id] = sanitize_error_message(e)
            logger.error(f"Failed to load team cache state for {team_id}: {self._errors[team_id]}")
            state = self._states.get(team_id) or TeamCacheState.initial(team_id, now)
            self._states[team_id] = state
            return state

        state = TeamCacheState.from_lookup(team_id, lookup, now, self.auto_interval, self.manual_cooldown)
        self._states[team_id] = state
        logger.debug(f"Loaded state for team {team_id}: {lookup.status}, version {state.version}")
        return state

    async def _read_entry(self, team_id: str) -> CacheLookup:
        """Read the team entry, treating undecodable payloads as expired."""
        try:
            lookup = await self.store.get(team_cache_key(team_id))
        except (SerializationError, CorruptedData) as e:
            logger.warning(f"Cache entry for team {team_id} is unreadable, forcing refresh: {e}")
            self._entries.pop(team_id, None)
            return CacheLookup.not_found()

        if lookup.entry is not None:
            self._entries[team_id] = lookup.entry
        else:
            self._entries.pop(team_id, None)
        return lookup

    # ------------------------------------------------------------------
    # Refresh triggers
    # ------------------------------------------------------------------

    async def request_manual_refresh(self, team_id: str) -> ManualRefreshDecision:
        """Refresh now if the manual cooldown has passed.

        Returns:
            Rejected with the remaining wait, or accepted with the attempt's outcome
        """
        state = self._states.get(team_id) or await self.load_state(team_id)
        now = self.clock.now()
        if not state.is_manual_refresh_enabled(now):
            remaining = state.time_until_manual_refresh(now)
            logger.info(f"Manual refresh for team {team_id} rejected, {remaining:.0f}s remaining")
            return ManualRefreshDecision.reject(remaining)

        outcome = await self.refresh(team_id, RefreshReason.MANUAL)
        return ManualRefreshDecision.accept(outcome)

    async def check_and_refresh(self, team_id: str) -> RefreshOutcome | None:
        """One scheduler tick for a team.

        When the team looks due, its state is reloaded first so a refresh done
        by another client since the last load is not repeated.

        Returns:
            The attempt's outcome, or None if no refresh was due
        """
        if team_id in self._busy or team_id not in self._profiles:
            return None

        state = self._states.get(team_id) or await self.load_state(team_id)
        if not state.is_auto_refresh_due(self.clock.now()):
            return None

        state = await self.load_state(team_id)
        if not state.is_auto_refresh_due(self.clock.now()):
            logger.debug(f"Team {team_id} was refreshed elsewhere, skipping auto refresh")
            return None

        return await self.refresh(team_id, RefreshReason.AUTO)

    async def check_all(self) -> dict[str, RefreshOutcome | None]:
        """Run one tick for every tracked team."""
        return {team_id: await self.check_and_refresh(team_id) for team_id in self.tracked_teams}

    async def refresh(self, team_id: str, reason: RefreshReason) -> RefreshOutcome:
        """Attempt a refresh under the team's lease.

        Returns:
            BUSY if this process is already refreshing the team,
            LOCK_NOT_ACQUIRED if another client holds the lease,
            UP_TO_DATE if an automatic refresh finds fresh data under the lease,
            STORE_ERROR if the store failed, otherwise REFRESHED/FETCH_FAILED
        """
        profile = self._profile(team_id)
        if team_id in self._busy:
            logger.debug(f"Already refreshing team {team_id}")
            return RefreshOutcome.BUSY

        self._busy.add(team_id)
        try:
            try:
                async with self.locks.hold(team_id, self.identity.holder_id, self.lease_ttl):
                    logger.info(f"Lease acquired, refreshing team {team_id} (reason: {reason})")
                    outcome = await self._refresh_locked(profile, reason)
            except LockNotAcquired as e:
                logger.info(f"Skipping refresh of team {team_id}: {e}")
                return RefreshOutcome.LOCK_NOT_ACQUIRED
            except StoreError as e:
                self._errors[team_id] = sanitize_error_message(e)
                logger.error(f"Failed to refresh team cache for {team_id}: {self._errors[team_id]}")
                return RefreshOutcome.STORE_ERROR

            if reason == RefreshReason.MANUAL and self.audit_enabled:
                await self.audit.write(
                    team_id,
                    actor=self.identity.display_name,
                    actor_id=self.identity.holder_id,
                    reason=reason.value,
                )
            return outcome
        finally:
            self._busy.discard(team_id)

    async def _refresh_locked(self, profile: TeamProfile, reason: RefreshReason) -> RefreshOutcome:
        """Fetch and write the team entry; the caller holds the lease."""
        team_id = profile.team_id
        key = team_cache_key(team_id)

        # Re-read under the lease so the revision continues from the latest write
        lookup = await self._read_entry(team_id)
        previous = lookup.entry

        if reason == RefreshReason.AUTO and lookup.is_found:
            now = self.clock.now()
            current = TeamCacheState.from_lookup(
                team_id, lookup, now, self.auto_interval, self.manual_cooldown
            )
            if not current.is_auto_refresh_due(now):
                self._states[team_id] = current
                logger.info(f"Team {team_id} was refreshed by another client, skipping fetch")
                return RefreshOutcome.UP_TO_DATE

        try:
            snapshot = CostSnapshot.coerce(await self.fetcher(profile))
        except Exception as e:
            return await self._record_fetch_failure(profile, previous, e)

        now = self.clock.now()
        metadata = CacheMetadata(
            created_by=self.identity.display_name,
            created_at=now,
            ttl_seconds=self.entry_ttl.total_seconds(),
            cache_key=key,
        )
        base = previous or self._blank_entry(profile, now)
        entry = base.with_snapshot(snapshot, now, self._refreshed_by(), metadata)

        written = await self.store.put(key, entry)
        self._entries[team_id] = written
        self._states[team_id] = TeamCacheState.from_entry(
            team_id, written, now, self.auto_interval, self.manual_cooldown
        )
        self._errors.pop(team_id, None)

        await self._write_month_snapshot(profile, written, now)
        logger.info(f"Successfully refreshed team cache for {team_id} (version {written.revision})")
        return RefreshOutcome.REFRESHED

    async def _record_fetch_failure(
        self, profile: TeamProfile, previous: RemoteCacheEntry | None, error: Exception
    ) -> RefreshOutcome:
        """Record a failed fetch without moving the scheduling timestamps."""
        team_id = profile.team_id
        message = sanitize_error_message(error)
        self._errors[team_id] = f"Cost fetch failed: {message}"
        logger.error(f"Cost fetch failed for team {team_id}: {message}")

        now = self.clock.now()
        entry = (previous or self._blank_entry(profile, now)).with_failure(message)
        written = await self.store.put(team_cache_key(team_id), entry)
        self._entries[team_id] = written

        state = self._states.get(team_id) or TeamCacheState.initial(team_id, now)
        self._states[team_id] = replace(state, version=written.revision)
        return RefreshOutcome.FETCH_FAILED

    async def _write_month_snapshot(
        self, profile: TeamProfile, entry: RemoteCacheEntry, now: datetime
    ) -> None:
        key = generate_key(profile.account_id, now.year, now.month, CacheDataType.FULL_DATA)
        snapshot = replace(entry, metadata=replace(entry.metadata, cache_key=key))
        try:
            await self.store.put(key, snapshot)
        except StoreError as e:
            logger.warning(f"Failed to write monthly snapshot {key}: {sanitize_error_message(e)}")

    def _blank_entry(self, profile: TeamProfile, now: datetime) -> RemoteCacheEntry:
        return RemoteCacheEntry(
            team_id=profile.team_id,
            account_id=profile.account_id,
            metadata=CacheMetadata(
                created_by=self.identity.display_name,
                created_at=now,
                ttl_seconds=self.entry_ttl.total_seconds(),
                cache_key=team_cache_key(profile.team_id),
            ),
        )

    def _refreshed_by(self) -> RefreshedBy:
        return RefreshedBy(id=self.identity.holder_id, display=self.identity.display_name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_timer(self, team_id: str) -> None:
        timer = self._timers.get(team_id)
        if timer is None:
            timer = PeriodicTask(
                name=f"teamcache-{team_id}",
                interval=self.check_interval,
                callback=lambda: self.check_and_refresh(team_id),
                clock=self.clock,
            )
            self._timers[team_id] = timer
        timer.start()

    def start(self) -> None:
        """Start one periodic check per tracked team. Idempotent."""
        if self._running:
            return
        self._running = True
        for team_id in self.tracked_teams:
            self._start_timer(team_id)
        logger.info(
            f"Auto-refresh started for {len(self._timers)} teams, "
            f"checking every {int(self.check_interval.total_seconds() / 60)} minutes"
        )

    async def stop(self) -> None:
        """Stop future ticks. Idempotent; in-flight refreshes run to completion."""
        if not self._running:
            return
        self._running = False
        timers = list(self._timers.values())
        self._timers.clear()
        await asyncio.gather(*(timer.stop() for timer in timers))
        logger.info("Auto-refresh stopped")

    async def close(self) -> None:
        await self.stop()
        await self.store.close()


__all__ = [
    "AUTO_INTERVAL",
    "CHECK_INTERVAL",
    "ENTRY_TTL",
    "JITTER_PERCENTAGE",
    "LEASE_TTL",
    "MANUAL_COOLDOWN",
    "ManualRefreshDecision",
    "PeriodicTask",
    "RefreshOutcome",
    "RefreshReason",
    "TeamCacheCoordinator",
    "compute_jittered_interval",
]
