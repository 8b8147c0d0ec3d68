"""Integration tests: several clients sharing one team cache.

Each simulated client is an independent TeamCacheCoordinator with its own
identity and fetcher, all pointed at the same in-memory store and virtual
clock.
"""

import asyncio
from datetime import timedelta

import pytest

from teamcache.keys import team_cache_key
from teamcache.scheduler import (
    AUTO_INTERVAL,
    CHECK_INTERVAL,
    LEASE_TTL,
    RefreshOutcome,
    RefreshReason,
)
from teamcache.store import InMemoryObjectStore

pytestmark = pytest.mark.integration


class RacingStore(InMemoryObjectStore):
    """Store that holds lease existence checks until two clients have made one.

    Forces the head-then-write window open so both clients see the same
    lease state before either writes.
    """

    def __init__(self, parties: int = 2, **kwargs):
        super().__init__(**kwargs)
        self.parties = parties
        self.arrived = 0
        self.all_arrived = asyncio.Event()

    async def _exists(self, full_key: str) -> bool:
        exists = await super()._exists(full_key)
        if full_key.endswith("cache.lock") and not self.all_arrived.is_set():
            self.arrived += 1
            if self.arrived >= self.parties:
                self.all_arrived.set()
            await self.all_arrived.wait()
        return exists


class TestSharedRefresh:
    """Tests for refresh results becoming visible to other clients."""

    @pytest.mark.asyncio
    async def test_manual_refresh_is_shared(self, make_coordinator, make_fetcher, profile):
        alice_fetch, bob_fetch = make_fetcher(), make_fetcher()
        alice = make_coordinator("alice", fetcher=alice_fetch)
        bob = make_coordinator("bob", fetcher=bob_fetch)
        await alice.track_team(profile)

        decision = await alice.request_manual_refresh("platform")
        assert decision.accepted
        assert decision.outcome == RefreshOutcome.REFRESHED

        state = await bob.track_team(profile)
        assert state.version == 1
        assert state.refreshed_by.display == "alice"
        assert bob.cached_entry("platform").mtd_total == alice_fetch.total

        rejected = await bob.request_manual_refresh("platform")
        assert not rejected.accepted
        assert rejected.seconds_remaining == pytest.approx(30 * 60)
        assert bob_fetch.calls == []

    @pytest.mark.asyncio
    async def test_refresh_in_progress_blocks_other_client(
        self, make_coordinator, make_fetcher, clock, profile
    ):
        alice_fetch, bob_fetch = make_fetcher(), make_fetcher()
        alice_fetch.gate = asyncio.Event()
        alice = make_coordinator("alice", fetcher=alice_fetch)
        bob = make_coordinator("bob", fetcher=bob_fetch)
        await alice.track_team(profile)
        await bob.track_team(profile)

        alice_refresh = asyncio.create_task(alice.refresh("platform", RefreshReason.MANUAL))
        await clock.advance(0)
        assert alice_fetch.calls == ["platform"]

        decision = await bob.request_manual_refresh("platform")
        assert decision.accepted
        assert decision.outcome == RefreshOutcome.LOCK_NOT_ACQUIRED
        assert bob_fetch.calls == []

        alice_fetch.gate.set()
        assert await alice_refresh == RefreshOutcome.REFRESHED

        assert await bob.check_and_refresh("platform") is None
        assert bob.get_state("platform").version == 1
        assert bob_fetch.calls == []


class TestLeaseRaces:
    """Tests for two clients racing on an absent lease."""

    @pytest.mark.asyncio
    async def test_conditional_create_admits_one_client(
        self, make_coordinator, make_fetcher, clock, profile
    ):
        store = RacingStore(clock=clock)
        alice_fetch, bob_fetch = make_fetcher(), make_fetcher()
        alice = make_coordinator("alice", store=store, fetcher=alice_fetch)
        bob = make_coordinator("bob", store=store, fetcher=bob_fetch)
        await alice.track_team(profile)
        await bob.track_team(profile)

        outcomes = await asyncio.gather(
            alice.refresh("platform", RefreshReason.MANUAL),
            bob.refresh("platform", RefreshReason.MANUAL),
        )

        assert sorted(outcomes) == sorted(
            [RefreshOutcome.REFRESHED, RefreshOutcome.LOCK_NOT_ACQUIRED]
        )
        assert len(alice_fetch.calls) + len(bob_fetch.calls) == 1
        assert (await store.get(team_cache_key("platform"))).entry.revision == 1

    @pytest.mark.asyncio
    async def test_unconditional_store_refreshes_at_least_once(
        self, make_coordinator, make_fetcher, clock, profile
    ):
        """Without if-absent writes one or both clients win; a duplicate refresh is harmless."""
        store = RacingStore(clock=clock, conditional_writes=False)
        alice_fetch, bob_fetch = make_fetcher(), make_fetcher()
        alice = make_coordinator("alice", store=store, fetcher=alice_fetch)
        bob = make_coordinator("bob", store=store, fetcher=bob_fetch)
        await alice.track_team(profile)
        await bob.track_team(profile)

        outcomes = await asyncio.gather(
            alice.refresh("platform", RefreshReason.MANUAL),
            bob.refresh("platform", RefreshReason.MANUAL),
        )

        assert set(outcomes) <= {RefreshOutcome.REFRESHED, RefreshOutcome.LOCK_NOT_ACQUIRED}
        refreshed = outcomes.count(RefreshOutcome.REFRESHED)
        assert refreshed >= 1
        assert len(alice_fetch.calls) + len(bob_fetch.calls) == refreshed

        entry = (await store.get(team_cache_key("platform"))).entry
        assert 1 <= entry.revision <= refreshed
        assert entry.mtd_total == alice_fetch.total

        lease = await alice.locks.inspect("platform")
        assert lease.is_expired(clock.now())


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_abandoned_lease_blocks_until_it_expires(
        self, make_coordinator, make_fetcher, clock, profile
    ):
        alice = make_coordinator("alice", fetcher=make_fetcher())
        bob_fetch = make_fetcher()
        bob = make_coordinator("bob", fetcher=bob_fetch)
        await bob.track_team(profile)

        # Alice takes the lease and disappears without releasing it
        assert await alice.locks.acquire("platform", alice.identity.holder_id)

        assert await bob.refresh("platform", RefreshReason.AUTO) == RefreshOutcome.LOCK_NOT_ACQUIRED
        await clock.advance(LEASE_TTL - timedelta(seconds=1))
        assert await bob.refresh("platform", RefreshReason.AUTO) == RefreshOutcome.LOCK_NOT_ACQUIRED

        await clock.advance(timedelta(seconds=2))
        assert await bob.refresh("platform", RefreshReason.AUTO) == RefreshOutcome.REFRESHED
        assert bob_fetch.calls == ["platform"]

        lease = await bob.locks.inspect("platform")
        assert lease.holder == bob.identity.holder_id
        assert lease.is_expired(clock.now())


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_only_manual_refreshes_are_audited(self, make_coordinator, clock, profile):
        alice = make_coordinator("alice")
        await alice.track_team(profile)

        assert (await alice.request_manual_refresh("platform")).outcome == RefreshOutcome.REFRESHED
        await clock.advance(AUTO_INTERVAL + timedelta(minutes=1))
        assert await alice.check_and_refresh("platform") == RefreshOutcome.REFRESHED
        assert alice.get_state("platform").version == 2

        records = await alice.audit.list_entries("platform")
        assert len(records) == 1
        assert records[0].actor == "alice"
        assert records[0].actor_id == alice.identity.holder_id
        assert records[0].reason == "manual"


class TestSchedulers:
    """Tests for several running schedulers on the same team."""

    @pytest.mark.asyncio
    async def test_simultaneous_ticks_fetch_once(self, make_coordinator, fetcher, clock, profile):
        clients = [make_coordinator(name) for name in ("alice", "bob", "carol")]
        for client in clients:
            await client.track_team(profile)
            client.start()

        try:
            await clock.advance(CHECK_INTERVAL)
        finally:
            for client in clients:
                await client.stop()

        assert fetcher.calls == ["platform"]
        versions = {(await client.load_state("platform")).version for client in clients}
        assert versions == {1}

    @pytest.mark.asyncio
    async def test_next_auto_refresh_after_interval(self, make_coordinator, fetcher, clock, profile):
        """Test the first client to come due refreshes for everyone."""
        alice = make_coordinator("alice")
        bob = make_coordinator("bob", auto_interval=AUTO_INTERVAL + timedelta(minutes=30))
        for client in (alice, bob):
            await client.track_team(profile)
            client.start()

        try:
            await clock.advance(CHECK_INTERVAL)
            assert len(fetcher.calls) == 1

            await clock.advance(AUTO_INTERVAL)
            assert len(fetcher.calls) == 2
        finally:
            await alice.stop()
            await bob.stop()

        assert alice.is_running is False
        assert (await bob.load_state("platform")).version == 2

    @pytest.mark.asyncio
    async def test_schedulers_due_together_refresh_at_most_twice(
        self, make_coordinator, fetcher, clock, profile
    ):
        """Test clients due at the same tick may both steal the expired lease, and nothing breaks."""
        alice = make_coordinator("alice")
        bob = make_coordinator("bob")
        for client in (alice, bob):
            await client.track_team(profile)
            client.start()

        try:
            await clock.advance(CHECK_INTERVAL)
            await clock.advance(AUTO_INTERVAL)
        finally:
            await alice.stop()
            await bob.stop()

        assert len(fetcher.calls) in (2, 3)
        lookup = await bob.store.get(team_cache_key("platform"))
        assert 2 <= lookup.entry.revision <= len(fetcher.calls)
        assert (await bob.locks.inspect("platform")).is_expired(clock.now())
