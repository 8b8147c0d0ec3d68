"""
Shared test fixtures for teamcache tests.

This module provides common fixtures used across all test types:
- Virtual time (ManualClock) and a shared in-memory object store
- Team profiles and identities for simulated clients
- A scriptable cost fetcher
- Isolation of the real ~/.teamcache configuration
"""

import asyncio
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from teamcache.clock import ManualClock
from teamcache.config_manager import ConfigManager
from teamcache.identity import Identity
from teamcache.models import CostSnapshot, DailyCost, ServiceCost, TeamProfile
from teamcache.scheduler import AUTO_INTERVAL, TeamCacheCoordinator
from teamcache.store import InMemoryObjectStore

START = datetime(2026, 3, 15, 9, 0, tzinfo=UTC)


# ============================================================================
# CONFIGURATION ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Point ConfigManager at a temporary directory.

    Tests must never read or modify the real ~/.teamcache/config.toml.
    """
    config_dir = tmp_path / ".teamcache"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    monkeypatch.delenv("TEAMCACHE_CONFIG", raising=False)
    monkeypatch.delenv("AZURE_STORAGE_CONNECTION_STRING", raising=False)
    return config_dir


# ============================================================================
# TIME AND STORAGE
# ============================================================================


@pytest.fixture
def clock():
    """Virtual clock starting at START."""
    return ManualClock(START)


@pytest.fixture
def store(clock):
    """Shared in-memory store with conditional writes enabled."""
    return InMemoryObjectStore(clock=clock)


# ============================================================================
# TEAMS, CLIENTS, FETCHERS
# ============================================================================


@pytest.fixture
def profile():
    return TeamProfile(team_id="platform", account_id="123456789012")


class FakeFetcher:
    """Scriptable async cost fetch.

    Attributes:
        calls: Team ids fetched, in order
        failures: Number of upcoming calls that raise
        gate: When set to an Event, each call waits for it before returning
    """

    def __init__(self, total: str = "1234.56"):
        self.total = Decimal(total)
        self.calls: list[str] = []
        self.failures = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self, profile: TeamProfile) -> CostSnapshot:
        self.calls.append(profile.team_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise RuntimeError("billing API unavailable")
        return CostSnapshot(
            mtd_total=self.total,
            daily_costs=[DailyCost(date=date(2026, 3, 14), amount=Decimal("80.25"))],
            service_costs=[ServiceCost(service_name="Virtual Machines", amount=Decimal("900.00"))],
            start_date=date(2026, 3, 1),
            end_date=date(2026, 3, 14),
        )


@pytest.fixture
def make_fetcher():
    """Factory for additional independent fetchers."""
    return FakeFetcher


@pytest.fixture
def fetcher():
    return FakeFetcher()


def make_identity(name: str) -> Identity:
    return Identity(holder_id=f"{name}-host-1234", display_name=name)


@pytest.fixture
def make_coordinator(store, clock, fetcher):
    """Factory for coordinators sharing the store and clock.

    Auto interval is pinned to the un-jittered 6 hours so schedules are exact.
    """

    def factory(name: str = "alice", **kwargs) -> TeamCacheCoordinator:
        kwargs.setdefault("auto_interval", AUTO_INTERVAL)
        return TeamCacheCoordinator(
            kwargs.pop("store", store),
            kwargs.pop("fetcher", fetcher),
            clock=clock,
            identity=make_identity(name),
            **kwargs,
        )

    return factory
