"""Cache entry and team state data models.

Philosophy:
- Plain dataclasses with explicit to_dict/from_dict (JSON-ready dicts)
- Decimal amounts serialize as strings, datetimes as ISO-8601 UTC
- Schema violations on decode raise CorruptedData

Public API:
    DailyCost, ServiceCost: Cost line items
    CostSnapshot: Result of one upstream cost fetch
    CacheMetadata: TTL/provenance of a stored entry
    RemoteCacheEntry: Shared per-team payload
    CacheStatus, CacheLookup: Outcome of a cache read
    RefreshedBy, TeamProfile: Identity of a refresher and of a team
    TeamCacheState: Scheduling view derived from the latest entry
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, TypeVar

from teamcache.errors import CorruptedData
from teamcache.staleness import StalenessLevel, classify

SCHEMA_VERSION = "1.0"
DEFAULT_CURRENCY = "USD"

T = TypeVar("T")


def format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _required_datetime(value: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


def _decode(model: str, build: Callable[[], T]) -> T:
    """Run a from_dict body, converting schema errors to CorruptedData."""
    try:
        return build()
    except (KeyError, TypeError, ValueError, AttributeError, InvalidOperation) as e:
        raise CorruptedData(f"Invalid {model} payload: {e}") from e


@dataclass(frozen=True)
class DailyCost:
    """Cost incurred on one day."""

    date: date
    amount: Decimal
    currency: str = DEFAULT_CURRENCY

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), "amount": str(self.amount), "currency": self.currency}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DailyCost":
        return _decode(
            "daily cost",
            lambda: cls(
                date=date.fromisoformat(data["date"]),
                amount=Decimal(str(data["amount"])),
                currency=data.get("currency", DEFAULT_CURRENCY),
            ),
        )


@dataclass(frozen=True)
class ServiceCost:
    """Month-to-date cost of one service."""

    service_name: str
    amount: Decimal
    currency: str = DEFAULT_CURRENCY

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "amount": str(self.amount),
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServiceCost":
        return _decode(
            "service cost",
            lambda: cls(
                service_name=str(data["service_name"]),
                amount=Decimal(str(data["amount"])),
                currency=data.get("currency", DEFAULT_CURRENCY),
            ),
        )


@dataclass(frozen=True)
class CostSnapshot:
    """What the upstream billing fetch returns for one team."""

    mtd_total: Decimal
    currency: str = DEFAULT_CURRENCY
    daily_costs: list[DailyCost] = field(default_factory=list)
    service_costs: list[ServiceCost] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None

    @classmethod
    def coerce(cls, value: "CostSnapshot | Mapping[str, Any]") -> "CostSnapshot":
        """Accept a CostSnapshot or a plain mapping from a fetcher."""
        if isinstance(value, CostSnapshot):
            return value
        if not isinstance(value, Mapping):
            raise CorruptedData(f"Cost fetch returned unsupported type: {type(value).__name__}")

        def build() -> CostSnapshot:
            daily = [d if isinstance(d, DailyCost) else DailyCost.from_dict(d) for d in value.get("daily_costs", [])]
            services = [
                s if isinstance(s, ServiceCost) else ServiceCost.from_dict(s)
                for s in value.get("service_costs", [])
            ]
            start = value.get("start_date")
            end = value.get("end_date")
            return cls(
                mtd_total=Decimal(str(value["mtd_total"])),
                currency=value.get("currency", DEFAULT_CURRENCY),
                daily_costs=daily,
                service_costs=services,
                start_date=date.fromisoformat(start) if isinstance(start, str) else start,
                end_date=date.fromisoformat(end) if isinstance(end, str) else end,
            )

        return _decode("cost snapshot", build)


@dataclass(frozen=True)
class CacheMetadata:
    """Provenance and TTL of a stored cache entry."""

    created_by: str
    created_at: datetime
    ttl_seconds: float
    cache_key: str
    compressed_size_bytes: int | None = None
    uncompressed_size_bytes: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return (now - self.created_at).total_seconds() > self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_by": self.created_by,
            "created_at": format_datetime(self.created_at),
            "ttl_seconds": self.ttl_seconds,
            "cache_key": self.cache_key,
            "compressed_size_bytes": self.compressed_size_bytes,
            "uncompressed_size_bytes": self.uncompressed_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheMetadata":
        return _decode(
            "cache metadata",
            lambda: cls(
                created_by=str(data["created_by"]),
                created_at=_required_datetime(data["created_at"]),
                ttl_seconds=float(data["ttl_seconds"]),
                cache_key=str(data["cache_key"]),
                compressed_size_bytes=data.get("compressed_size_bytes"),
                uncompressed_size_bytes=data.get("uncompressed_size_bytes"),
            ),
        )


@dataclass(frozen=True)
class RefreshedBy:
    """Who performed the last successful refresh."""

    id: str
    display: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "display": self.display}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RefreshedBy":
        return _decode("refreshed_by", lambda: cls(id=str(data["id"]), display=str(data["display"])))


@dataclass(frozen=True)
class TeamProfile:
    """A tracked team and the billing account/profile it mirrors."""

    team_id: str
    account_id: str
    profile_name: str | None = None

    @property
    def name(self) -> str:
        return self.profile_name or self.team_id


@dataclass(frozen=True)
class RemoteCacheEntry:
    """Shared cost payload for one team.

    Written only by the client holding the team's lease. ``fetch_date`` is
    the time of the last successful refresh; ``revision`` increases on every
    write, including writes that only record a failed attempt.
    """

    team_id: str
    account_id: str
    metadata: CacheMetadata
    fetch_date: datetime | None = None
    mtd_total: Decimal | None = None
    currency: str = DEFAULT_CURRENCY
    daily_costs: list[DailyCost] = field(default_factory=list)
    service_costs: list[ServiceCost] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    schema_version: str = SCHEMA_VERSION
    revision: int = 0
    refreshed_by: RefreshedBy | None = None
    last_error: str | None = None

    @property
    def has_costs(self) -> bool:
        return self.mtd_total is not None

    def with_snapshot(
        self,
        snapshot: CostSnapshot,
        fetched_at: datetime,
        refreshed_by: RefreshedBy,
        metadata: CacheMetadata,
    ) -> "RemoteCacheEntry":
        """Copy carrying a fresh snapshot and the next revision."""
        return replace(
            self,
            fetch_date=fetched_at,
            mtd_total=snapshot.mtd_total,
            currency=snapshot.currency,
            daily_costs=list(snapshot.daily_costs),
            service_costs=list(snapshot.service_costs),
            start_date=snapshot.start_date,
            end_date=snapshot.end_date,
            revision=self.revision + 1,
            refreshed_by=refreshed_by,
            last_error=None,
            metadata=metadata,
        )

    def with_failure(self, message: str) -> "RemoteCacheEntry":
        """Copy recording a failed attempt; refresh timestamps stay as they were."""
        return replace(self, revision=self.revision + 1, last_error=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "account_id": self.account_id,
            "fetch_date": format_datetime(self.fetch_date),
            "mtd_total": None if self.mtd_total is None else str(self.mtd_total),
            "currency": self.currency,
            "daily_costs": [d.to_dict() for d in self.daily_costs],
            "service_costs": [s.to_dict() for s in self.service_costs],
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "schema_version": self.schema_version,
            "revision": self.revision,
            "refreshed_by": self.refreshed_by.to_dict() if self.refreshed_by else None,
            "last_error": self.last_error,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RemoteCacheEntry":
        def build() -> RemoteCacheEntry:
            mtd_total = data.get("mtd_total")
            refreshed_by = data.get("refreshed_by")
            start_date = data.get("start_date")
            end_date = data.get("end_date")
            revision = data.get("revision", 0)
            if not isinstance(revision, int) or isinstance(revision, bool):
                raise ValueError(f"revision must be an integer, got {revision!r}")
            return cls(
                team_id=str(data["team_id"]),
                account_id=str(data["account_id"]),
                metadata=CacheMetadata.from_dict(data["metadata"]),
                fetch_date=parse_datetime(data.get("fetch_date")),
                mtd_total=None if mtd_total is None else Decimal(str(mtd_total)),
                currency=data.get("currency", DEFAULT_CURRENCY),
                daily_costs=[DailyCost.from_dict(d) for d in data.get("daily_costs", [])],
                service_costs=[ServiceCost.from_dict(s) for s in data.get("service_costs", [])],
                start_date=date.fromisoformat(start_date) if start_date else None,
                end_date=date.fromisoformat(end_date) if end_date else None,
                schema_version=str(data.get("schema_version", SCHEMA_VERSION)),
                revision=revision,
                refreshed_by=RefreshedBy.from_dict(refreshed_by) if refreshed_by else None,
                last_error=data.get("last_error"),
            )

        return _decode("cache entry", build)


class CacheStatus(StrEnum):
    """Outcome of reading a cache entry."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CacheLookup:
    """Result of ObjectStore.get: Found(entry) | NotFound | Expired(entry)."""

    status: CacheStatus
    entry: RemoteCacheEntry | None = None

    @classmethod
    def found(cls, entry: RemoteCacheEntry) -> "CacheLookup":
        return cls(CacheStatus.FOUND, entry)

    @classmethod
    def not_found(cls) -> "CacheLookup":
        return cls(CacheStatus.NOT_FOUND)

    @classmethod
    def expired(cls, entry: RemoteCacheEntry) -> "CacheLookup":
        return cls(CacheStatus.EXPIRED, entry)

    @property
    def is_found(self) -> bool:
        return self.status == CacheStatus.FOUND

    @property
    def needs_refresh(self) -> bool:
        return self.status != CacheStatus.FOUND


@dataclass(frozen=True)
class TeamCacheState:
    """Scheduling view of a team, recomputed from the latest entry on load."""

    team_id: str
    next_auto_eligible_at: datetime
    next_manual_eligible_at: datetime
    last_refreshed_at: datetime | None = None
    refreshed_by: RefreshedBy | None = None
    as_of_date: str | None = None
    version: int = 0

    def is_manual_refresh_enabled(self, now: datetime) -> bool:
        return now >= self.next_manual_eligible_at

    def time_until_manual_refresh(self, now: datetime) -> float:
        return max(0.0, (self.next_manual_eligible_at - now).total_seconds())

    def is_auto_refresh_due(self, now: datetime) -> bool:
        return now >= self.next_auto_eligible_at

    def staleness(self, now: datetime) -> StalenessLevel:
        return classify(self.last_refreshed_at, now)

    @classmethod
    def initial(cls, team_id: str, now: datetime, version: int = 0) -> "TeamCacheState":
        """State of a team that has never been refreshed: eligible now."""
        return cls(
            team_id=team_id,
            next_auto_eligible_at=now,
            next_manual_eligible_at=now,
            version=version,
        )

    @classmethod
    def from_entry(
        cls,
        team_id: str,
        entry: RemoteCacheEntry,
        now: datetime,
        auto_interval: timedelta,
        manual_cooldown: timedelta,
        expired: bool = False,
    ) -> "TeamCacheState":
        """Derive scheduling state from a stored entry.

        An expired entry keeps its refresh provenance for display but is due
        for an automatic refresh immediately.
        """
        last = entry.fetch_date
        if last is None:
            return cls.initial(team_id, now, version=entry.revision)

        next_auto = now if expired else last + auto_interval
        return cls(
            team_id=team_id,
            last_refreshed_at=last,
            refreshed_by=entry.refreshed_by,
            next_auto_eligible_at=next_auto,
            next_manual_eligible_at=last + manual_cooldown,
            as_of_date=format_datetime(last),
            version=entry.revision,
        )

    @classmethod
    def from_lookup(
        cls,
        team_id: str,
        lookup: CacheLookup,
        now: datetime,
        auto_interval: timedelta,
        manual_cooldown: timedelta,
    ) -> "TeamCacheState":
        if lookup.entry is None:
            return cls.initial(team_id, now)
        return cls.from_entry(
            team_id,
            lookup.entry,
            now,
            auto_interval,
            manual_cooldown,
            expired=lookup.status == CacheStatus.EXPIRED,
        )


__all__ = [
    "SCHEMA_VERSION",
    "CacheLookup",
    "CacheMetadata",
    "CacheStatus",
    "CostSnapshot",
    "DailyCost",
    "RefreshedBy",
    "RemoteCacheEntry",
    "ServiceCost",
    "TeamCacheState",
    "TeamProfile",
    "format_datetime",
    "parse_datetime",
]
