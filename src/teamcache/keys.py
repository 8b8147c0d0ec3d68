"""Deterministic object keys for the team cache.

Month-addressed cost snapshots use the versioned scheme::

    cache-{version}/{account_id}/{yyyy}-{mm}/{data_type}.json.gz

with ``version`` defaulting to ``v1``. Team coordination objects live under
``teams/{team_id}/``: the shared entry, the lease, and the audit trail.

Public API:
    CacheDataType: Kinds of cached payload
    ParsedCacheKey: Result of parse_key
    generate_key / parse_key: Snapshot key encode/decode
    team_cache_key, team_lock_key, team_audit_key, team_audit_prefix
"""

from dataclasses import dataclass
from datetime import date
from enum import StrEnum

KEY_PREFIX = "cache-"
KEY_SUFFIX = ".json.gz"
DEFAULT_KEY_VERSION = "v1"


class CacheDataType(StrEnum):
    """Payload kinds, valued by their key file stem."""

    MTD_COSTS = "mtd-costs"
    DAILY_BREAKDOWN = "daily-breakdown"
    SERVICE_BREAKDOWN = "service-breakdown"
    FULL_DATA = "full-data"


@dataclass(frozen=True)
class ParsedCacheKey:
    """Components of a snapshot key."""

    account_id: str
    year: int
    month: int
    data_type: CacheDataType
    version: str = DEFAULT_KEY_VERSION


def generate_key(
    account_id: str,
    year: int,
    month: int,
    data_type: CacheDataType,
    version: str = DEFAULT_KEY_VERSION,
) -> str:
    """Build the snapshot key for an account's month of data.

    Example:
        >>> generate_key("123456789012", 2026, 3, CacheDataType.FULL_DATA)
        'cache-v1/123456789012/2026-03/full-data.json.gz'
    """
    return f"{KEY_PREFIX}{version}/{account_id}/{year:04d}-{month:02d}/{data_type.value}{KEY_SUFFIX}"


def parse_key(key: str) -> ParsedCacheKey | None:
    """Decode a snapshot key, or return None when it is not one."""
    segments = key.split("/")
    if len(segments) != 4:
        return None

    prefix, account_id, period, filename = segments
    if not prefix.startswith(f"{KEY_PREFIX}v") or len(prefix) == len(KEY_PREFIX) + 1:
        return None
    if not account_id:
        return None

    period_parts = period.split("-")
    if len(period_parts) != 2 or not all(part.isdecimal() for part in period_parts):
        return None
    year, month = int(period_parts[0]), int(period_parts[1])
    if not 1 <= month <= 12 or year < 1:
        return None

    if not filename.endswith(KEY_SUFFIX):
        return None
    try:
        data_type = CacheDataType(filename[: -len(KEY_SUFFIX)])
    except ValueError:
        return None

    return ParsedCacheKey(
        account_id=account_id,
        year=year,
        month=month,
        data_type=data_type,
        version=prefix[len(KEY_PREFIX) :],
    )


def team_cache_key(team_id: str) -> str:
    return f"teams/{team_id}/cache.json.gz"


def team_lock_key(team_id: str) -> str:
    return f"teams/{team_id}/cache.lock"


def team_audit_prefix(team_id: str, day: date | None = None) -> str:
    if day is None:
        return f"teams/{team_id}/audit/"
    return f"teams/{team_id}/audit/{day.isoformat()}/"


def team_audit_key(team_id: str, day: date, entry_id: str) -> str:
    return f"{team_audit_prefix(team_id, day)}{entry_id}.json"


__all__ = [
    "DEFAULT_KEY_VERSION",
    "CacheDataType",
    "ParsedCacheKey",
    "generate_key",
    "parse_key",
    "team_audit_key",
    "team_audit_prefix",
    "team_cache_key",
    "team_lock_key",
]
