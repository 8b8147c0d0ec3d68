"""Audit trail for manual refreshes.

One JSON object per event at ``teams/{team_id}/audit/{yyyy-mm-dd}/{uuid}.json``.
The trail is write-only from the scheduler's point of view; listing and
pruning exist for operators (see the ``audit`` CLI commands).

Public API:
    AuditEntry: Audit record schema
    AuditLogWriter: write / list_entries / prune_expired
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from teamcache.clock import Clock, SystemClock
from teamcache.errors import CorruptedData, SerializationError, StoreError, sanitize_error_message
from teamcache.keys import team_audit_key, team_audit_prefix
from teamcache.models import format_datetime, parse_datetime
from teamcache.store.base import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=365)


@dataclass(frozen=True)
class AuditEntry:
    """One recorded refresh."""

    team_id: str
    actor: str
    reason: str
    timestamp: datetime
    retention_seconds: float = DEFAULT_RETENTION.total_seconds()
    actor_id: str | None = None

    @property
    def expires_at(self) -> datetime:
        return self.timestamp + timedelta(seconds=self.retention_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": "audit",
            "team_id": self.team_id,
            "actor": self.actor,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "timestamp": format_datetime(self.timestamp),
            "retention_seconds": self.retention_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEntry":
        try:
            timestamp = parse_datetime(data["timestamp"])
            if timestamp is None:
                raise ValueError("timestamp is required")
            return cls(
                team_id=str(data["team_id"]),
                actor=str(data["actor"]),
                reason=str(data["reason"]),
                timestamp=timestamp,
                retention_seconds=float(data.get("retention_seconds", DEFAULT_RETENTION.total_seconds())),
                actor_id=data.get("actor_id"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CorruptedData(f"Invalid audit document: {e}") from e


class AuditLogWriter:
    """Write audit records to the object store."""

    def __init__(
        self,
        store: ObjectStore,
        clock: Clock | None = None,
        retention: timedelta = DEFAULT_RETENTION,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.retention = retention

    async def write(
        self, team_id: str, actor: str, reason: str, actor_id: str | None = None
    ) -> str | None:
        """Record one refresh event.

        Failures are logged and swallowed: an audit problem must never fail
        the refresh it describes.

        Returns:
            Key written, or None if the write failed
        """
        now = self.clock.now()
        entry = AuditEntry(
            team_id=team_id,
            actor=actor,
            actor_id=actor_id,
            reason=reason,
            timestamp=now,
            retention_seconds=self.retention.total_seconds(),
        )
        key = team_audit_key(team_id, now.date(), str(uuid.uuid4()))

        try:
            await self.store.put_document(key, entry.to_dict())
        except StoreError as e:
            logger.warning(f"Failed to write audit log for team {team_id}: {sanitize_error_message(e)}")
            return None

        logger.debug(f"Wrote audit log: {key}")
        return key

    async def list_entries(self, team_id: str, day: date | None = None) -> list[AuditEntry]:
        """Read a team's audit records, oldest first; unreadable ones are skipped."""
        entries = []
        for key in await self.store.list(team_audit_prefix(team_id, day)):
            try:
                document = await self.store.get_document(key)
                if document is not None:
                    entries.append(AuditEntry.from_dict(document))
            except (SerializationError, CorruptedData) as e:
                logger.warning(f"Skipping unreadable audit record {key}: {e}")
        return sorted(entries, key=lambda entry: entry.timestamp)

    async def prune_expired(self, team_id: str) -> int:
        """Delete audit records past their retention; returns the count removed."""
        now = self.clock.now()
        removed = 0
        for key in await self.store.list(team_audit_prefix(team_id)):
            try:
                document = await self.store.get_document(key)
                if document is None:
                    continue
                if AuditEntry.from_dict(document).expires_at > now:
                    continue
            except (SerializationError, CorruptedData) as e:
                logger.warning(f"Removing unreadable audit record {key}: {e}")
            await self.store.delete(key)
            removed += 1

        if removed:
            logger.info(f"Pruned {removed} expired audit records for team {team_id}")
        return removed


__all__ = ["DEFAULT_RETENTION", "AuditEntry", "AuditLogWriter"]
