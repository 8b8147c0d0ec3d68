"""Freshness tiers for display.

Classification is reporting-only: the scheduler never consults it.
"""

from datetime import datetime, timedelta
from enum import StrEnum

STALE_YELLOW = timedelta(hours=12)
STALE_RED = timedelta(hours=24)


class StalenessLevel(StrEnum):
    """Freshness of a team's cached data."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    StalenessLevel.GREEN: "Fresh",
    StalenessLevel.YELLOW: "Stale",
    StalenessLevel.RED: "Very Stale",
}


def classify(
    last_refreshed_at: datetime | None,
    now: datetime,
    yellow_after: timedelta = STALE_YELLOW,
    red_after: timedelta = STALE_RED,
) -> StalenessLevel:
    """Map the age of the last refresh to a freshness tier.

    Never refreshed is RED; age up to ``yellow_after`` (inclusive) is GREEN;
    up to ``red_after`` (inclusive) is YELLOW; anything older is RED.
    """
    if last_refreshed_at is None:
        return StalenessLevel.RED

    age = now - last_refreshed_at
    if age <= yellow_after:
        return StalenessLevel.GREEN
    if age <= red_after:
        return StalenessLevel.YELLOW
    return StalenessLevel.RED


__all__ = ["STALE_RED", "STALE_YELLOW", "StalenessLevel", "classify"]
