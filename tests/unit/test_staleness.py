"""Unit tests for the staleness classifier."""

from datetime import UTC, datetime, timedelta

import pytest

from teamcache.staleness import STALE_RED, STALE_YELLOW, StalenessLevel, classify

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class TestClassify:
    """Tests for age-based freshness tiers."""

    def test_never_refreshed_is_red(self):
        assert classify(None, NOW) == StalenessLevel.RED

    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (timedelta(0), StalenessLevel.GREEN),
            (STALE_YELLOW, StalenessLevel.GREEN),
            (STALE_YELLOW + timedelta(seconds=1), StalenessLevel.YELLOW),
            (STALE_RED, StalenessLevel.YELLOW),
            (STALE_RED + timedelta(seconds=1), StalenessLevel.RED),
            (timedelta(days=30), StalenessLevel.RED),
        ],
    )
    def test_thresholds_are_inclusive(self, age, expected):
        """Test tier boundaries: exactly 12h is still fresh, exactly 24h still stale."""
        assert classify(NOW - age, NOW) == expected

    def test_custom_thresholds(self):
        """Test thresholds can be overridden."""
        last = NOW - timedelta(hours=2)
        assert classify(last, NOW, yellow_after=timedelta(hours=1), red_after=timedelta(hours=3)) == (
            StalenessLevel.YELLOW
        )

    def test_labels(self):
        """Test display labels for each tier."""
        assert StalenessLevel.GREEN.label == "Fresh"
        assert StalenessLevel.YELLOW.label == "Stale"
        assert StalenessLevel.RED.label == "Very Stale"
