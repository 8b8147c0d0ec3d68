"""Unit tests for errors, identity and fetcher resolution."""

import pytest

from teamcache.errors import (
    CorruptedData,
    FetcherResolutionError,
    LockNotAcquired,
    NetworkError,
    StoreError,
    TeamCacheError,
    sanitize_error_message,
)
from teamcache.fetcher import load_fetcher
from teamcache.identity import Identity


class TestErrors:
    """Tests for the error taxonomy."""

    def test_hierarchy(self):
        assert issubclass(NetworkError, StoreError)
        assert issubclass(CorruptedData, StoreError)
        assert issubclass(StoreError, TeamCacheError)
        assert not issubclass(LockNotAcquired, StoreError)

    def test_lock_not_acquired_message(self):
        error = LockNotAcquired("platform", "bob-host-1")
        assert "platform" in str(error)
        assert "bob-host-1" in str(error)

    def test_sanitize_masks_credentials(self):
        message = sanitize_error_message(
            "DefaultEndpointsProtocol=https;AccountName=acct;AccountKey=c2VjcmV0;EndpointSuffix=core"
        )
        assert "c2VjcmV0" not in message
        assert "AccountKey=***" in message
        assert "AccountName=acct" in message

    def test_sanitize_masks_sas_signature(self):
        assert "abc123" not in sanitize_error_message(NetworkError("GET ?sv=1&sig=abc123&se=2"))

    def test_sanitize_truncates(self):
        assert sanitize_error_message("x" * 500, limit=10) == "x" * 10 + "..."

    def test_sanitize_empty_exception_uses_type(self):
        assert sanitize_error_message(TimeoutError()) == "TimeoutError"


class TestIdentity:
    def test_holder_ids_are_unique_per_call(self):
        first = Identity.for_process("alice")
        second = Identity.for_process("alice")

        assert first.display_name == "alice"
        assert first.holder_id != second.holder_id

    def test_default_display_name(self):
        assert Identity.for_process().display_name


class TestLoadFetcher:
    """Tests for resolving the cost fetch callable."""

    def test_resolves_callable(self):
        assert load_fetcher("json:dumps") is __import__("json").dumps

    def test_resolves_nested_attribute(self):
        assert load_fetcher("os:path.join") is __import__("os").path.join

    @pytest.mark.parametrize("path", ["json", "json:", ":dumps"])
    def test_malformed_path(self, path):
        with pytest.raises(FetcherResolutionError, match="Invalid fetcher"):
            load_fetcher(path)

    def test_missing_module(self):
        with pytest.raises(FetcherResolutionError, match="Cannot import"):
            load_fetcher("no_such_module_for_teamcache:fetch")

    def test_missing_attribute(self):
        with pytest.raises(FetcherResolutionError, match="not found"):
            load_fetcher("json:no_such_function")

    def test_not_callable(self):
        with pytest.raises(FetcherResolutionError, match="not callable"):
            load_fetcher("json:__name__")
