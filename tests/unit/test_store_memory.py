"""Unit tests for the object store base behaviour, via the in-memory backend.

Tests cover:
- Found / NotFound / Expired classification
- Wire codec (gzip for .gz keys) and size metadata
- Conditional document writes
- Key prefixing and listing
- Timeouts and error statistics
"""

import asyncio
import gzip
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from teamcache.errors import CorruptedData, NetworkError, SerializationError
from teamcache.models import CacheMetadata, CacheStatus, RemoteCacheEntry
from teamcache.store import InMemoryObjectStore, decode_document, encode_document

KEY = "teams/platform/cache.json.gz"


def make_entry(clock, ttl_seconds=86400.0) -> RemoteCacheEntry:
    return RemoteCacheEntry(
        team_id="platform",
        account_id="123456789012",
        metadata=CacheMetadata(
            created_by="alice",
            created_at=clock.now(),
            ttl_seconds=ttl_seconds,
            cache_key=KEY,
        ),
        fetch_date=clock.now(),
        mtd_total=Decimal("42.00"),
        revision=1,
    )


class TestCodec:
    """Tests for the JSON/gzip wire codec."""

    def test_compressed_payload_has_gzip_magic(self):
        data = encode_document({"a": 1}, compress=True)
        assert data[:2] == b"\x1f\x8b"
        assert decode_document(data) == {"a": 1}

    def test_plain_payload_decodes(self):
        assert decode_document(b'{"a": 1}') == {"a": 1}

    def test_non_object_is_rejected(self):
        with pytest.raises(SerializationError):
            decode_document(b"[1, 2]")

    def test_garbage_is_rejected(self):
        with pytest.raises(SerializationError):
            decode_document(b"\x1f\x8bnot really gzip")

    def test_unserializable_document(self):
        with pytest.raises(SerializationError):
            encode_document({"a": object()}, compress=False)


class TestEntryOperations:
    """Tests for get/put of cache entries."""

    @pytest.mark.asyncio
    async def test_missing_entry_is_not_found(self, store):
        """Test absence is a lookup status, not an exception."""
        lookup = await store.get(KEY)

        assert lookup.status == CacheStatus.NOT_FOUND
        assert lookup.entry is None
        assert store.statistics.cache_misses == 1

    @pytest.mark.asyncio
    async def test_put_then_get_is_found(self, store, clock):
        entry = make_entry(clock)
        written = await store.put(KEY, entry)
        lookup = await store.get(KEY)

        assert lookup.status == CacheStatus.FOUND
        assert lookup.entry == written
        assert lookup.entry.mtd_total == Decimal("42.00")
        assert store.statistics.hit_ratio == 1.0

    @pytest.mark.asyncio
    async def test_put_records_sizes_and_compresses(self, store, clock):
        """Test .gz keys are stored compressed with sizes in metadata."""
        written = await store.put(KEY, make_entry(clock))
        raw = store.objects[KEY]

        assert raw[:2] == b"\x1f\x8b"
        assert json.loads(gzip.decompress(raw))["revision"] == 1
        assert written.metadata.uncompressed_size_bytes > 0
        assert written.metadata.compressed_size_bytes > 0
        assert store.content_types[KEY] == "application/gzip"

    @pytest.mark.asyncio
    async def test_recorded_sizes_match_stored_payload(self, store, clock):
        """Test the size fields describe the bytes actually stored, sizes included."""
        written = await store.put(KEY, make_entry(clock))
        raw = store.objects[KEY]

        assert written.metadata.compressed_size_bytes == len(raw)
        assert written.metadata.uncompressed_size_bytes == len(gzip.decompress(raw))

    @pytest.mark.asyncio
    async def test_entry_past_ttl_is_expired(self, store, clock):
        """Test TTL is evaluated against metadata at read time."""
        await store.put(KEY, make_entry(clock, ttl_seconds=60))

        clock.set(clock.now() + timedelta(seconds=61))
        lookup = await store.get(KEY)

        assert lookup.status == CacheStatus.EXPIRED
        assert lookup.entry is not None
        assert lookup.needs_refresh

    @pytest.mark.asyncio
    async def test_undecodable_entry_raises_serialization_error(self, store):
        store.objects[KEY] = b"definitely not json"
        with pytest.raises(SerializationError):
            await store.get(KEY)

    @pytest.mark.asyncio
    async def test_wrong_schema_raises_corrupted_data(self, store):
        store.objects[KEY] = encode_document({"team_id": "platform"}, compress=True)
        with pytest.raises(CorruptedData):
            await store.get(KEY)

    @pytest.mark.asyncio
    async def test_force_refresh_replaces_entry(self, store, clock):
        await store.put(KEY, make_entry(clock))
        replacement = make_entry(clock)
        await store.force_refresh(KEY, RemoteCacheEntry.from_dict({**replacement.to_dict(), "revision": 9}))

        lookup = await store.get(KEY)
        assert lookup.entry.revision == 9


class TestDocuments:
    """Tests for raw document operations used by leases and audit records."""

    @pytest.mark.asyncio
    async def test_if_absent_write_refuses_existing(self, store):
        assert await store.put_document("teams/a/cache.lock", {"holder": "x"}, if_absent=True)
        assert not await store.put_document("teams/a/cache.lock", {"holder": "y"}, if_absent=True)
        assert await store.get_document("teams/a/cache.lock") == {"holder": "x"}

    @pytest.mark.asyncio
    async def test_if_absent_degrades_without_conditional_support(self, clock):
        """Test stores without conditional writes overwrite unconditionally."""
        store = InMemoryObjectStore(clock=clock, conditional_writes=False)
        await store.put_document("k.json", {"v": 1})
        assert await store.put_document("k.json", {"v": 2}, if_absent=True)
        assert await store.get_document("k.json") == {"v": 2}

    @pytest.mark.asyncio
    async def test_missing_document_is_none(self, store):
        assert await store.get_document("nope.json") is None

    @pytest.mark.asyncio
    async def test_plain_json_for_non_gz_keys(self, store):
        await store.put_document("teams/a/audit/2026-03-15/x.json", {"actor": "alice"})
        assert json.loads(store.objects["teams/a/audit/2026-03-15/x.json"]) == {"actor": "alice"}


class TestNamespace:
    """Tests for prefixing, listing and deletion."""

    @pytest.mark.asyncio
    async def test_prefix_is_applied_and_stripped(self, clock):
        store = InMemoryObjectStore(prefix="team-cache/", clock=clock)
        await store.put_document("teams/b/cache.lock", {})
        await store.put_document("teams/a/cache.lock", {})

        assert set(store.objects) == {"team-cache/teams/a/cache.lock", "team-cache/teams/b/cache.lock"}
        assert await store.list("teams/") == ["teams/a/cache.lock", "teams/b/cache.lock"]
        assert await store.head("teams/a/cache.lock")

    @pytest.mark.asyncio
    async def test_delete_and_head(self, store):
        await store.put_document("x.json", {})
        await store.delete("x.json")
        assert not await store.head("x.json")
        # Deleting an absent object is not an error
        await store.delete("x.json")

    @pytest.mark.asyncio
    async def test_clear_all_under_prefix(self, store):
        for key in ("teams/a/1.json", "teams/a/2.json", "teams/b/1.json"):
            await store.put_document(key, {})

        assert await store.clear_all("teams/a/") == 2
        assert await store.list() == ["teams/b/1.json"]

    @pytest.mark.asyncio
    async def test_check_connection(self, store):
        await store.check_connection()
        assert store.is_connected


class SlowStore(InMemoryObjectStore):
    async def _read(self, full_key):
        await asyncio.sleep(1)
        return None


class TestTimeouts:
    """Tests for per-operation timeouts."""

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self, clock):
        """Test a slow backend call surfaces as NetworkError and is counted."""
        store = SlowStore(clock=clock, operation_timeout=0.01)

        with pytest.raises(NetworkError, match="timed out"):
            await store.get(KEY)

        assert store.statistics.errors == 1
        assert not store.is_connected
        assert isinstance(store.last_error, NetworkError)
