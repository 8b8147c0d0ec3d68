"""Object store abstraction shared by all backends.

Philosophy:
- Backends implement five byte-level primitives on full keys
- This base class owns the wire codec, key prefixing, operation timeouts,
  cache-entry classification and statistics
- Errors propagate to the caller; nothing here retries

Wire format:
    JSON documents, gzip-compressed when the key ends in ``.gz``. Decoding
    detects the gzip magic bytes, so compressed and plain payloads both read.

Public API:
    ObjectStore: Abstract async store over a flat key namespace
    CacheStatistics: Hit/miss/error counters
    encode_document / decode_document: Wire codec
"""

import asyncio
import gzip
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, TypeVar

from teamcache.clock import Clock, SystemClock
from teamcache.errors import NetworkError, SerializationError, StoreError, sanitize_error_message
from teamcache.models import CacheLookup, RemoteCacheEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

GZIP_MAGIC = b"\x1f\x8b"
DEFAULT_OPERATION_TIMEOUT = 15.0
MIN_OPERATION_TIMEOUT = 10.0
MAX_OPERATION_TIMEOUT = 30.0


def encode_document(document: dict[str, Any], compress: bool) -> bytes:
    """Serialize a JSON document, optionally gzip-compressed.

    Raises:
        SerializationError: If the document is not JSON-serializable
    """
    try:
        raw = json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to serialize document: {e}") from e
    if compress:
        return gzip.compress(raw, mtime=0)
    return raw


def decode_document(data: bytes) -> dict[str, Any]:
    """Deserialize a (possibly gzip-compressed) JSON object.

    Raises:
        SerializationError: If decompression or JSON parsing fails, or the
            payload is not a JSON object
    """
    try:
        if data[:2] == GZIP_MAGIC:
            data = gzip.decompress(data)
        document = json.loads(data.decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as e:
        raise SerializationError(f"Failed to deserialize document: {e}") from e
    if not isinstance(document, dict):
        raise SerializationError(f"Expected a JSON object, got {type(document).__name__}")
    return document


@dataclass
class CacheStatistics:
    """Counters for one store instance."""

    total_entries: int = 0
    total_size_bytes: int = 0
    last_access_time: datetime | None = None
    cache_hits: int = 0
    cache_misses: int = 0
    errors: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total > 0 else 0.0

    def record_hit(self, now: datetime) -> None:
        self.cache_hits += 1
        self.last_access_time = now

    def record_miss(self, now: datetime) -> None:
        self.cache_misses += 1
        self.last_access_time = now

    def record_error(self) -> None:
        self.errors += 1


class ObjectStore(ABC):
    """Async get/put/head/delete/list over a flat blob namespace.

    Subclasses implement the ``_read``/``_write``/``_exists``/``_remove``/
    ``_list`` primitives on fully-prefixed keys and translate their backend's
    failures into the errors in ``teamcache.errors``.

    Every public operation runs under ``operation_timeout``; a timeout raises
    NetworkError.
    """

    #: Whether ``_write(if_absent=True)`` is honoured atomically by the backend
    supports_conditional_writes: bool = False

    def __init__(
        self,
        prefix: str = "",
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Clock | None = None,
    ):
        self.prefix = prefix.strip("/")
        self.operation_timeout = operation_timeout
        self.clock = clock or SystemClock()
        self.statistics = CacheStatistics()
        self.is_connected = False
        self.last_error: StoreError | None = None

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _read(self, full_key: str) -> bytes | None:
        """Return the object body, or None if the object does not exist."""

    @abstractmethod
    async def _write(self, full_key: str, data: bytes, *, content_type: str, if_absent: bool) -> bool:
        """Store an object; return False only when ``if_absent`` and it exists."""

    @abstractmethod
    async def _exists(self, full_key: str) -> bool:
        """Check existence without fetching the body."""

    @abstractmethod
    async def _remove(self, full_key: str) -> None:
        """Delete an object; absent objects are not an error."""

    @abstractmethod
    async def _list(self, full_prefix: str) -> list[str]:
        """Return full keys starting with ``full_prefix``."""

    async def _ping(self) -> None:
        """Verify the backend is reachable (default: list the prefix)."""
        await self._list(self._full_key(""))

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> "ObjectStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _full_key(self, key: str) -> str:
        key = key.lstrip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def _relative_key(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1 :]
        return full_key

    async def _call(self, operation: str, key: str, awaitable: Awaitable[T]) -> T:
        """Run a primitive under the operation timeout, recording failures."""
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except TimeoutError as e:
            error = NetworkError(f"{operation} timed out after {self.operation_timeout:.0f}s: {key}")
            self._record_failure(operation, key, error)
            raise error from e
        except StoreError as e:
            self._record_failure(operation, key, e)
            raise
        self.is_connected = True
        return result

    def _record_failure(self, operation: str, key: str, error: StoreError) -> None:
        self.is_connected = False
        self.last_error = error
        self.statistics.record_error()
        logger.error(f"Store error in {operation} for key {key}: {sanitize_error_message(error)}")

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    async def get(self, key: str) -> CacheLookup:
        """Read a cache entry.

        Returns:
            CacheLookup that is FOUND, NOT_FOUND, or EXPIRED (by metadata TTL)

        Raises:
            NetworkError, AccessDenied, BucketNotFound: Transport failures
            SerializationError: Payload is not decodable JSON
            CorruptedData: Payload does not match the entry schema
        """
        logger.debug(f"Getting cache entry: {key}")
        data = await self._call("get", key, self._read(self._full_key(key)))
        now = self.clock.now()

        if data is None:
            logger.debug(f"Cache entry not found: {key}")
            self.statistics.record_miss(now)
            return CacheLookup.not_found()

        entry = RemoteCacheEntry.from_dict(decode_document(data))
        if entry.metadata.is_expired(now):
            logger.info(f"Cache entry expired: {key}")
            self.statistics.record_miss(now)
            return CacheLookup.expired(entry)

        self.statistics.record_hit(now)
        return CacheLookup.found(entry)

    async def put(self, key: str, entry: RemoteCacheEntry) -> RemoteCacheEntry:
        """Store a cache entry, overwriting any existing object.

        Returns:
            The entry as written, with payload sizes recorded in its metadata
        """
        compress = key.endswith(".gz")
        sized = _with_payload_sizes(entry)
        data = encode_document(sized.to_dict(), compress=compress)
        raw_size = sized.metadata.uncompressed_size_bytes

        await self._call(
            "put",
            key,
            self._write(self._full_key(key), data, content_type=_content_type(key), if_absent=False),
        )
        self.statistics.total_entries += 1
        self.statistics.total_size_bytes += len(data)
        logger.debug(f"Stored cache entry: {key} ({raw_size} -> {len(data)} bytes)")
        return sized

    async def force_refresh(self, key: str, entry: RemoteCacheEntry) -> RemoteCacheEntry:
        """Replace an entry by deleting it first, then storing the new one."""
        logger.info(f"Force refresh: replacing cache entry {key}")
        await self.delete(key)
        return await self.put(key, entry)

    # ------------------------------------------------------------------
    # Raw documents (leases, audit records)
    # ------------------------------------------------------------------

    async def get_document(self, key: str) -> dict[str, Any] | None:
        """Read a JSON document, or None if absent.

        Raises:
            SerializationError: If the payload is not a JSON object
        """
        data = await self._call("get_document", key, self._read(self._full_key(key)))
        if data is None:
            return None
        return decode_document(data)

    async def put_document(self, key: str, document: dict[str, Any], if_absent: bool = False) -> bool:
        """Write a JSON document.

        With ``if_absent=True`` on a backend that supports conditional writes,
        the write only happens if no object exists at ``key``; on other
        backends it degrades to an unconditional write.

        Returns:
            False if the conditional write found an existing object
        """
        data = encode_document(document, compress=key.endswith(".gz"))
        conditional = if_absent and self.supports_conditional_writes
        return await self._call(
            "put_document",
            key,
            self._write(self._full_key(key), data, content_type=_content_type(key), if_absent=conditional),
        )

    # ------------------------------------------------------------------
    # Namespace operations
    # ------------------------------------------------------------------

    async def head(self, key: str) -> bool:
        return await self._call("head", key, self._exists(self._full_key(key)))

    async def delete(self, key: str) -> None:
        await self._call("delete", key, self._remove(self._full_key(key)))
        self.statistics.total_entries = max(0, self.statistics.total_entries - 1)
        logger.debug(f"Deleted object: {key}")

    async def list(self, prefix: str = "") -> list[str]:
        """List keys under ``prefix`` (relative to the store prefix), sorted."""
        full_keys = await self._call("list", prefix, self._list(self._full_key(prefix)))
        return sorted(self._relative_key(k) for k in full_keys)

    async def clear_all(self, prefix: str = "") -> int:
        """Delete every object under ``prefix``; returns the count deleted."""
        keys = await self.list(prefix)
        for key in keys:
            await self.delete(key)
        self.statistics = CacheStatistics()
        logger.info(f"Cleared {len(keys)} objects under '{prefix}'")
        return len(keys)

    async def check_connection(self) -> None:
        """Raise a StoreError if the backend is unreachable or misconfigured."""
        await self._call("check_connection", self.prefix or "/", self._ping())
        self.last_error = None


SIZE_PASSES = 5


def _with_payload_sizes(entry: RemoteCacheEntry) -> RemoteCacheEntry:
    """Record the encoded sizes of ``entry`` in its own metadata.

    The sizes are part of the payload they describe, so they are re-measured
    until writing them no longer changes the encoding.
    """
    sized = entry
    for _ in range(SIZE_PASSES):
        document = sized.to_dict()
        raw_size = len(encode_document(document, compress=False))
        compressed_size = len(encode_document(document, compress=True))
        metadata = sized.metadata
        if (metadata.uncompressed_size_bytes, metadata.compressed_size_bytes) == (raw_size, compressed_size):
            break
        sized = replace(
            sized,
            metadata=replace(
                metadata,
                compressed_size_bytes=compressed_size,
                uncompressed_size_bytes=raw_size,
            ),
        )
    return sized


def _content_type(key: str) -> str:
    return "application/gzip" if key.endswith(".gz") else "application/json"


__all__ = [
    "DEFAULT_OPERATION_TIMEOUT",
    "MAX_OPERATION_TIMEOUT",
    "MIN_OPERATION_TIMEOUT",
    "CacheStatistics",
    "ObjectStore",
    "decode_document",
    "encode_document",
]
