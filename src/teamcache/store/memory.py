"""In-process object store.

Used for tests and single-process runs. Every primitive yields to the event
loop once before touching state, like a real network round trip, so
concurrent clients interleave the way they would against a remote store.
"""

import asyncio

from teamcache.clock import Clock
from teamcache.store.base import DEFAULT_OPERATION_TIMEOUT, ObjectStore


class InMemoryObjectStore(ObjectStore):
    """Dict-backed store; several clients may share one instance."""

    def __init__(
        self,
        prefix: str = "",
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Clock | None = None,
        conditional_writes: bool = True,
    ):
        super().__init__(prefix=prefix, operation_timeout=operation_timeout, clock=clock)
        self.supports_conditional_writes = conditional_writes
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    async def _read(self, full_key: str) -> bytes | None:
        await asyncio.sleep(0)
        return self.objects.get(full_key)

    async def _write(self, full_key: str, data: bytes, *, content_type: str, if_absent: bool) -> bool:
        await asyncio.sleep(0)
        if if_absent and full_key in self.objects:
            return False
        self.objects[full_key] = data
        self.content_types[full_key] = content_type
        return True

    async def _exists(self, full_key: str) -> bool:
        await asyncio.sleep(0)
        return full_key in self.objects

    async def _remove(self, full_key: str) -> None:
        await asyncio.sleep(0)
        self.objects.pop(full_key, None)
        self.content_types.pop(full_key, None)

    async def _list(self, full_prefix: str) -> list[str]:
        await asyncio.sleep(0)
        return [key for key in self.objects if key.startswith(full_prefix)]


__all__ = ["InMemoryObjectStore"]
