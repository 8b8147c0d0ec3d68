"""Directory-backed object store.

Keys map to files under a root directory (for example a shared network
mount). Conditional writes use exclusive file creation, so lease acquisition
on a fresh lock key is atomic on filesystems that honour ``O_EXCL``.

Security:
- Keys are validated so no path escapes the root directory
- Files are created with 0600 permissions
"""

import asyncio
import errno
import logging
import os
import tempfile
from pathlib import Path

from teamcache.clock import Clock
from teamcache.errors import AccessDenied, BucketNotFound, NetworkError, SerializationError, StoreError
from teamcache.store.base import DEFAULT_OPERATION_TIMEOUT, ObjectStore

logger = logging.getLogger(__name__)


class LocalDirectoryStore(ObjectStore):
    """Store objects as files under ``root``."""

    supports_conditional_writes = True

    def __init__(
        self,
        root: Path,
        prefix: str = "",
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Clock | None = None,
    ):
        super().__init__(prefix=prefix, operation_timeout=operation_timeout, clock=clock)
        self.root = Path(root).expanduser()

    def _path(self, full_key: str) -> Path:
        parts = [p for p in full_key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise SerializationError(f"Invalid object key: {full_key!r}")
        return self.root.joinpath(*parts)

    def _check_root(self) -> None:
        if not self.root.is_dir():
            raise BucketNotFound(f"Store directory not found: {self.root}")

    async def _read(self, full_key: str) -> bytes | None:
        return await asyncio.to_thread(self._read_sync, full_key)

    def _read_sync(self, full_key: str) -> bytes | None:
        self._check_root()
        path = self._path(full_key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise _translate_os_error(e, "read", full_key) from e

    async def _write(self, full_key: str, data: bytes, *, content_type: str, if_absent: bool) -> bool:
        return await asyncio.to_thread(self._write_sync, full_key, data, if_absent)

    def _write_sync(self, full_key: str, data: bytes, if_absent: bool) -> bool:
        self._check_root()
        path = self._path(full_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if if_absent:
                try:
                    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
                except FileExistsError:
                    logger.debug(f"Conditional write skipped, object exists: {full_key}")
                    return False
                try:
                    os.write(fd, data)
                finally:
                    os.close(fd)
                return True

            # Private temp file per write, then atomic rename: readers never see a
            # partial object and concurrent writers of one key never share a temp file
            fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            temp_path = Path(temp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                temp_path.replace(path)
            except OSError:
                temp_path.unlink(missing_ok=True)
                raise
            return True
        except OSError as e:
            raise _translate_os_error(e, "write", full_key) from e

    async def _exists(self, full_key: str) -> bool:
        return await asyncio.to_thread(self._exists_sync, full_key)

    def _exists_sync(self, full_key: str) -> bool:
        self._check_root()
        return self._path(full_key).is_file()

    async def _remove(self, full_key: str) -> None:
        await asyncio.to_thread(self._remove_sync, full_key)

    def _remove_sync(self, full_key: str) -> None:
        self._check_root()
        try:
            self._path(full_key).unlink(missing_ok=True)
        except OSError as e:
            raise _translate_os_error(e, "delete", full_key) from e

    async def _list(self, full_prefix: str) -> list[str]:
        return await asyncio.to_thread(self._list_sync, full_prefix)

    def _list_sync(self, full_prefix: str) -> list[str]:
        self._check_root()
        keys = []
        try:
            for path in self.root.rglob("*"):
                if not path.is_file() or path.name.endswith(".tmp"):
                    continue
                key = path.relative_to(self.root).as_posix()
                if key.startswith(full_prefix):
                    keys.append(key)
        except OSError as e:
            raise _translate_os_error(e, "list", full_prefix) from e
        return keys

    async def _ping(self) -> None:
        await asyncio.to_thread(self._check_root)


def _translate_os_error(error: OSError, operation: str, key: str) -> StoreError:
    if isinstance(error, PermissionError) or error.errno in (errno.EACCES, errno.EPERM):
        return AccessDenied(f"Permission denied during {operation}: {key}")
    return NetworkError(f"I/O error during {operation} of {key}: {error}")


__all__ = ["LocalDirectoryStore"]
