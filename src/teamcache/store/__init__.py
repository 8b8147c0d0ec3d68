"""Object store backends for the team cache.

Public API (the "studs"):
    ObjectStore: Abstract async store
    InMemoryObjectStore: Dict-backed store (tests, single process)
    LocalDirectoryStore: Files under a shared directory
    AzureBlobObjectStore: Azure Blob Storage container (imported lazily)
    create_store: Build the store described by a TeamCacheConfig
"""

import logging
import os
from pathlib import Path

from teamcache.clock import Clock
from teamcache.config_manager import TeamCacheConfig
from teamcache.errors import ConfigError
from teamcache.store.base import CacheStatistics, ObjectStore, decode_document, encode_document
from teamcache.store.local import LocalDirectoryStore
from teamcache.store.memory import InMemoryObjectStore

logger = logging.getLogger(__name__)


def create_store(config: TeamCacheConfig, clock: Clock | None = None) -> ObjectStore:
    """Build the object store selected by ``config.backend``.

    Raises:
        ConfigError: If the backend is unknown or missing its location
    """
    timeout = config.effective_operation_timeout

    if config.backend == "memory":
        return InMemoryObjectStore(prefix=config.cache_prefix, operation_timeout=timeout, clock=clock)

    if config.backend == "local":
        if not config.local_root:
            raise ConfigError("local backend requires 'local_root'")
        return LocalDirectoryStore(
            Path(config.local_root),
            prefix=config.cache_prefix,
            operation_timeout=timeout,
            clock=clock,
        )

    if config.backend == "azure":
        if not config.container_name:
            raise ConfigError("azure backend requires 'container_name'")
        connection_string = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
        if not (config.account_url or connection_string):
            raise ConfigError(
                "azure backend requires 'account_url' or AZURE_STORAGE_CONNECTION_STRING"
            )

        from teamcache.store.azure_blob import AzureBlobObjectStore

        return AzureBlobObjectStore(
            container_name=config.container_name,
            account_url=config.account_url,
            connection_string=connection_string,
            prefix=config.cache_prefix,
            operation_timeout=timeout,
            clock=clock,
        )

    raise ConfigError(f"Unknown store backend: {config.backend}")


__all__ = [
    "CacheStatistics",
    "InMemoryObjectStore",
    "LocalDirectoryStore",
    "ObjectStore",
    "create_store",
    "decode_document",
    "encode_document",
]
