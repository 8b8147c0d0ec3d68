"""Azure Blob Storage backend.

Uses the async ``azure-storage-blob`` client. Authentication comes from a
connection string when configured, otherwise ``DefaultAzureCredential``
(environment, managed identity, Azure CLI login ...).

Error mapping:
- Blob missing (BlobNotFound) -> not found / False
- ContainerNotFound -> BucketNotFound
- ClientAuthenticationError or HTTP 403 -> AccessDenied
- Connection failures and other service errors -> NetworkError

Conditional writes use ``upload_blob(overwrite=False)``, which the service
rejects with 409 when the blob exists.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient, ContainerClient

from teamcache.clock import Clock
from teamcache.errors import (
    AccessDenied,
    BucketNotFound,
    NetworkError,
    StoreError,
    sanitize_error_message,
)
from teamcache.store.base import DEFAULT_OPERATION_TIMEOUT, ObjectStore

logger = logging.getLogger(__name__)


class AzureBlobObjectStore(ObjectStore):
    """Object store backed by one Azure Blob Storage container."""

    supports_conditional_writes = True

    def __init__(
        self,
        container_name: str,
        account_url: str | None = None,
        connection_string: str | None = None,
        credential: Any = None,
        prefix: str = "",
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Clock | None = None,
        container_client: ContainerClient | None = None,
    ):
        super().__init__(prefix=prefix, operation_timeout=operation_timeout, clock=clock)
        if container_client is None and not (account_url or connection_string):
            raise ValueError("Either account_url or connection_string is required")

        self.container_name = container_name
        self._owned_credential = None
        self._service_client: BlobServiceClient | None = None

        if container_client is not None:
            self._container = container_client
        else:
            if connection_string:
                self._service_client = BlobServiceClient.from_connection_string(connection_string)
            else:
                if credential is None:
                    from azure.identity.aio import DefaultAzureCredential

                    credential = DefaultAzureCredential()
                    self._owned_credential = credential
                self._service_client = BlobServiceClient(account_url=account_url, credential=credential)
            self._container = self._service_client.get_container_client(container_name)

        logger.info(f"Azure blob store ready for container: {container_name}")

    async def close(self) -> None:
        await self._container.close()
        if self._service_client is not None:
            await self._service_client.close()
        if self._owned_credential is not None:
            await self._owned_credential.close()

    @contextmanager
    def _translate_errors(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except StoreError:
            raise
        except ClientAuthenticationError as e:
            raise AccessDenied(f"Access denied during {operation} for {key}") from e
        except ResourceNotFoundError as e:
            if _is_container_missing(e):
                raise BucketNotFound(f"Container not found: {self.container_name}") from e
            raise NetworkError(f"Unexpected not-found during {operation} for {key}") from e
        except HttpResponseError as e:
            if e.status_code == 403:
                raise AccessDenied(f"Access denied during {operation} for {key}") from e
            raise NetworkError(
                f"Service error during {operation} for {key}: {sanitize_error_message(e)}"
            ) from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise NetworkError(f"Connection error during {operation} for {key}: {e}") from e

    async def _read(self, full_key: str) -> bytes | None:
        blob = self._container.get_blob_client(full_key)
        with self._translate_errors("get", full_key):
            try:
                downloader = await blob.download_blob()
                return await downloader.readall()
            except ResourceNotFoundError as e:
                if _is_container_missing(e):
                    raise
                return None

    async def _write(self, full_key: str, data: bytes, *, content_type: str, if_absent: bool) -> bool:
        blob = self._container.get_blob_client(full_key)
        with self._translate_errors("put", full_key):
            try:
                await blob.upload_blob(
                    data,
                    overwrite=not if_absent,
                    content_settings=ContentSettings(content_type=content_type),
                )
            except ResourceExistsError:
                if if_absent:
                    logger.debug(f"Conditional write skipped, blob exists: {full_key}")
                    return False
                raise
        return True

    async def _exists(self, full_key: str) -> bool:
        blob = self._container.get_blob_client(full_key)
        with self._translate_errors("head", full_key):
            try:
                await blob.get_blob_properties()
                return True
            except ResourceNotFoundError as e:
                if _is_container_missing(e):
                    raise
                return False

    async def _remove(self, full_key: str) -> None:
        blob = self._container.get_blob_client(full_key)
        with self._translate_errors("delete", full_key):
            try:
                await blob.delete_blob()
            except ResourceNotFoundError as e:
                if _is_container_missing(e):
                    raise

    async def _list(self, full_prefix: str) -> list[str]:
        names = []
        with self._translate_errors("list", full_prefix):
            async for properties in self._container.list_blobs(name_starts_with=full_prefix or None):
                names.append(properties.name)
        return names

    async def _ping(self) -> None:
        with self._translate_errors("check_connection", self.container_name):
            try:
                await self._container.get_container_properties()
            except ResourceNotFoundError as e:
                raise BucketNotFound(f"Container not found: {self.container_name}") from e


def _is_container_missing(error: HttpResponseError) -> bool:
    error_code = getattr(error, "error_code", None)
    if error_code is not None:
        return error_code == "ContainerNotFound"
    return "ContainerNotFound" in str(error)


__all__ = ["AzureBlobObjectStore"]
