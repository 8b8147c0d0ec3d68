"""Unit tests for the Azure Blob backend with a mocked container client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from teamcache.errors import AccessDenied, BucketNotFound, NetworkError
from teamcache.store.azure_blob import AzureBlobObjectStore


class _AsyncIter:
    def __init__(self, items):
        self._items = iter(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._items)
        except StopIteration:
            raise StopAsyncIteration from None


def _not_found(error_code: str) -> ResourceNotFoundError:
    error = ResourceNotFoundError(message=f"{error_code}: resource does not exist")
    error.error_code = error_code
    return error


@pytest.fixture
def blob():
    client = MagicMock()
    client.download_blob = AsyncMock()
    client.upload_blob = AsyncMock()
    client.get_blob_properties = AsyncMock()
    client.delete_blob = AsyncMock()
    return client


@pytest.fixture
def container(blob):
    client = MagicMock()
    client.get_blob_client.return_value = blob
    client.get_container_properties = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def azure_store(container, clock):
    return AzureBlobObjectStore("costs", prefix="team-cache", clock=clock, container_client=container)


class TestAzureBlobReads:
    """Tests for reads and existence checks."""

    @pytest.mark.asyncio
    async def test_read_returns_body(self, azure_store, container, blob):
        downloader = MagicMock()
        downloader.readall = AsyncMock(return_value=b'{"holder": "alice"}')
        blob.download_blob.return_value = downloader

        assert await azure_store.get_document("teams/a/cache.lock") == {"holder": "alice"}
        container.get_blob_client.assert_called_with("team-cache/teams/a/cache.lock")

    @pytest.mark.asyncio
    async def test_missing_blob_is_none(self, azure_store, blob):
        blob.download_blob.side_effect = _not_found("BlobNotFound")
        assert await azure_store.get_document("teams/a/cache.lock") is None

    @pytest.mark.asyncio
    async def test_missing_container_is_bucket_not_found(self, azure_store, blob):
        blob.download_blob.side_effect = _not_found("ContainerNotFound")
        with pytest.raises(BucketNotFound):
            await azure_store.get_document("teams/a/cache.lock")

    @pytest.mark.asyncio
    async def test_head(self, azure_store, blob):
        assert await azure_store.head("teams/a/cache.lock")
        blob.get_blob_properties.side_effect = _not_found("BlobNotFound")
        assert not await azure_store.head("teams/a/cache.lock")


class TestAzureBlobWrites:
    """Tests for uploads, including conditional writes."""

    @pytest.mark.asyncio
    async def test_unconditional_write_overwrites(self, azure_store, blob):
        assert await azure_store.put_document("teams/a/cache.lock", {"holder": "x"})

        kwargs = blob.upload_blob.call_args.kwargs
        assert kwargs["overwrite"] is True
        assert kwargs["content_settings"].content_type == "application/json"

    @pytest.mark.asyncio
    async def test_conditional_write_refused_when_blob_exists(self, azure_store, blob):
        """Test overwrite=False maps the service's 409 to a refused write."""
        blob.upload_blob.side_effect = ResourceExistsError(message="BlobAlreadyExists")

        assert not await azure_store.put_document("teams/a/cache.lock", {"holder": "x"}, if_absent=True)
        assert blob.upload_blob.call_args.kwargs["overwrite"] is False

    @pytest.mark.asyncio
    async def test_delete_of_missing_blob_is_ignored(self, azure_store, blob):
        blob.delete_blob.side_effect = _not_found("BlobNotFound")
        await azure_store.delete("teams/a/cache.lock")


class TestAzureBlobErrors:
    """Tests for error translation."""

    @pytest.mark.asyncio
    async def test_authentication_failure_is_access_denied(self, azure_store, blob):
        blob.download_blob.side_effect = ClientAuthenticationError(message="bad token")
        with pytest.raises(AccessDenied):
            await azure_store.get_document("x.json")

    @pytest.mark.asyncio
    async def test_http_403_is_access_denied(self, azure_store, blob):
        error = HttpResponseError(message="This request is not authorized")
        error.status_code = 403
        blob.upload_blob.side_effect = error
        with pytest.raises(AccessDenied):
            await azure_store.put_document("x.json", {})

    @pytest.mark.asyncio
    async def test_connection_failure_is_network_error(self, azure_store, blob):
        blob.get_blob_properties.side_effect = ServiceRequestError(message="connection refused")
        with pytest.raises(NetworkError):
            await azure_store.head("x.json")
        assert azure_store.statistics.errors == 1

    @pytest.mark.asyncio
    async def test_service_error_message_is_sanitized(self, azure_store, blob):
        error = HttpResponseError(message="failed for url ?sv=2024&sig=SECRETVALUE")
        error.status_code = 500
        blob.download_blob.side_effect = error

        with pytest.raises(NetworkError) as exc_info:
            await azure_store.get_document("x.json")
        assert "SECRETVALUE" not in str(exc_info.value)


class TestAzureBlobContainer:
    """Tests for listing, probing and lifecycle."""

    @pytest.mark.asyncio
    async def test_list_strips_prefix(self, azure_store, container):
        container.list_blobs = MagicMock(
            return_value=_AsyncIter(
                [
                    SimpleNamespace(name="team-cache/teams/b/cache.lock"),
                    SimpleNamespace(name="team-cache/teams/a/cache.lock"),
                ]
            )
        )

        assert await azure_store.list("teams/") == ["teams/a/cache.lock", "teams/b/cache.lock"]
        container.list_blobs.assert_called_once_with(name_starts_with="team-cache/teams/")

    @pytest.mark.asyncio
    async def test_check_connection_missing_container(self, azure_store, container):
        container.get_container_properties.side_effect = _not_found("ContainerNotFound")
        with pytest.raises(BucketNotFound):
            await azure_store.check_connection()

    @pytest.mark.asyncio
    async def test_close_closes_container(self, azure_store, container):
        await azure_store.close()
        container.close.assert_awaited_once()

    def test_requires_location(self):
        with pytest.raises(ValueError):
            AzureBlobObjectStore("costs")
