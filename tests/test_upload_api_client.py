import httpx
import pytest

from application.services.multipart_coordinator import MultipartOptions
from application.services.upload_service import UploadApplicationService
from application.utils.sources import BytesSource
from core.config import UploadSettings
from domain.common.exceptions import (
    InvalidUploadInputException,
    PartTransferException,
    PayloadTooLargeException,
    StorageProviderException,
)
from infrastructure.external.api_clients import UploadAPIClient
from infrastructure.external.api_clients.base import APIError, BaseAPIClient, NotFoundError
from main import create_app


@pytest.fixture
def server_app(storage, transfer, fast_options):
    app = create_app()
    app.state.upload_service = UploadApplicationService(
        storage=storage,
        transfer=transfer,
        upload_settings=UploadSettings(max_size={"dem": 100_000, "video": 100_000}),
        options=fast_options,
    )
    return app


@pytest.fixture
def api_client(server_app, transfer):
    return UploadAPIClient(
        "http://testserver",
        transfer=transfer,
        multipart_threshold=2048,
        retry_delay=0,
        transport=httpx.ASGITransport(app=server_app),
    )


@pytest.mark.asyncio
async def test_small_file_uses_presigned_put(api_client, storage, transfer):
    seen = []
    async with api_client:
        result = await api_client.upload(
            BytesSource(b"d" * 1500), "dem", "match.dem", on_progress=lambda p: seen.append(p.percentage)
        )
    assert result.key.startswith("uploads/dem/")
    assert result.etag == "etag-None"
    assert storage.calls == ["presign_put"]
    assert transfer.content_types == ["application/octet-stream"]
    assert seen[-1] == 100


@pytest.mark.asyncio
async def test_large_file_uses_server_initiated_multipart(api_client, storage):
    async with api_client:
        result = await api_client.upload(BytesSource(b"v" * 5000), "video", "clip.mp4")

    assert result.upload_id == "upload-1"
    assert storage.calls == ["initiate_multipart_upload", "complete_multipart_upload"]
    assert storage.complete_calls[0] == [(n, f"etag-{n}") for n in range(1, 6)]
    assert api_client.info().bucket == "replays-test"


@pytest.mark.asyncio
async def test_server_errors_are_restored_as_domain_errors(api_client):
    async with api_client:
        with pytest.raises(PayloadTooLargeException) as exc_info:
            await api_client.presign_direct_upload("big.dem", "dem", size=200_000)
        assert exc_info.value.limit == 100_000

        with pytest.raises(InvalidUploadInputException):
            await api_client.sign_part_upload("private/key", "u", 1)


@pytest.mark.asyncio
async def test_empty_source_rejected_locally(api_client, storage):
    with pytest.raises(InvalidUploadInputException):
        await api_client.upload(BytesSource(b""), "dem", "e.dem")
    assert storage.calls == []


@pytest.mark.asyncio
async def test_gateway_failure_becomes_provider_error(transfer):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"code": 60006, "message": "upstream", "error": {"type": "ProviderError"}})

    client = UploadAPIClient(
        "http://api", transfer=transfer, max_retries=1, retry_delay=0, transport=httpx.MockTransport(handler)
    )
    with pytest.raises(StorageProviderException) as exc_info:
        await client.abort_multipart_upload("uploads/dem/k", "u")
    assert exc_info.value.details["status_code"] == 502
    await client.close()


@pytest.mark.asyncio
async def test_base_client_retries_transient_status():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"code": 0, "data": {"ok": True}})

    async with BaseAPIClient("http://api", retry_delay=0, transport=httpx.MockTransport(handler)) as client:
        response = await client.get("/ping")
    assert response.json()["data"] == {"ok": True}
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_base_client_does_not_retry_client_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(404, json={"message": "missing"})

    async with BaseAPIClient("http://api", retry_delay=0, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NotFoundError) as exc_info:
            await client.get("/missing")
    assert exc_info.value.message == "missing"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_base_client_network_error_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with BaseAPIClient("http://api", max_retries=1, retry_delay=0, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(APIError, match="Network error"):
            await client.get("/ping")


INITIATE_PATH = "/api/v1/uploads/multipart/initiate"
INITIATE_DATA = {
    "key": "uploads/video/1718000000000-abcdefgh-c.mp4",
    "upload_id": "upload-9",
    "content_type": "video/mp4",
    "part_size": 1024,
    "part_url_expiry_seconds": 3600,
}


def _initiate_handler(first_error, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path == INITIATE_PATH and len(seen) == 1:
            raise first_error(request)
        if request.url.path == INITIATE_PATH:
            return httpx.Response(200, json={"code": 0, "message": "success", "data": INITIATE_DATA})
        return httpx.Response(404, json={"message": "unexpected"})

    return handler


@pytest.mark.asyncio
async def test_initiate_not_resent_after_read_timeout(transfer):
    seen = []
    handler = _initiate_handler(lambda request: httpx.ReadTimeout("timed out", request=request), seen)
    client = UploadAPIClient(
        "http://api",
        transfer=transfer,
        multipart_threshold=1024,
        retry_delay=0,
        transport=httpx.MockTransport(handler),
    )
    async with client:
        with pytest.raises(StorageProviderException) as exc_info:
            await client.upload(BytesSource(b"x" * 2048), "video", "c.mp4")

    assert exc_info.value.operation == "multipart/initiate"
    assert seen == [INITIATE_PATH]
    assert not transfer.attempts


@pytest.mark.asyncio
async def test_initiate_resent_when_connection_never_opened(transfer):
    seen = []
    handler = _initiate_handler(lambda request: httpx.ConnectError("refused", request=request), seen)
    client = UploadAPIClient("http://api", transfer=transfer, retry_delay=0, transport=httpx.MockTransport(handler))
    async with client:
        ticket = await client.initiate("c.mp4", "video", size=2048)

    assert ticket.upload_id == "upload-9"
    assert seen == [INITIATE_PATH, INITIATE_PATH]


@pytest.mark.asyncio
async def test_presigned_url_not_resent_after_server_error(transfer):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(503, json={"message": "unavailable"})

    client = UploadAPIClient("http://api", transfer=transfer, retry_delay=0, transport=httpx.MockTransport(handler))
    async with client:
        with pytest.raises(StorageProviderException) as exc_info:
            await client.presign_direct_upload("m.dem", "dem", size=10)

    assert exc_info.value.details["status_code"] == 503
    assert seen == ["/api/v1/uploads/presigned-url"]


@pytest.mark.asyncio
async def test_direct_upload_is_bounded_by_part_timeout(server_app, transfer):
    transfer.delays = {None: 1.0}
    client = UploadAPIClient(
        "http://testserver",
        transfer=transfer,
        options=MultipartOptions(part_timeout_seconds=0.05, part_timeout_max_seconds=0.05),
        multipart_threshold=2048,
        retry_delay=0,
        transport=httpx.ASGITransport(app=server_app),
    )
    async with client:
        with pytest.raises(PartTransferException) as exc_info:
            await client.upload(BytesSource(b"d" * 1500), "dem", "match.dem")

    assert "timed out" in exc_info.value.message
    assert transfer.timeouts == [0.05]
    assert transfer.completed == []
