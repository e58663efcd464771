import httpx
import pytest

from infrastructure.external.storage import (
    ExpiredSignatureError,
    PartUploadError,
    PresignedTransfer,
    StorageError,
    TransientError,
)

URL = "https://replays.s3.us-east-1.amazonaws.com/uploads/dem/k?partNumber=1&uploadId=u&X-Amz-Signature=abc"


def _transfer(handler, **kwargs) -> PresignedTransfer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PresignedTransfer(client, **kwargs)


@pytest.mark.asyncio
async def test_put_streams_body_and_returns_etag():
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = await request.aread()
        seen["headers"] = request.headers
        return httpx.Response(200, headers={"ETag": '"abc123"'})

    transfer = _transfer(handler, chunk_size=256)
    progress = []
    payload = b"p" * 1000
    etag = await transfer.put(
        URL, payload, content_type="application/octet-stream",
        on_progress=lambda loaded, total: progress.append((loaded, total)),
    )

    assert etag == '"abc123"'
    assert seen["method"] == "PUT"
    assert seen["body"] == payload
    assert seen["headers"]["Content-Length"] == "1000"
    assert seen["headers"]["Content-Type"] == "application/octet-stream"
    assert "Authorization" not in seen["headers"]
    assert progress == [(256, 1000), (512, 1000), (768, 1000), (1000, 1000)]


@pytest.mark.asyncio
async def test_expired_signature_detected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            text="<Error><Code>AccessDenied</Code><Message>Request has expired</Message></Error>",
        )

    with pytest.raises(ExpiredSignatureError) as exc_info:
        await _transfer(handler).put(URL, b"x")
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_server_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="SlowDown")

    with pytest.raises(TransientError):
        await _transfer(handler).put(URL, b"x")


@pytest.mark.asyncio
async def test_client_error_is_part_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="<Error><Code>InvalidPart</Code></Error>")

    with pytest.raises(PartUploadError) as exc_info:
        await _transfer(handler).put(URL, b"x")
    assert not isinstance(exc_info.value, ExpiredSignatureError)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    with pytest.raises(TransientError):
        await _transfer(handler).put(URL, b"x")


@pytest.mark.asyncio
async def test_missing_etag_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    with pytest.raises(StorageError):
        await _transfer(handler).put(URL, b"x")
