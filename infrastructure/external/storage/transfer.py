"""Direct PUT of byte ranges to presigned URLs."""
from __future__ import annotations

from typing import AsyncIterator, Callable, Optional

import httpx

from core.logging_config import get_logger
from .exceptions import ExpiredSignatureError, PartUploadError, StorageError, TransientError

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]

# Body is streamed in slices so progress can be reported while sending.
STREAM_CHUNK_SIZE = 256 * 1024
_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class PresignedTransfer:
    """Sends request bodies to query-authenticated URLs.

    No authentication header is added; everything needed is in the URL.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        chunk_size: int = STREAM_CHUNK_SIZE,
        verify_ssl: bool = True,
    ):
        self._client = client
        self._owns_client = client is None
        self._verify_ssl = verify_ssl
        self.chunk_size = chunk_size

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=self._verify_ssl, timeout=None)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PresignedTransfer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _body(self, data: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        total = len(data)
        sent = 0
        view = memoryview(data)
        while sent < total:
            chunk = bytes(view[sent:sent + self.chunk_size])
            yield chunk
            sent += len(chunk)
            if on_progress is not None:
                on_progress(sent, total)

    async def put(
        self,
        url: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """PUT ``data`` to ``url`` and return the ETag the provider assigned."""
        headers = {"Content-Length": str(len(data))}
        if content_type:
            headers["Content-Type"] = content_type

        client = await self._get_client()
        try:
            response = await client.put(
                url,
                content=self._body(data, on_progress),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"Presigned PUT timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Network error during presigned PUT: {exc}") from exc

        if response.is_success:
            etag = response.headers.get("ETag")
            if not etag:
                raise StorageError("Provider returned no ETag for presigned PUT")
            return etag

        body = response.text
        if response.status_code == 403 and "expired" in body.lower():
            raise ExpiredSignatureError("Presigned URL has expired", status_code=403)
        logger.warning(
            "presigned_put_rejected",
            status_code=response.status_code,
            body=body[:512],
        )
        if response.status_code in _RETRYABLE_STATUS:
            raise TransientError(f"Presigned PUT failed with status {response.status_code}")
        raise PartUploadError(
            f"Presigned PUT failed with status {response.status_code}",
            status_code=response.status_code,
        )
