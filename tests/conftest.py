"""Pytest bootstrap configuration.

Set environment defaults before modules that read application settings
are imported, and provide in-memory fakes for the storage ports.
"""
import os
from collections import Counter, defaultdict
from typing import Optional

import anyio
import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("STORAGE__BUCKET", "replays-test")
os.environ.setdefault("STORAGE__REGION", "us-east-1")

from application.ports.storage import (  # noqa: E402
    CompletedUpload,
    PresignedURL,
    StorageInfo,
    UploadOutcome,
)
from application.services.multipart_coordinator import MultipartOptions  # noqa: E402
from domain.common.exceptions import PartTransferException  # noqa: E402


class FakeStorage:
    """In-memory UploadStoragePort recording every call."""

    def __init__(self, bucket: str = "replays-test", region: str = "us-east-1"):
        self.bucket = bucket
        self.region = region
        self.upload_id = "upload-1"
        self.calls: list[str] = []
        self.objects: dict[str, tuple[bytes, Optional[str], Optional[dict]]] = {}
        self.initiated: list[tuple[str, Optional[str], Optional[dict]]] = []
        self.sign_counts: Counter = Counter()
        self.signed_urls: dict[int, list[str]] = defaultdict(list)
        self.complete_calls: list[list[tuple[int, str]]] = []
        self.abort_calls: list[tuple[str, str]] = []
        self.fail_put: Optional[Exception] = None
        self.fail_initiate: Optional[Exception] = None
        self.fail_complete: Optional[Exception] = None
        self.fail_abort: Optional[Exception] = None

    def info(self) -> StorageInfo:
        return StorageInfo(type="fake", bucket=self.bucket, region=self.region)

    async def put_object(self, key, data, content_type=None, metadata=None) -> UploadOutcome:
        self.calls.append("put_object")
        if self.fail_put is not None:
            raise self.fail_put
        self.objects[key] = (data, content_type, metadata)
        return UploadOutcome(
            key=key,
            etag="etag-direct",
            size=len(data),
            content_type=content_type,
            url=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}",
        )

    async def presign_put(self, key, content_type=None, expires_in=3600) -> PresignedURL:
        self.calls.append("presign_put")
        return PresignedURL(
            url=f"https://signed.example/{key}?X-Amz-Expires={expires_in}",
            method="PUT",
            expires_in=expires_in,
            headers={"Content-Type": content_type} if content_type else {},
        )

    async def initiate_multipart_upload(self, key, content_type=None, metadata=None) -> str:
        self.calls.append("initiate_multipart_upload")
        if self.fail_initiate is not None:
            raise self.fail_initiate
        self.initiated.append((key, content_type, metadata))
        return self.upload_id

    async def sign_part_upload(self, key, upload_id, part_number, expires_in=3600) -> PresignedURL:
        self.sign_counts[part_number] += 1
        url = (
            f"https://signed.example/{key}?partNumber={part_number}"
            f"&uploadId={upload_id}&attempt={self.sign_counts[part_number]}"
        )
        self.signed_urls[part_number].append(url)
        return PresignedURL(url=url, method="PUT", expires_in=expires_in)

    async def complete_multipart_upload(self, key, upload_id, parts) -> CompletedUpload:
        self.calls.append("complete_multipart_upload")
        self.complete_calls.append(list(parts))
        if self.fail_complete is not None:
            raise self.fail_complete
        return CompletedUpload(
            key=key,
            location=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}",
            etag=f"final-{len(parts)}",
        )

    async def abort_multipart_upload(self, key, upload_id) -> None:
        self.calls.append("abort_multipart_upload")
        self.abort_calls.append((key, upload_id))
        if self.fail_abort is not None:
            raise self.fail_abort


class FakeTransfer:
    """PartTransferPort that records attempts and can fail or stall per part."""

    def __init__(self):
        self.attempts: dict[Optional[int], list[str]] = defaultdict(list)
        self.completed: list[Optional[int]] = []
        self.failures: dict[int, int] = {}
        self.errors: dict[int, Exception] = {}
        self.delays: dict[int, float] = {}
        self.active = 0
        self.max_active = 0
        self.content_types: list[Optional[str]] = []
        self.timeouts: list[Optional[float]] = []

    async def transfer_part(
        self,
        url,
        data,
        *,
        part_number=None,
        content_type=None,
        timeout=None,
        on_progress=None,
    ) -> str:
        self.attempts[part_number].append(url)
        self.content_types.append(content_type)
        self.timeouts.append(timeout)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await anyio.sleep(self.delays.get(part_number, 0))
            if on_progress is not None:
                on_progress(len(data) // 2, len(data))
            if self.failures.get(part_number, 0) > 0:
                self.failures[part_number] -= 1
                raise self.errors.get(
                    part_number,
                    PartTransferException("connection reset", part_number=part_number),
                )
            if on_progress is not None:
                on_progress(len(data), len(data))
            self.completed.append(part_number)
            return f'"etag-{part_number}"'
        finally:
            self.active -= 1


class SizedSource:
    """Reports a size without holding any bytes; reading is a test failure."""

    def __init__(self, size: int):
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    async def read_range(self, start: int, end: int) -> bytes:
        raise AssertionError("source must not be read")

    async def read_all(self) -> bytes:
        raise AssertionError("source must not be read")


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def transfer() -> FakeTransfer:
    return FakeTransfer()


@pytest.fixture
def fast_options() -> MultipartOptions:
    """Tiny parts and no backoff so multipart tests stay fast."""
    return MultipartOptions(
        part_size=1024,
        max_concurrency=4,
        max_part_attempts=3,
        retry_backoff_initial=0,
        retry_backoff_max=0,
        retry_backoff_jitter=0,
        part_timeout_seconds=5,
        part_timeout_max_seconds=5,
    )


@pytest.fixture
def sized_source():
    return SizedSource
