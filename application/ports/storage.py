"""Application-owned storage port abstraction (hexagonal architecture).

Defines the boundary operations the upload use cases need so that the
application layer does not depend on a concrete provider, SDK or HTTP
client. Implementations raise the domain upload exceptions.
"""
from __future__ import annotations

from typing import Callable, Optional, Protocol, Sequence, runtime_checkable
from dataclasses import dataclass, field


@dataclass
class PresignedURL:
    url: str
    method: str = "PUT"
    expires_in: int = 0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class StorageInfo:
    type: str
    bucket: Optional[str]
    region: Optional[str]


@dataclass
class UploadOutcome:
    key: str
    etag: Optional[str]
    size: int
    content_type: Optional[str] = None
    url: Optional[str] = None


@dataclass
class CompletedUpload:
    key: str
    location: Optional[str]
    etag: Optional[str]


ByteProgress = Callable[[int, int], None]


@runtime_checkable
class MultipartSessionPort(Protocol):
    """Operations on an already-initiated multipart upload."""

    def info(self) -> StorageInfo: ...

    async def sign_part_upload(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = 3600,
    ) -> PresignedURL: ...

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> CompletedUpload: ...

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None: ...


@runtime_checkable
class UploadStoragePort(MultipartSessionPort, Protocol):
    async def put_object(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadOutcome: ...

    async def presign_put(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> PresignedURL: ...

    async def initiate_multipart_upload(
        self,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str: ...


@runtime_checkable
class PartTransferPort(Protocol):
    async def transfer_part(
        self,
        url: str,
        data: bytes,
        *,
        part_number: Optional[int] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ByteProgress] = None,
    ) -> str: ...
