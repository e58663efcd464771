"""Infrastructure adapters that implement the application storage ports
by delegating to the S3 provider / presigned transfer, translating models
and mapping storage exceptions onto the domain upload taxonomy.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from application.ports.storage import (
    ByteProgress,
    CompletedUpload,
    PartTransferPort,
    PresignedURL,
    StorageInfo,
    UploadOutcome,
    UploadStoragePort,
)
from domain.common.exceptions import (
    PartTransferException,
    SignatureExpiredException,
    StorageConfigurationException,
    StorageProviderException,
)
from infrastructure.external.storage import (
    ConfigurationError,
    ExpiredSignatureError,
    PartUploadError,
    PresignedTransfer,
    S3Provider,
    StorageError,
)


@contextmanager
def _provider_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ConfigurationError as exc:
        raise StorageConfigurationException(str(exc)) from exc
    except StorageError as exc:
        raise StorageProviderException(str(exc), operation=operation) from exc


class S3StoragePortAdapter(UploadStoragePort):
    def __init__(self, provider: S3Provider):
        self.provider = provider

    def info(self) -> StorageInfo:
        cfg = self.provider.config
        return StorageInfo(type="s3", bucket=cfg.bucket, region=cfg.region)

    async def put_object(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> UploadOutcome:
        with _provider_errors("put_object"):
            result = await self.provider.upload(data, key, metadata=metadata, content_type=content_type)
        return UploadOutcome(
            key=result.key,
            etag=result.etag,
            size=result.size,
            content_type=result.content_type,
            url=result.url,
        )

    async def presign_put(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> PresignedURL:
        with _provider_errors("presign_put"):
            presigned = await self.provider.generate_presigned_url(
                key, expires_in=expires_in, method="PUT", content_type=content_type
            )
        return PresignedURL(
            url=presigned.url,
            method=presigned.method,
            expires_in=presigned.expires_in,
            headers=dict(presigned.headers),
        )

    async def initiate_multipart_upload(
        self,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        with _provider_errors("initiate_multipart_upload"):
            return await self.provider.multipart_upload_start(key, content_type, metadata)

    async def sign_part_upload(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = 3600,
    ) -> PresignedURL:
        with _provider_errors("sign_part_upload"):
            presigned = self.provider.multipart_sign_part(key, upload_id, part_number, expires_in)
        return PresignedURL(url=presigned.url, method="PUT", expires_in=presigned.expires_in)

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> CompletedUpload:
        payload = [{"PartNumber": n, "ETag": etag} for n, etag in parts]
        with _provider_errors("complete_multipart_upload"):
            completion = await self.provider.multipart_upload_complete(upload_id, key, payload)
        return CompletedUpload(key=completion.key, location=completion.location, etag=completion.etag)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        with _provider_errors("abort_multipart_upload"):
            await self.provider.multipart_upload_abort(upload_id, key)


class PresignedTransferPortAdapter(PartTransferPort):
    def __init__(self, transfer: PresignedTransfer):
        self.transfer = transfer

    async def transfer_part(
        self,
        url: str,
        data: bytes,
        *,
        part_number: Optional[int] = None,
        content_type: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ByteProgress] = None,
    ) -> str:
        try:
            return await self.transfer.put(
                url, data, content_type=content_type, timeout=timeout, on_progress=on_progress
            )
        except ExpiredSignatureError as exc:
            raise SignatureExpiredException(str(exc), part_number=part_number) from exc
        except PartUploadError as exc:
            raise PartTransferException(
                str(exc), part_number=part_number, status_code=exc.status_code
            ) from exc
        except StorageError as exc:
            raise PartTransferException(str(exc), part_number=part_number) from exc
