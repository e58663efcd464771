"""上传服务 HTTP API 客户端

客户端不持有任何存储凭证：单次直传与分片 URL 均由服务端签发，
字节通过预签名 URL 直接写入对象存储。
"""
from dataclasses import replace
from typing import Optional, Sequence

import anyio

from application.dtos.uploads import (
    CompleteMultipartResponse,
    InitiateMultipartResponse,
    PresignedUrlResponse,
    SignPartResponse,
)
from application.ports.storage import (
    CompletedUpload,
    PartTransferPort,
    PresignedURL,
    StorageInfo,
)
from application.services.multipart_coordinator import (
    MultipartOptions,
    MultipartUploadCoordinator,
)
from application.services.progress import ProgressAggregator, ProgressListener
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    InvalidUploadInputException,
    PartTransferException,
    PayloadTooLargeException,
    StorageConfigurationException,
    StorageProviderException,
)
from domain.upload import Category, UploadRequest, UploadResult, UploadSource

from .base import APIError, BaseAPIClient

logger = get_logger(__name__)

DEFAULT_MULTIPART_THRESHOLD = 50 * 1024 * 1024


class UploadAPIClient(BaseAPIClient):
    """
    上传 API 客户端

    实现 MultipartSessionPort（签名/完成/中止），可直接交给
    MultipartUploadCoordinator 驱动由服务端发起的分片上传。
    """

    def __init__(
        self,
        base_url: str,
        *,
        transfer: PartTransferPort,
        options: Optional[MultipartOptions] = None,
        multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
        api_prefix: str = "/api/v1/uploads",
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self._transfer = transfer
        self._options = options or MultipartOptions()
        self.multipart_threshold = multipart_threshold
        self.api_prefix = "/" + api_prefix.strip("/")
        self._bucket: Optional[str] = None
        self._region: Optional[str] = None

    def info(self) -> StorageInfo:
        return StorageInfo(type="remote", bucket=self._bucket, region=self._region)

    def _remember_target(self, bucket: Optional[str], region: Optional[str]) -> None:
        self._bucket = bucket or self._bucket
        self._region = region or self._region

    async def _call(self, endpoint: str, payload: dict, response_model, *, retry: bool = True):
        try:
            return await self.post_typed(
                f"{self.api_prefix}/{endpoint}", response_model, json_data=payload, retry=retry
            )
        except APIError as exc:
            raise self._to_domain(exc, endpoint) from exc

    def _to_domain(self, exc: APIError, operation: str) -> BusinessException:
        """按服务端统一错误响应中的 error.type 还原领域异常"""
        body = exc.response.data if exc.response is not None else None
        error = body.get("error") if isinstance(body, dict) else None
        error = error if isinstance(error, dict) else {}
        error_type = error.get("type")
        details = error.get("details") or {}
        status = exc.status_code

        if status == 413 or error_type == "PayloadTooLarge":
            return PayloadTooLargeException(
                int(details.get("size") or 0),
                int(details.get("limit") or 0),
                category=details.get("category"),
            )
        if error_type == "ConfigurationError":
            return StorageConfigurationException(exc.message)
        if status in (400, 422) or error_type in ("InvalidInput", "ValidationError"):
            return InvalidUploadInputException(exc.message, field=error.get("field"), details=details or None)
        return StorageProviderException(exc.message, operation=operation, details={"status_code": status})

    # ------------------------------------------------------------------
    # Signing endpoints
    # ------------------------------------------------------------------
    async def presign_direct_upload(
        self,
        file_name: str,
        category: Category | str,
        *,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> PresignedUrlResponse:
        payload = {"fileName": file_name, "type": Category.parse(category).value}
        if content_type:
            payload["contentType"] = content_type
        if size is not None:
            payload["size"] = size
        ticket = await self._call("presigned-url", payload, PresignedUrlResponse, retry=False)
        self._remember_target(ticket.bucket, ticket.region)
        return ticket

    async def initiate(
        self,
        file_name: str,
        category: Category | str,
        *,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> InitiateMultipartResponse:
        payload = {"fileName": file_name, "type": Category.parse(category).value}
        if content_type:
            payload["contentType"] = content_type
        if size is not None:
            payload["size"] = size
        # 发起非幂等：重发会在服务端留下无人中止的分片上传
        ticket = await self._call("multipart/initiate", payload, InitiateMultipartResponse, retry=False)
        self._remember_target(ticket.bucket, ticket.region)
        return ticket

    async def sign_part_upload(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = 3600,
    ) -> PresignedURL:
        signed = await self._call(
            "multipart/sign",
            {"key": key, "uploadId": upload_id, "partNumber": part_number, "expiresIn": expires_in},
            SignPartResponse,
        )
        return PresignedURL(url=signed.url, method=signed.method, expires_in=signed.expires_in)

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> CompletedUpload:
        completed = await self._call(
            "multipart/complete",
            {
                "key": key,
                "uploadId": upload_id,
                "parts": [{"PartNumber": n, "ETag": etag} for n, etag in parts],
            },
            CompleteMultipartResponse,
        )
        return CompletedUpload(key=completed.key, location=completed.location, etag=completed.etag)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            await self.post(f"{self.api_prefix}/multipart/abort", json_data={"key": key, "uploadId": upload_id})
        except APIError as exc:
            raise self._to_domain(exc, "multipart/abort") from exc

    # ------------------------------------------------------------------
    # High level upload
    # ------------------------------------------------------------------
    async def upload(
        self,
        source: UploadSource,
        category: Category | str,
        file_name: str,
        *,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> UploadResult:
        """上传 source：不超过阈值走预签名单次直传，否则走分片上传"""
        cat = Category.parse(category)
        size = source.size
        if size <= 0:
            raise InvalidUploadInputException("File is empty", field="size")

        if size > self.multipart_threshold:
            return await self._upload_multipart(source, cat, file_name, content_type, on_progress)

        ticket = await self.presign_direct_upload(file_name, cat, content_type=content_type, size=size)
        progress = ProgressAggregator(size)
        if on_progress is not None:
            progress.subscribe(on_progress)

        def _on_bytes(loaded: int, total: int) -> None:
            progress.on_part_progress(1, loaded, total)

        data = await source.read_all()
        timeout = self._options.part_timeout(size)
        try:
            with anyio.fail_after(timeout):
                etag = await self._transfer.transfer_part(
                    ticket.url,
                    data,
                    content_type=ticket.headers.get("Content-Type") or ticket.content_type,
                    timeout=timeout,
                    on_progress=_on_bytes,
                )
        except TimeoutError as exc:
            raise PartTransferException(f"Direct upload timed out after {timeout:.0f}s") from exc
        progress.mark_part_complete(1, size)
        logger.info("remote_direct_upload_completed", key=ticket.key, size=size)
        return UploadResult(
            key=ticket.key,
            size=size,
            content_type=ticket.content_type,
            etag=etag.strip('"'),
            bucket=ticket.bucket,
            region=ticket.region,
        )

    async def _upload_multipart(
        self,
        source: UploadSource,
        category: Category,
        file_name: str,
        content_type: Optional[str],
        on_progress: Optional[ProgressListener],
    ) -> UploadResult:
        ticket = await self.initiate(file_name, category, content_type=content_type, size=source.size)
        options = replace(
            self._options,
            part_size=ticket.part_size,
            part_url_expiry_seconds=ticket.part_url_expiry_seconds,
        )
        progress = ProgressAggregator(source.size)
        if on_progress is not None:
            progress.subscribe(on_progress)
        coordinator = MultipartUploadCoordinator(
            self,
            self._transfer,
            UploadRequest(source=source, category=category, file_name=file_name, content_type=ticket.content_type),
            ticket.key,
            ticket.content_type,
            options,
            progress=progress,
            upload_id=ticket.upload_id,
        )
        return await coordinator.run()
