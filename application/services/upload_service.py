"""Upload orchestration (application/services).

Bridges callers (HTTP routes, scripts) and the storage ports: key
generation, validation, single-shot vs. multipart path selection and
classification of unexpected failures.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, Sequence
from urllib.parse import quote

from application.ports.storage import (
    CompletedUpload,
    PartTransferPort,
    PresignedURL,
    UploadStoragePort,
)
from application.services.multipart_coordinator import (
    MultipartOptions,
    MultipartUploadCoordinator,
)
from application.services.progress import ProgressAggregator
from application.utils.compression import GZIP_CONTENT_TYPE, GZIP_SUFFIX, gzip_source
from application.utils.storage import KEY_PREFIX, generate_key
from core.config import UploadSettings, settings
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    InvalidUploadInputException,
    PayloadTooLargeException,
    StorageConfigurationException,
    StorageProviderException,
)
from domain.upload import (
    MAX_PARTS,
    Category,
    StorageKey,
    UploadProgress,
    UploadRequest,
    UploadResult,
)

logger = get_logger(__name__)

FALLBACK_CONTENT_TYPE = "application/octet-stream"

ProgressCallback = Callable[[UploadProgress], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _classified(operation: str) -> Iterator[None]:
    """Let taxonomy errors through; anything else becomes a provider error."""
    try:
        yield
    except BusinessException:
        raise
    except Exception as exc:
        logger.error("upload_unexpected_error", operation=operation, error=str(exc), exc_info=True)
        raise StorageProviderException(str(exc) or type(exc).__name__, operation=operation) from exc


@dataclass
class DirectUploadTicket:
    key: StorageKey
    url: str
    method: str
    expires_in: int
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)
    bucket: Optional[str] = None
    region: Optional[str] = None


@dataclass
class MultipartTicket:
    key: StorageKey
    upload_id: str
    content_type: str
    part_size: int
    part_url_expiry_seconds: int
    bucket: Optional[str] = None
    region: Optional[str] = None


class UploadApplicationService:
    """Entry point for uploading replay (.dem) and video files."""

    def __init__(
        self,
        storage: UploadStoragePort,
        transfer: PartTransferPort | None = None,
        upload_settings: UploadSettings | None = None,
        options: MultipartOptions | None = None,
    ):
        self._storage = storage
        self._transfer = transfer
        self._settings = upload_settings or settings.upload
        self._options = options or MultipartOptions.from_settings(self._settings)

    @property
    def options(self) -> MultipartOptions:
        return self._options

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def generate_key(self, file_name: str, category: Category | str) -> StorageKey:
        return generate_key(file_name, category)

    def resolve_content_type(self, category: Category | str, content_type: Optional[str] = None) -> str:
        cat = Category.parse(category)
        ctype = (content_type or "").split(";")[0].strip().lower()
        if not ctype:
            ctype = self._settings.default_content_types.get(cat.value, FALLBACK_CONTENT_TYPE)
        allowed = (self._settings.allowed_content_types or {}).get(cat.value)
        if allowed and ctype not in allowed:
            raise InvalidUploadInputException(
                f"Content type {ctype} is not accepted for {cat.value} uploads",
                field="content_type",
                details={"content_type": ctype, "allowed": list(allowed)},
            )
        return ctype

    def max_size(self, category: Category | str) -> Optional[int]:
        return self._settings.max_size.get(Category.parse(category).value)

    def check_size(self, category: Category | str, size: int) -> None:
        cat = Category.parse(category)
        if size <= 0:
            raise InvalidUploadInputException("File is empty", field="size")
        limit = self.max_size(cat)
        if limit and size > limit:
            raise PayloadTooLargeException(size, limit, category=cat.value)

    def build_metadata(self, file_name: str, category: Category | str) -> dict[str, str]:
        # S3 user metadata travels as headers and must stay ASCII.
        return {
            "original-name": quote(file_name or "", safe=" ._-()[]"),
            "uploaded-at": _utcnow().isoformat(),
            "file-type": Category.parse(category).value,
        }

    def _check_key(self, key: str) -> None:
        if not key or not key.startswith(f"{KEY_PREFIX}/") or ".." in key.split("/"):
            raise InvalidUploadInputException("Unknown upload key", field="key")

    def _check_upload_id(self, upload_id: str) -> None:
        if not upload_id or not upload_id.strip():
            raise InvalidUploadInputException("upload_id is required", field="upload_id")

    # ------------------------------------------------------------------
    # Upload paths
    # ------------------------------------------------------------------
    async def upload(
        self,
        request: UploadRequest,
        *,
        on_progress: Optional[ProgressCallback] = None,
        compress: Optional[bool] = None,
        on_compress_progress: Optional[Callable[[int], None]] = None,
    ) -> UploadResult:
        """Upload ``request`` picking single-shot or multipart by size.

        With compression on, the source is gzipped first and the resulting
        size drives the path choice.
        """
        if request.size <= 0:
            raise InvalidUploadInputException("File is empty", field="size")
        compress = self._settings.compress if compress is None else compress
        if not compress:
            return await self._upload_selected(request, on_progress)

        with _classified("compress"):
            async with gzip_source(request.source, on_progress=on_compress_progress) as gz:
                compressed = UploadRequest(
                    source=gz,
                    category=request.category,
                    file_name=f"{request.file_name}{GZIP_SUFFIX}",
                    content_type=GZIP_CONTENT_TYPE,
                )
                logger.info(
                    "upload_source_compressed",
                    file_name=request.file_name,
                    original_size=request.size,
                    compressed_size=gz.size,
                )
                return await self._upload_selected(compressed, on_progress)

    async def _upload_selected(
        self, request: UploadRequest, on_progress: Optional[ProgressCallback]
    ) -> UploadResult:
        if request.size <= self._settings.multipart_threshold:
            return await self.upload_direct(request, on_progress=on_progress)
        coordinator = self.create_multipart_coordinator(request, on_progress=on_progress)
        with _classified("multipart_upload"):
            return await coordinator.run()

    async def upload_direct(
        self,
        request: UploadRequest,
        *,
        key: Optional[StorageKey] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Single PUT of the whole payload. Every call writes a fresh key."""
        cat = Category.parse(request.category)
        size = request.size
        self.check_size(cat, size)
        ctype = self.resolve_content_type(cat, request.content_type)
        key = key or self.generate_key(request.file_name, cat)
        progress = ProgressAggregator(size)
        if on_progress is not None:
            progress.subscribe(on_progress)

        with _classified("put_object"):
            data = await request.source.read_all()
            outcome = await self._storage.put_object(
                key, data, ctype, self.build_metadata(request.file_name, cat)
            )
        progress.mark_part_complete(1, size)

        info = self._storage.info()
        logger.info("upload_direct_completed", key=key, size=size, content_type=ctype, etag=outcome.etag)
        return UploadResult(
            key=key,
            size=size,
            content_type=ctype,
            etag=outcome.etag,
            location=outcome.url,
            bucket=info.bucket,
            region=info.region,
        )

    def create_multipart_coordinator(
        self,
        request: UploadRequest,
        *,
        key: Optional[StorageKey] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MultipartUploadCoordinator:
        """Build a coordinator for ``request``; the caller runs or cancels it."""
        if self._transfer is None:
            raise StorageConfigurationException("Part transfer is not configured")
        cat = Category.parse(request.category)
        if request.size <= 0:
            raise InvalidUploadInputException("File is empty", field="size")
        ctype = self.resolve_content_type(cat, request.content_type)
        progress = ProgressAggregator(request.size)
        if on_progress is not None:
            progress.subscribe(on_progress)
        return MultipartUploadCoordinator(
            self._storage,
            self._transfer,
            request,
            key or self.generate_key(request.file_name, cat),
            ctype,
            self._options,
            metadata=self.build_metadata(request.file_name, cat),
            progress=progress,
        )

    # ------------------------------------------------------------------
    # Client-driven uploads (server signs, client transfers)
    # ------------------------------------------------------------------
    async def presign_direct_upload(
        self,
        file_name: str,
        category: Category | str,
        *,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
        expires_in: Optional[int] = None,
    ) -> DirectUploadTicket:
        cat = Category.parse(category)
        if size is not None:
            self.check_size(cat, size)
        ctype = self.resolve_content_type(cat, content_type)
        key = self.generate_key(file_name, cat)
        expires = expires_in or self._options.part_url_expiry_seconds
        with _classified("presign_put"):
            presigned: PresignedURL = await self._storage.presign_put(key, ctype, expires)
        info = self._storage.info()
        logger.info("direct_upload_presigned", key=key, expires_in=presigned.expires_in or expires)
        return DirectUploadTicket(
            key=key,
            url=presigned.url,
            method=presigned.method,
            expires_in=presigned.expires_in or expires,
            content_type=ctype,
            headers=dict(presigned.headers),
            bucket=info.bucket,
            region=info.region,
        )

    async def initiate_multipart(
        self,
        file_name: str,
        category: Category | str,
        *,
        content_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> MultipartTicket:
        cat = Category.parse(category)
        if size is not None and size <= 0:
            raise InvalidUploadInputException("File is empty", field="size")
        if size is not None and -(-size // self._options.part_size) > MAX_PARTS:
            raise InvalidUploadInputException(
                f"File needs more than {MAX_PARTS} parts",
                field="size",
                details={"size": size, "part_size": self._options.part_size},
            )
        ctype = self.resolve_content_type(cat, content_type)
        key = self.generate_key(file_name, cat)
        with _classified("initiate_multipart_upload"):
            upload_id = await self._storage.initiate_multipart_upload(
                key, ctype, self.build_metadata(file_name, cat)
            )
        info = self._storage.info()
        logger.info("multipart_upload_initiated", key=key, upload_id=upload_id)
        return MultipartTicket(
            key=key,
            upload_id=upload_id,
            content_type=ctype,
            part_size=self._options.part_size,
            part_url_expiry_seconds=self._options.part_url_expiry_seconds,
            bucket=info.bucket,
            region=info.region,
        )

    async def sign_part(
        self,
        key: StorageKey,
        upload_id: str,
        part_number: int,
        *,
        expires_in: Optional[int] = None,
    ) -> PresignedURL:
        self._check_key(key)
        self._check_upload_id(upload_id)
        if not 1 <= part_number <= MAX_PARTS:
            raise InvalidUploadInputException(
                f"part_number must be within 1..{MAX_PARTS}", field="part_number"
            )
        with _classified("sign_part_upload"):
            return await self._storage.sign_part_upload(
                key, upload_id, part_number, expires_in or self._options.part_url_expiry_seconds
            )

    async def complete_multipart(
        self,
        key: StorageKey,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> CompletedUpload:
        """Complete a client-driven upload; parts may arrive in any order."""
        self._check_key(key)
        self._check_upload_id(upload_id)
        if not parts:
            raise InvalidUploadInputException("No parts to complete", field="parts")
        numbers = [n for n, _ in parts]
        if len(set(numbers)) != len(numbers):
            raise InvalidUploadInputException("Duplicate part numbers", field="parts")
        missing = [n for n, etag in parts if not etag]
        if missing:
            raise InvalidUploadInputException(
                "Every part needs an ETag", field="parts", details={"missing_parts": missing}
            )
        ordered = sorted(parts, key=lambda p: p[0])
        with _classified("complete_multipart_upload"):
            completed = await self._storage.complete_multipart_upload(key, upload_id, ordered)
        logger.info("multipart_upload_completed", key=key, upload_id=upload_id, parts=len(ordered))
        return completed

    async def abort_multipart(self, key: StorageKey, upload_id: str) -> None:
        self._check_key(key)
        self._check_upload_id(upload_id)
        with _classified("abort_multipart_upload"):
            await self._storage.abort_multipart_upload(key, upload_id)
        logger.info("multipart_upload_aborted", key=key, upload_id=upload_id)
