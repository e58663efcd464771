"""Multipart upload coordination: initiate, per-part signed PUTs, complete or abort."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

import anyio
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from application.ports.storage import MultipartSessionPort, PartTransferPort, UploadStoragePort
from application.services.progress import ProgressAggregator
from core.config import UploadSettings
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    InvalidUploadInputException,
    PartTransferException,
    SessionAbortedException,
    StorageConfigurationException,
    StorageProviderException,
)
from domain.upload import (
    MultipartSession,
    PartRecord,
    SessionState,
    StorageKey,
    UploadRequest,
    UploadResult,
    plan_parts,
)

logger = get_logger(__name__)

GiB = 1024 * 1024 * 1024


@dataclass(frozen=True)
class MultipartOptions:
    part_size: int = 10 * 1024 * 1024
    part_url_expiry_seconds: int = 3600
    max_concurrency: int = 4
    max_part_attempts: int = 3
    retry_backoff_initial: float = 0.5
    retry_backoff_max: float = 8.0
    retry_backoff_jitter: float = 0.5
    part_timeout_seconds: float = 60.0
    part_timeout_max_seconds: float = 600.0

    @classmethod
    def from_settings(cls, s: UploadSettings) -> "MultipartOptions":
        return cls(
            part_size=s.part_size,
            part_url_expiry_seconds=s.part_url_expiry_seconds,
            max_concurrency=s.max_concurrency,
            max_part_attempts=s.max_part_attempts,
            retry_backoff_initial=s.retry_backoff_initial,
            retry_backoff_max=s.retry_backoff_max,
            retry_backoff_jitter=s.retry_backoff_jitter,
            part_timeout_seconds=s.part_timeout_seconds,
            part_timeout_max_seconds=s.part_timeout_max_seconds,
        )

    def part_timeout(self, file_size: int) -> float:
        """Per-part timeout, scaled up for larger files and capped."""
        scaled = self.part_timeout_seconds * max(1.0, file_size / GiB)
        return min(scaled, max(self.part_timeout_max_seconds, self.part_timeout_seconds))


class MultipartUploadCoordinator:
    """Drives one MultipartSession from initiation to a terminal state.

    Parts are sent by at most ``max_concurrency`` workers. A failing part is
    retried with a freshly signed URL on every attempt; once its attempts are
    exhausted the remaining transfers are cancelled, the provider upload is
    aborted and ``SessionAbortedException`` is raised.
    """

    def __init__(
        self,
        storage: UploadStoragePort | MultipartSessionPort,
        transfer: PartTransferPort,
        request: UploadRequest,
        key: StorageKey,
        content_type: str,
        options: Optional[MultipartOptions] = None,
        *,
        metadata: Optional[dict[str, str]] = None,
        progress: Optional[ProgressAggregator] = None,
        upload_id: Optional[str] = None,
    ):
        self.storage = storage
        self.transfer = transfer
        self.request = request
        self.key = key
        self.content_type = content_type
        self.options = options or MultipartOptions()
        self.metadata = metadata
        self.progress = progress or ProgressAggregator(request.size)
        self.session: Optional[MultipartSession] = None
        # Set when the upload was initiated elsewhere (e.g. by the HTTP API).
        self._upload_id = upload_id
        self._cancel_requested = False
        self._scope: Optional[anyio.CancelScope] = None
        self._failure: Optional[tuple[int, BaseException]] = None

    @property
    def state(self) -> Optional[SessionState]:
        return self.session.state if self.session else None

    def cancel(self) -> None:
        """Stop scheduling parts and cancel in-flight transfers; run() then aborts."""
        self._cancel_requested = True
        if self._scope is not None:
            self._scope.cancel()

    async def run(self) -> UploadResult:
        size = self.request.size
        if size <= 0:
            raise InvalidUploadInputException(
                "Zero-byte files cannot be uploaded in parts", field="size"
            )
        parts = plan_parts(size, self.options.part_size)
        if self._cancel_requested:
            raise SessionAbortedException("Upload cancelled before initiation", key=self.key)

        upload_id = self._upload_id or await self._call_provider(
            "initiate_multipart_upload",
            self.storage.initiate_multipart_upload(self.key, self.content_type, self.metadata),
        )
        self.session = MultipartSession(upload_id=upload_id, key=self.key, parts=parts)
        logger.info(
            "multipart_upload_started",
            key=self.key,
            upload_id=upload_id,
            size=size,
            parts=len(parts),
            concurrency=self.options.max_concurrency,
        )

        try:
            await self._transfer_parts()
        except anyio.get_cancelled_exc_class():
            await self._abort()
            raise

        if self._failure is not None or self._cancel_requested:
            await self._abort_and_raise()
        return await self.complete()

    async def complete(self) -> UploadResult:
        """Complete the session; rejected locally while any part lacks an ETag."""
        session = self._require_session()
        session.mark_completing()
        parts = session.completed_parts()
        completed = await self._call_provider(
            "complete_multipart_upload",
            self.storage.complete_multipart_upload(self.key, session.upload_id, parts),
        )
        session.mark_completed()
        info = self.storage.info()
        logger.info(
            "multipart_upload_completed",
            key=self.key,
            upload_id=session.upload_id,
            parts=len(parts),
            etag=completed.etag,
        )
        return UploadResult(
            key=self.key,
            size=self.request.size,
            content_type=self.content_type,
            etag=completed.etag,
            location=completed.location,
            bucket=info.bucket,
            region=info.region,
            upload_id=session.upload_id,
        )

    async def abort(self) -> None:
        """Caller-directed cleanup, e.g. after a failed completion call."""
        error = await self._abort()
        if error is not None:
            raise StorageProviderException(
                f"Abort failed: {error}", operation="abort_multipart_upload"
            ) from error

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------
    async def _transfer_parts(self) -> None:
        session = self._require_session()
        session.mark_in_flight()
        pending = iter(session.pending_parts())
        workers = max(1, min(self.options.max_concurrency, len(session.parts)))
        async with anyio.create_task_group() as tg:
            self._scope = tg.cancel_scope
            if self._cancel_requested:
                tg.cancel_scope.cancel()
            for _ in range(workers):
                tg.start_soon(self._worker, pending, tg.cancel_scope)
        self._scope = None

    async def _worker(self, pending: Iterator[PartRecord], scope: anyio.CancelScope) -> None:
        for part in pending:
            try:
                await self._upload_part(part)
            except Exception as exc:
                if self._failure is None:
                    self._failure = (part.part_number, exc)
                scope.cancel()
                return

    async def _upload_part(self, part: PartRecord) -> None:
        data = await self.request.source.read_range(part.start, part.end)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.options.max_part_attempts),
            wait=wait_exponential_jitter(
                multiplier=self.options.retry_backoff_initial,
                max=self.options.retry_backoff_max,
                jitter=self.options.retry_backoff_jitter,
            ),
            retry=retry_if_exception_type(PartTransferException),
            before_sleep=self._log_retry,
            reraise=True,
        )
        etag = None
        async for attempt in retrying:
            with attempt:
                part.attempts += 1
                etag = await self._attempt_part(part, data)
        self._require_session().record_etag(part.part_number, etag)
        self.progress.mark_part_complete(part.part_number, part.size)

    async def _attempt_part(self, part: PartRecord, data: bytes) -> str:
        session = self._require_session()
        n = part.part_number
        # Always sign afresh: a URL from an earlier attempt may have expired.
        try:
            presigned = await self.storage.sign_part_upload(
                self.key, session.upload_id, n, self.options.part_url_expiry_seconds
            )
        except StorageProviderException as exc:
            raise PartTransferException(f"Signing part {n} failed: {exc.message}", part_number=n) from exc

        timeout = self.options.part_timeout(self.request.size)

        def _on_bytes(loaded: int, total: int) -> None:
            self.progress.on_part_progress(n, loaded, total)

        try:
            with anyio.fail_after(timeout):
                return await self.transfer.transfer_part(
                    presigned.url,
                    data,
                    part_number=n,
                    timeout=timeout,
                    on_progress=_on_bytes,
                )
        except TimeoutError as exc:
            raise PartTransferException(
                f"Part {n} timed out after {timeout:.0f}s", part_number=n
            ) from exc
        except BusinessException:
            raise
        except Exception as exc:
            raise PartTransferException(f"Part {n} failed: {exc}", part_number=n) from exc

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "part_transfer_retry",
            key=self.key,
            part_number=getattr(exc, "part_number", None),
            attempt=retry_state.attempt_number,
            max_attempts=self.options.max_part_attempts,
            error_type=getattr(exc, "error_type", type(exc).__name__),
            error=str(exc),
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------
    async def _abort(self) -> Optional[BaseException]:
        """Mark the session aborted and release provider-side parts.

        Returns the abort call's error, if any; the session stays aborted either way.
        """
        session = self._require_session()
        if session.state is SessionState.ABORTED:
            return None
        session.mark_aborted()
        try:
            with anyio.CancelScope(shield=True):
                await self.storage.abort_multipart_upload(self.key, session.upload_id)
        except Exception as exc:
            logger.error(
                "multipart_abort_failed",
                key=self.key,
                upload_id=session.upload_id,
                error=str(exc),
            )
            return exc
        logger.info("multipart_upload_aborted", key=self.key, upload_id=session.upload_id)
        return None

    async def _abort_and_raise(self) -> None:
        session = self._require_session()
        abort_error = await self._abort()
        if self._failure is not None:
            part_number, cause = self._failure
            attempts = session.part(part_number).attempts
            message = f"Multipart upload aborted: part {part_number} failed after {attempts} attempt(s)"
        else:
            part_number, cause = None, None
            message = "Multipart upload cancelled"
        raise SessionAbortedException(
            message,
            key=self.key,
            upload_id=session.upload_id,
            part_number=part_number,
            cause=cause,
            abort_error=abort_error,
        ) from cause

    async def _call_provider(self, operation: str, awaitable):
        try:
            return await awaitable
        except (StorageProviderException, StorageConfigurationException):
            raise
        except BusinessException:
            raise
        except Exception as exc:
            raise StorageProviderException(str(exc), operation=operation) from exc

    def _require_session(self) -> MultipartSession:
        if self.session is None:
            raise InvalidUploadInputException("Multipart upload has not been initiated")
        return self.session
