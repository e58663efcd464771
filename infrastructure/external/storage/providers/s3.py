"""AWS S3 storage provider implementation."""
from typing import Optional, Any
from functools import partial

import anyio

from core.logging_config import get_logger
from ..config import StorageConfig
from ..models import (
    UploadResult,
    MultipartCompletion,
    PresignedRequest,
)
from ..exceptions import (
    StorageError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ConfigurationError,
)
from ..signer import Credentials, RequestSigner

logger = get_logger(__name__)


class S3Provider:
    """S3 provider: SDK calls for session control, local signing for part URLs."""

    def __init__(
        self,
        client: Any,  # boto3 S3 client
        config: StorageConfig,
        signer: Optional[RequestSigner] = None,
    ):
        """Initialize S3 provider.

        Args:
            client: Boto3 S3 client instance
            config: Storage configuration
            signer: Request signer; built from config credentials when omitted
        """
        if not config.bucket:
            raise ConfigurationError("S3 bucket name is required")
        self.client = client
        self.config = config
        self.bucket = config.bucket
        self.region = config.region or "us-east-1"
        self.signer = signer or build_signer(config)

    async def upload(
        self,
        file: bytes,
        key: str,
        metadata: Optional[dict] = None,
        content_type: Optional[str] = None
    ) -> UploadResult:
        """Upload whole object in one PUT."""
        try:
            extra_args = {}
            if content_type:
                extra_args["ContentType"] = content_type
            if metadata:
                extra_args["Metadata"] = metadata
            if self.config.s3_sse:
                extra_args["ServerSideEncryption"] = self.config.s3_sse

            # Upload using thread pool for sync SDK
            response = await anyio.to_thread.run_sync(
                partial(
                    self.client.put_object,
                    Bucket=self.bucket,
                    Key=key,
                    Body=file,
                    **extra_args
                )
            )
            etag = (response or {}).get("ETag", "").strip('"') or None
            logger.info("Uploaded to S3", key=key, size=len(file))
            return UploadResult(
                key=key,
                etag=etag,
                size=len(file),
                content_type=content_type,
                url=self.public_url(key) or self.object_url(key),
            )
        except Exception as e:
            self._handle_exception(e, f"upload {key}")

    async def generate_presigned_url(
        self,
        key: str,
        expires_in: int = 3600,
        method: str = "PUT",
        content_type: Optional[str] = None,
    ) -> PresignedRequest:
        """Presign a direct single-shot request for ``key``."""
        signed = self.signer.presign(method, self.bucket, key, expires_in=expires_in)
        headers = {"Content-Type": content_type} if content_type and method.upper() == "PUT" else {}
        return PresignedRequest(
            url=signed.url,
            method=signed.method,
            headers=headers,
            expires_in=signed.expires_in,
        )

    def public_url(self, key: str) -> Optional[str]:
        """Get public/CDN URL for file."""
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{key}"
        return None

    def object_url(self, key: str) -> str:
        _, host, uri = self.signer.target(self.bucket, key)
        scheme = "https" if self.config.enable_ssl else "http"
        return f"{scheme}://{host}{uri}"

    async def health_check(self) -> bool:
        """Check S3 connectivity."""
        try:
            await anyio.to_thread.run_sync(
                partial(
                    self.client.head_bucket,
                    Bucket=self.bucket
                )
            )
            logger.info("S3 health check passed")
            return True
        except Exception as e:
            logger.error("S3 health check failed", error=str(e))
            return False

    # Multipart
    async def multipart_upload_start(
        self,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """Start multipart upload and return the provider upload id."""
        try:
            args = {"Bucket": self.bucket, "Key": key}
            if content_type:
                args["ContentType"] = content_type
            if metadata:
                args["Metadata"] = metadata
            if self.config.s3_sse:
                args["ServerSideEncryption"] = self.config.s3_sse

            response = await anyio.to_thread.run_sync(
                partial(self.client.create_multipart_upload, **args)
            )
        except Exception as e:
            self._handle_exception(e, f"start multipart upload {key}")
        upload_id = (response or {}).get("UploadId")
        if not upload_id:
            raise StorageError(f"S3 returned no UploadId for {key}")
        logger.info("Multipart upload initiated", key=key, upload_id=upload_id)
        return upload_id

    def multipart_sign_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = 3600,
    ) -> PresignedRequest:
        """Presign a PUT of one part; pure, no network."""
        if part_number < 1:
            raise ValueError(f"Part numbers start at 1, got {part_number}")
        signed = self.signer.presign_part(
            self.bucket, key, upload_id, part_number, expires_in=expires_in
        )
        return PresignedRequest(url=signed.url, method="PUT", expires_in=signed.expires_in)

    async def multipart_upload_complete(
        self,
        upload_id: str,
        key: str,
        parts: list[dict]
    ) -> MultipartCompletion:
        """Complete multipart upload; ``parts`` must be in ascending order."""
        try:
            response = await anyio.to_thread.run_sync(
                partial(
                    self.client.complete_multipart_upload,
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts}
                )
            )
        except Exception as e:
            self._handle_exception(e, f"complete multipart upload {key}")
        response = response or {}
        logger.info("Multipart upload completed", key=key, upload_id=upload_id, parts=len(parts))
        return MultipartCompletion(
            key=key,
            location=response.get("Location") or self.object_url(key),
            etag=(response.get("ETag") or "").strip('"') or None,
        )

    async def multipart_upload_abort(self, upload_id: str, key: str) -> None:
        """Abort multipart upload, releasing stored parts."""
        try:
            await anyio.to_thread.run_sync(
                partial(
                    self.client.abort_multipart_upload,
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                )
            )
            logger.info("Multipart upload aborted", key=key, upload_id=upload_id)
        except Exception as e:
            self._handle_exception(e, f"abort multipart upload {key}")

    def _handle_exception(self, e: Exception, operation: str) -> None:
        """Map S3 exceptions to storage exceptions."""
        if isinstance(e, StorageError):
            raise e
        error_code = getattr(e, "response", {}).get("Error", {}).get("Code", "")

        if error_code in ["NoSuchKey", "NoSuchUpload", "404"]:
            raise NotFoundError(f"Object not found: {operation}") from e
        elif error_code in ["AccessDenied", "403"]:
            raise PermissionDeniedError(f"Access denied: {operation}") from e
        elif error_code in ["InvalidAccessKeyId", "SignatureDoesNotMatch", "NoSuchBucket"]:
            raise ConfigurationError(f"Storage misconfigured during {operation}: {error_code}") from e
        elif error_code in ["RequestTimeout", "SlowDown", "ServiceUnavailable", "InternalError"]:
            raise TransientError(f"Transient error: {operation}: {e}") from e
        else:
            raise StorageError(f"S3 error during {operation}: {e}") from e


def build_signer(config: StorageConfig) -> RequestSigner:
    if not config.has_credentials:
        raise ConfigurationError("S3 access key id and secret access key are required")
    credentials = Credentials(
        access_key_id=config.aws_access_key_id or "",
        secret_access_key=config.aws_secret_access_key or "",
        session_token=config.aws_session_token,
    )
    return RequestSigner(credentials, config.region, endpoint=config.endpoint)


async def build_s3_provider(config: StorageConfig, *, check_health: bool = True) -> S3Provider:
    """Build S3 storage provider.

    Args:
        config: Storage configuration
        check_health: Probe the bucket before returning

    Returns:
        Configured S3 provider instance
    """
    if not config.bucket:
        raise ConfigurationError("S3 bucket name is required")
    signer = build_signer(config)

    import boto3
    from botocore.config import Config as BotoConfig

    boto_config = BotoConfig(
        region_name=config.region,
        signature_version="s3v4",
        retries={
            "max_attempts": config.max_retry_attempts,
            "mode": "standard"
        },
        connect_timeout=config.timeout,
        read_timeout=config.timeout
    )

    client_args = {
        "service_name": "s3",
        "config": boto_config,
        "aws_access_key_id": config.aws_access_key_id,
        "aws_secret_access_key": config.aws_secret_access_key,
    }
    if config.aws_session_token:
        client_args["aws_session_token"] = config.aws_session_token
    if config.endpoint:
        client_args["endpoint_url"] = config.endpoint
        client_args["use_ssl"] = config.enable_ssl

    client = boto3.client(**client_args)
    provider = S3Provider(client, config, signer=signer)

    if check_health and not await provider.health_check():
        raise ConfigurationError("Failed to connect to S3")

    return provider
