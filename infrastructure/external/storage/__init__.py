"""Storage integration entry point.

Providers are built explicitly from a ``StorageConfig`` and handed to
whoever needs them; nothing here keeps a process-wide client.
"""
from core.config import Settings, settings as default_settings
from .config import StorageConfig


def get_storage_config(settings: Settings | None = None) -> StorageConfig:
    """Assemble StorageConfig from core.config settings.

    Keeps core.config as the single source of truth for configuration.
    """
    s = settings or default_settings
    st = s.storage
    return StorageConfig(
        bucket=st.bucket,
        region=st.region,
        endpoint=st.endpoint,
        public_base_url=st.public_base_url,
        aws_access_key_id=st.aws_access_key_id,
        aws_secret_access_key=st.aws_secret_access_key,
        aws_session_token=st.aws_session_token,
        s3_sse=st.s3_sse,
        max_retry_attempts=st.max_retry_attempts,
        timeout=st.timeout,
        enable_ssl=st.enable_ssl,
    )


__all__ = [
    # Configuration
    "get_storage_config",
    "StorageConfig",

    # Provider
    "S3Provider",
    "build_s3_provider",

    # Signing / transfer
    "Credentials",
    "RequestSigner",
    "PresignedTransfer",

    # Models
    "UploadResult",
    "MultipartCompletion",
    "PresignedRequest",
    "SignedRequest",

    # Exceptions
    "StorageError",
    "NotFoundError",
    "PermissionDeniedError",
    "TransientError",
    "ConfigurationError",
    "PartUploadError",
    "ExpiredSignatureError",
]

from .models import (
    UploadResult,
    MultipartCompletion,
    PresignedRequest,
    SignedRequest,
)
from .exceptions import (
    StorageError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ConfigurationError,
    PartUploadError,
    ExpiredSignatureError,
)
from .signer import Credentials, RequestSigner
from .transfer import PresignedTransfer
from .providers.s3 import S3Provider, build_s3_provider
