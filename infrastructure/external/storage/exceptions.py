"""Storage service exceptions."""
from typing import Optional


class StorageError(Exception):
    """Base storage exception."""
    pass


class NotFoundError(StorageError):
    """Object or multipart upload not found in storage."""
    pass


class PermissionDeniedError(StorageError):
    """Permission denied for storage operation."""
    pass


class TransientError(StorageError):
    """Transient error (network, timeout, rate limit, server error)."""
    pass


class ConfigurationError(StorageError):
    """Missing or malformed storage configuration or credentials."""
    pass


class PartUploadError(StorageError):
    """Non-2xx response to a presigned part PUT."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExpiredSignatureError(PartUploadError):
    """Presigned URL was used after its expiry."""
    pass
