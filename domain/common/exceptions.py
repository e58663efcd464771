"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
上传链路的错误分类（error_type）即对调用方可见的错误种类。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class StorageConfigurationException(BusinessException):
    """Missing or invalid credentials/bucket. Fatal, never retried."""

    def __init__(self, message: str = "Storage is not configured", *, details: dict | None = None):
        super().__init__(
            code=BusinessCode.UPLOAD_CONFIGURATION_ERROR,
            message=message,
            error_type="ConfigurationError",
            details=details,
        )


class InvalidUploadInputException(BusinessException):
    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=BusinessCode.UPLOAD_INVALID_INPUT,
            message=message,
            error_type="InvalidInput",
            details=details,
            field=field,
        )


class PayloadTooLargeException(BusinessException):
    def __init__(self, size: int, limit: int, *, category: Optional[str] = None):
        details = {"size": size, "limit": limit}
        if category:
            details["category"] = category
        super().__init__(
            code=BusinessCode.UPLOAD_PAYLOAD_TOO_LARGE,
            message=f"File too large: {size} > {limit} bytes",
            error_type="PayloadTooLarge",
            details=details,
            field="size",
        )
        self.size = size
        self.limit = limit


class PartTransferException(BusinessException):
    """A single part failed to transfer (network error, timeout or non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        part_number: Optional[int] = None,
        status_code: Optional[int] = None,
        error_type: str = "PartTransferError",
        code: int = BusinessCode.UPLOAD_PART_TRANSFER_ERROR,
    ):
        details = {}
        if part_number is not None:
            details["part_number"] = part_number
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details or None,
        )
        self.part_number = part_number
        self.status_code = status_code


class SignatureExpiredException(PartTransferException):
    """The signed URL was used past its expiry; a fresh one must be requested."""

    def __init__(self, message: str = "Signed URL has expired", *, part_number: Optional[int] = None):
        super().__init__(
            message,
            part_number=part_number,
            status_code=403,
            error_type="SignatureExpired",
            code=BusinessCode.UPLOAD_SIGNATURE_EXPIRED,
        )


class SessionAbortedException(BusinessException):
    """Multipart session gave up; provider-side abort has been issued."""

    def __init__(
        self,
        message: str,
        *,
        key: str,
        upload_id: Optional[str] = None,
        part_number: Optional[int] = None,
        cause: Optional[BaseException] = None,
        abort_error: Optional[BaseException] = None,
    ):
        details: dict = {"key": key}
        if upload_id:
            details["upload_id"] = upload_id
        if part_number is not None:
            details["part_number"] = part_number
        if cause is not None:
            details["cause"] = str(cause)
        if abort_error is not None:
            details["abort_error"] = str(abort_error)
        super().__init__(
            code=BusinessCode.UPLOAD_SESSION_ABORTED,
            message=message,
            error_type="SessionAborted",
            details=details,
        )
        self.key = key
        self.upload_id = upload_id
        self.part_number = part_number
        self.cause = cause
        self.abort_error = abort_error


class StorageProviderException(BusinessException):
    """Unexpected response from initiate/complete/abort/put."""

    def __init__(self, message: str, *, operation: Optional[str] = None, details: dict | None = None):
        merged = dict(details or {})
        if operation:
            merged["operation"] = operation
        super().__init__(
            code=BusinessCode.UPLOAD_PROVIDER_ERROR,
            message=message,
            error_type="ProviderError",
            details=merged or None,
        )
        self.operation = operation


class InvalidSessionStateException(BusinessException):
    def __init__(self, current: str, target: str):
        super().__init__(
            code=BusinessCode.UPLOAD_INVALID_STATE,
            message=f"Illegal multipart session transition: {current} -> {target}",
            error_type="InvalidSessionState",
            details={"current": current, "target": target},
        )
