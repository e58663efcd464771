"""
Shared business codes used across layers (Domain/Core/API).

This package exposes BusinessCode at `shared.codes`; upload-specific
codes live next to the generic ones so handlers map a single enum.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """Unified business status codes (single source of truth)."""

    # Success
    SUCCESS = 0

    # Parameter errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_MISSING = 10001
    PARAM_TYPE_ERROR = 10002
    PARAM_VALIDATION_ERROR = 10003

    # Business errors (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006

    # Permission errors (3xxxx)
    PERMISSION_ERROR = 30000
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    NETWORK_ERROR = 40002
    SERVICE_UNAVAILABLE = 40003

    # Rate limiting (5xxxx)
    RATE_LIMIT_ERROR = 50000
    TOO_MANY_REQUESTS = 50001

    # Upload pipeline (6xxxx)
    UPLOAD_CONFIGURATION_ERROR = 60000
    UPLOAD_INVALID_INPUT = 60001
    UPLOAD_PAYLOAD_TOO_LARGE = 60002
    UPLOAD_PART_TRANSFER_ERROR = 60003
    UPLOAD_SIGNATURE_EXPIRED = 60004
    UPLOAD_SESSION_ABORTED = 60005
    UPLOAD_PROVIDER_ERROR = 60006
    UPLOAD_INVALID_STATE = 60007


__all__ = ["BusinessCode"]
