"""AWS Signature Version 4 query-string presigning.

Builds time-limited, query-authenticated URLs for S3-compatible storage
without an SDK. The payload is not hashed (``UNSIGNED-PAYLOAD``), so the
integrity of PUT bodies sent to these URLs is the caller's concern.

The signer performs no I/O and, given the same inputs including ``now``,
always produces the same URL.
"""
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import quote, urlsplit

from core.logging_config import get_logger
from .config import MAX_PRESIGN_EXPIRY
from .exceptions import ConfigurationError
from .models import SignedRequest

logger = get_logger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SIGNED_HEADERS = "host"


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)

    def validate(self) -> None:
        if not self.access_key_id or not self.secret_access_key:
            raise ConfigurationError("Storage credentials are missing")
        if any(c.isspace() for c in self.access_key_id) or "/" in self.access_key_id:
            raise ConfigurationError("Storage access key id is malformed")
        if any(c.isspace() for c in self.secret_access_key):
            raise ConfigurationError("Storage secret access key is malformed")


def _uri_encode(value: str, safe: str = "") -> str:
    # RFC 3986 unreserved characters stay as-is.
    return quote(value, safe="-_.~" + safe)


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _signing_key(secret: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac(("AWS4" + secret).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def canonical_query_string(params: Mapping[str, str]) -> str:
    encoded = sorted((_uri_encode(str(k)), _uri_encode(str(v))) for k, v in params.items())
    return "&".join(f"{k}={v}" for k, v in encoded)


class RequestSigner:
    """Presigns requests for one region using process-wide credentials."""

    def __init__(
        self,
        credentials: Credentials,
        region: str,
        *,
        service: str = "s3",
        endpoint: Optional[str] = None,
    ):
        credentials.validate()
        if not region:
            raise ConfigurationError("Storage region is required for signing")
        self._credentials = credentials
        self.region = region
        self.service = service
        self.endpoint = endpoint.rstrip("/") if endpoint else None

    def __repr__(self) -> str:
        return f"RequestSigner(region={self.region!r}, service={self.service!r}, endpoint={self.endpoint!r})"

    def target(self, bucket: str, key: str, *, host: Optional[str] = None) -> tuple[str, str, str]:
        """Return (scheme, host, canonical_uri) for an object.

        Virtual-hosted style against AWS; path style for a custom endpoint.
        """
        if not bucket:
            raise ConfigurationError("Storage bucket is required for signing")
        encoded_key = _uri_encode(key.lstrip("/"), safe="/")
        if self.endpoint and host is None:
            parts = urlsplit(self.endpoint)
            scheme = parts.scheme or "https"
            return scheme, parts.netloc or parts.path, f"/{_uri_encode(bucket)}/{encoded_key}"
        return "https", host or f"{bucket}.s3.{self.region}.amazonaws.com", f"/{encoded_key}"

    def presign(
        self,
        method: str,
        bucket: str,
        key: str,
        *,
        expires_in: int = 3600,
        query: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
        host: Optional[str] = None,
    ) -> SignedRequest:
        if not 1 <= int(expires_in) <= MAX_PRESIGN_EXPIRY:
            raise ConfigurationError(
                f"Presign expiry must be within 1..{MAX_PRESIGN_EXPIRY} seconds, got {expires_in}"
            )
        method = method.upper()
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]

        scheme, host_header, canonical_uri = self.target(bucket, key, host=host)
        scope = f"{date_stamp}/{self.region}/{self.service}/aws4_request"

        params: dict[str, str] = {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{self._credentials.access_key_id}/{scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(int(expires_in)),
            "X-Amz-SignedHeaders": SIGNED_HEADERS,
        }
        if self._credentials.session_token:
            params["X-Amz-Security-Token"] = self._credentials.session_token
        for k, v in (query or {}).items():
            params[k] = str(v)
        query_string = canonical_query_string(params)

        canonical_request = "\n".join([
            method,
            canonical_uri,
            query_string,
            f"host:{host_header}\n",
            SIGNED_HEADERS,
            UNSIGNED_PAYLOAD,
        ])
        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            scope,
            _sha256_hex(canonical_request),
        ])
        signing_key = _signing_key(
            self._credentials.secret_access_key, date_stamp, self.region, self.service
        )
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        url = f"{scheme}://{host_header}{canonical_uri}?{query_string}&X-Amz-Signature={signature}"
        logger.debug(
            "request_presigned",
            method=method,
            bucket=bucket,
            key=key,
            expires_in=int(expires_in),
        )
        return SignedRequest(
            method=method,
            url=url,
            canonical_uri=canonical_uri,
            amz_date=amz_date,
            expires_in=int(expires_in),
            signature=signature,
        )

    def presign_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        *,
        expires_in: int = 3600,
        now: Optional[datetime] = None,
    ) -> SignedRequest:
        """Presign a PUT for one multipart part."""
        return self.presign(
            "PUT",
            bucket,
            key,
            expires_in=expires_in,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            now=now,
        )
