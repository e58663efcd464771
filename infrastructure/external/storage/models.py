"""Storage data transfer objects."""
from datetime import datetime, timedelta
from typing import Optional
from pydantic import BaseModel, Field


class UploadResult(BaseModel):
    """Single-shot upload result."""
    key: str
    etag: Optional[str] = None
    size: int
    content_type: Optional[str] = None
    url: Optional[str] = None


class MultipartCompletion(BaseModel):
    """Result of completing a multipart upload."""
    key: str
    location: Optional[str] = None
    etag: Optional[str] = None


class PresignedRequest(BaseModel):
    """Presigned request for direct access."""
    url: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    expires_in: int


class SignedRequest(BaseModel):
    """Query-authenticated request produced by the request signer.

    Only the final URL and its public components are exposed; the
    derived signing key never leaves the signer.
    """
    method: str
    url: str
    canonical_uri: str
    amz_date: str
    expires_in: int
    signature: str

    @property
    def issued_at(self) -> datetime:
        return datetime.strptime(self.amz_date, "%Y%m%dT%H%M%SZ")

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)
