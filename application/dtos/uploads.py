"""
Upload DTOs (Pydantic v2) used at the HTTP boundary.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.upload import MAX_PARTS, Category


class PresignedUrlRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=1024, alias="fileName")
    type: Category
    content_type: Optional[str] = Field(default=None, alias="contentType")
    size: Optional[int] = Field(default=None, ge=0)
    expires_in: Optional[int] = Field(default=None, ge=1, le=7 * 24 * 3600, alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class PresignedUrlResponse(BaseModel):
    key: str
    url: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    expires_in: int
    content_type: str
    bucket: Optional[str] = None
    region: Optional[str] = None


class InitiateMultipartRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=1024, alias="fileName")
    type: Category
    content_type: Optional[str] = Field(default=None, alias="contentType")
    size: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True)


class InitiateMultipartResponse(BaseModel):
    key: str
    upload_id: str
    content_type: str
    part_size: int
    part_url_expiry_seconds: int
    bucket: Optional[str] = None
    region: Optional[str] = None


class SignPartRequest(BaseModel):
    key: str
    upload_id: str = Field(..., alias="uploadId")
    part_number: int = Field(..., ge=1, le=MAX_PARTS, alias="partNumber")
    expires_in: Optional[int] = Field(default=None, ge=1, le=7 * 24 * 3600, alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class SignPartResponse(BaseModel):
    url: str
    method: str = "PUT"
    part_number: int
    expires_in: int


class CompletedPart(BaseModel):
    part_number: int = Field(..., ge=1, le=MAX_PARTS, alias="PartNumber")
    etag: str = Field(..., min_length=1, alias="ETag")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("etag")
    @classmethod
    def _strip_quotes(cls, v: str) -> str:
        stripped = v.strip().strip('"')
        if not stripped:
            raise ValueError("etag must not be empty")
        return stripped


class CompleteMultipartRequest(BaseModel):
    key: str
    upload_id: str = Field(..., alias="uploadId")
    parts: list[CompletedPart] = Field(..., min_length=1, max_length=MAX_PARTS)

    model_config = ConfigDict(populate_by_name=True)


class CompleteMultipartResponse(BaseModel):
    key: str
    location: Optional[str] = None
    etag: Optional[str] = None


class AbortMultipartRequest(BaseModel):
    key: str
    upload_id: str = Field(..., alias="uploadId")

    model_config = ConfigDict(populate_by_name=True)


class UploadResultResponse(BaseModel):
    key: str
    size: int
    content_type: str
    etag: Optional[str] = None
    location: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    upload_id: Optional[str] = None
