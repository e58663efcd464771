"""Storage configuration models."""
from typing import Optional
from pydantic import BaseModel, Field

# Longest validity accepted for a query-signed URL (7 days).
MAX_PRESIGN_EXPIRY = 7 * 24 * 3600


class StorageConfig(BaseModel):
    """S3-compatible storage configuration, read-only after startup."""
    bucket: Optional[str] = None
    region: str = "us-east-1"
    endpoint: Optional[str] = None
    public_base_url: Optional[str] = None

    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = Field(default=None, repr=False)
    aws_session_token: Optional[str] = Field(default=None, repr=False)
    s3_sse: Optional[str] = None

    # SDK settings
    max_retry_attempts: int = 3
    timeout: int = 30
    enable_ssl: bool = True

    model_config = {"frozen": True}

    @property
    def has_credentials(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key)
