"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional

GiB = 1024 * 1024 * 1024
MiB = 1024 * 1024
MIN_PART_SIZE = 5 * MiB
# 预签名 URL 最长有效期（7 天）
MAX_PRESIGN_EXPIRY = 7 * 24 * 3600


class StorageSettings(BaseModel):
    """对象存储连接配置（凭证仅保存在服务端）"""
    bucket: Optional[str] = None
    region: str = "us-east-1"
    endpoint: Optional[str] = None  # S3 兼容服务（MinIO 等）
    public_base_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    s3_sse: Optional[str] = None
    # SDK 层面的重试与超时
    max_retry_attempts: int = 3
    timeout: int = 30
    enable_ssl: bool = True


class UploadSettings(BaseModel):
    """上传编排配置"""
    # 各类别单次上传的大小上限
    max_size: dict[str, int] = Field(
        default_factory=lambda: {"dem": 2 * GiB, "video": 5 * GiB}
    )
    # 各类别默认 Content-Type
    default_content_types: dict[str, str] = Field(
        default_factory=lambda: {"dem": "application/octet-stream", "video": "video/mp4"}
    )
    # 允许的 Content-Type；为空表示不限制
    allowed_content_types: Optional[dict[str, list[str]]] = Field(
        default_factory=lambda: {
            "dem": [
                "application/octet-stream",
                "application/gzip",
                "application/x-gzip",
            ],
            "video": [
                "video/mp4",
                "video/webm",
                "video/quicktime",
                "video/x-matroska",
                "application/gzip",
                "application/octet-stream",
            ],
        }
    )
    multipart_threshold: int = 50 * MiB
    part_size: int = 10 * MiB
    part_url_expiry_seconds: int = 3600
    max_concurrency: int = 4
    max_part_attempts: int = 3
    # 分片重试的指数退避（带抖动）
    retry_backoff_initial: float = 0.5
    retry_backoff_max: float = 8.0
    retry_backoff_jitter: float = 0.5
    # 单个分片超时：随文件体积增长，封顶 part_timeout_max_seconds
    part_timeout_seconds: float = 60.0
    part_timeout_max_seconds: float = 600.0
    compress: bool = False

    @field_validator("part_size")
    @classmethod
    def _check_part_size(cls, v: int) -> int:
        # 除最后一片外，S3 要求分片不小于 5MiB
        if v < MIN_PART_SIZE:
            raise ValueError(f"part_size must be at least {MIN_PART_SIZE} bytes")
        return v

    @field_validator("part_url_expiry_seconds")
    @classmethod
    def _check_expiry(cls, v: int) -> int:
        if not 1 <= v <= MAX_PRESIGN_EXPIRY:
            raise ValueError(f"part_url_expiry_seconds must be within 1..{MAX_PRESIGN_EXPIRY}")
        return v

    @field_validator("max_concurrency", "max_part_attempts")
    @classmethod
    def _check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Replay Upload Service")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")

    # CORS配置
    CORS_ORIGINS: list = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
    )

    # 分组配置：存储与上传采用嵌套模型，环境变量形如 STORAGE__BUCKET
    storage: StorageSettings = Field(default_factory=StorageSettings)
    upload: UploadSettings = Field(default_factory=UploadSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
