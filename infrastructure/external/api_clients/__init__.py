"""
API客户端模块

提供与上传服务 REST API 集成的客户端实现
"""
from .base import BaseAPIClient, APIResponse, APIError
from .upload_api import UploadAPIClient

__all__ = [
    "BaseAPIClient",
    "APIResponse",
    "APIError",
    "UploadAPIClient",
]
