"""
API依赖项 - 从应用状态中获取上传服务
"""
from fastapi import Request

from application.services.upload_service import UploadApplicationService
from domain.common.exceptions import StorageConfigurationException


def get_upload_service(request: Request) -> UploadApplicationService:
    """上传服务在 lifespan 中显式构建并挂载到 app.state"""
    service = getattr(request.app.state, "upload_service", None)
    if service is None:
        raise StorageConfigurationException("Upload storage is not configured")
    return service
