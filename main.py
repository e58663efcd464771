"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import RequestIDMiddleware, LoggingMiddleware
from api.routes import uploads as upload_routes
from application.services.upload_service import UploadApplicationService
from core.config import Settings, settings as default_settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger, configure_logging
from core.response import success_response
from infrastructure.adapters.storage_port import (
    PresignedTransferPortAdapter,
    S3StoragePortAdapter,
)
from infrastructure.external.storage import (
    PresignedTransfer,
    StorageError,
    build_s3_provider,
    get_storage_config,
)


logger = get_logger(__name__)


def create_app(settings: Settings = default_settings) -> FastAPI:
    """构建应用；存储与上传服务在 lifespan 中显式创建，不使用模块级单例。"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = get_storage_config(settings)
        transfer = PresignedTransfer(verify_ssl=config.enable_ssl)
        try:
            provider = await build_s3_provider(config)
            app.state.upload_service = UploadApplicationService(
                storage=S3StoragePortAdapter(provider),
                transfer=PresignedTransferPortAdapter(transfer),
                upload_settings=settings.upload,
            )
            logger.info(
                "storage_initialized",
                bucket=config.bucket,
                region=config.region,
                endpoint=config.endpoint,
            )
        except StorageError as exc:
            # 未配置存储时服务仍可启动，上传接口返回 ConfigurationError
            app.state.upload_service = None
            logger.error("storage_init_failed", error=str(exc), error_type=type(exc).__name__)

        yield

        await transfer.close()
        logger.info("application_shutdown")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="录像（.dem）与视频文件上传服务：预签名直传与分片上传编排",
    )

    # 添加中间件（注意顺序：从下往上执行）
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Request-ID"],
    )

    register_exception_handlers(app)
    app.include_router(upload_routes.router, prefix="/api/v1")

    @app.get("/", tags=["Root"])
    async def root():
        """API根路径"""
        return success_response(
            data={
                "name": settings.PROJECT_NAME,
                "version": settings.VERSION,
                "docs": "/docs",
            },
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """健康检查端点"""
        configured = getattr(app.state, "upload_service", None) is not None
        return success_response(data={"status": "healthy", "storage_configured": configured})

    return app


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG,
        log_level="debug" if default_settings.DEBUG else "info"
    )
