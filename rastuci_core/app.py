"""
Rastuci FastAPI 主应用
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rastuci_core.api import api_router
from rastuci_core.clients import CorreoArgentinoClient, MercadoPagoClient, ResendEmailClient
from rastuci_core.config import get_settings
from rastuci_core.database import get_db_manager
from rastuci_core.event_bus import get_event_bus
from rastuci_core.middleware.logging import LoggingMiddleware
from rastuci_core.services import NotificationDispatcher
from rastuci_core.utils.errors import RastuciException
from rastuci_core.utils.logger import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()

    logger.info("Starting Rastuci application", version=settings.api_version)

    db_manager = get_db_manager()
    if not await db_manager.check_connection():
        logger.error("Database connection check failed")
        raise RuntimeError("Database connection failed")

    event_bus = get_event_bus()
    await event_bus.initialize()

    # 外部客户端只创建一次，关闭时统一释放连接
    app.state.db_manager = db_manager
    app.state.event_bus = event_bus
    app.state.payment_gateway = MercadoPagoClient.from_settings(settings)
    app.state.courier = CorreoArgentinoClient.from_settings(settings)
    app.state.email_client = ResendEmailClient.from_settings(settings)
    app.state.notifier = NotificationDispatcher(
        email_client=app.state.email_client,
        event_bus=event_bus,
        settings=settings,
        db_manager=db_manager,
    )

    logger.info("Rastuci application started successfully")

    yield

    logger.info("Shutting down Rastuci application")

    try:
        # 先等通知任务结束，再关闭它们依赖的客户端
        await app.state.notifier.drain()

        await app.state.payment_gateway.close()
        await app.state.courier.close()
        await app.state.email_client.close()

        await event_bus.shutdown()
        await db_manager.close()

        logger.info("Rastuci application shutdown complete")

    except Exception:
        logger.error("Error during application shutdown", exc_info=True)


def create_app() -> FastAPI:
    """创建 FastAPI 应用"""
    settings = get_settings()

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format
    )

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Rastuci e-commerce order, payment and shipping API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url="/redoc" if settings.api_debug else None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.api_debug else settings.cors_origin_list,
        allow_credentials=not settings.api_debug,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.exception_handler(RastuciException)
    async def rastuci_exception_handler(request: Request, exc: RastuciException):
        """处理 Rastuci 自定义异常"""
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理 Pydantic 验证异常"""
        logger.warning("Request validation failed", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(
            status_code=422,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": "Validation Error",
                    "status": 422,
                    "detail": "Request validation failed",
                    "code": "VALIDATION_ERROR",
                    "validation_errors": jsonable_encoder(exc.errors()),
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理 FastAPI HTTP 异常"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "ok": False,
                "error": {
                    "type": "about:blank",
                    "title": exc.detail,
                    "status": exc.status_code,
                    "detail": exc.detail,
                    "code": f"HTTP_{exc.status_code}"
                }
            }
        )

    @app.get("/healthz")
    async def health_check():
        """健康检查端点"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "rastuci_core.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
        log_config=None,
    )
