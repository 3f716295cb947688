"""
餐食订阅后端服务 - 主应用入口
管理商家餐食订阅的生命周期和支付对账

主要功能模块：
- 单商家订阅与月度（多商家）订阅
- 扣款、退款和支付汇总
- 每日过期扫描
- 操作日志记录

技术栈：FastAPI + DuckDB + JWT认证
"""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager

from .core.exceptions import BaseApplicationError
from .core.error_handler import (
    application_error_handler,
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler
)
from .core.scheduler import ExpirationScheduler
from .config.settings import settings
from .api import api_router
from .services import ServiceContainer

logger = logging.getLogger(__name__)


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    app.state.db.init_database()
    logger.info("Database initialized at %s", app.state.db.db_path)

    if settings.sweep_enabled:
        app.state.scheduler.start()

    yield

    await app.state.scheduler.stop()


def create_app(services: ServiceContainer = None) -> FastAPI:
    """创建FastAPI应用"""
    configure_logging()
    services = services or ServiceContainer()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="餐食订阅与支付对账API",
        debug=settings.debug,
        lifespan=lifespan
    )
    app.state.services = services
    app.state.db = services.db
    app.state.scheduler = ExpirationScheduler(
        services.run_expiration_sweep,
        interval_seconds=settings.sweep_interval_seconds,
        today=services.today,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册异常处理器
    app.add_exception_handler(BaseApplicationError, application_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # 注册路由
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    def health_check():
        try:
            app.state.db.execute_one("SELECT 1 AS ok")
            return {
                "status": "healthy",
                "version": settings.api_version,
                "database": "connected"
            }
        except BaseApplicationError as e:
            return {
                "status": "unhealthy",
                "version": settings.api_version,
                "database": f"error: {e.message}"
            }

    @app.get("/")
    async def root():
        return {
            "name": settings.api_title,
            "version": settings.api_version,
            "description": "餐食订阅与支付对账API"
        }

    return app


# 应用实例
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
