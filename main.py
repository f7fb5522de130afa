"""
FastAPI应用主入口
"""
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import payments as payments_routes
from api.routes import refunds as refunds_routes
from api.routes import settings as settings_routes
from api.routes import backfill as backfill_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.context import AppContext, build_context
from infrastructure.database import create_tables


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def create_app(context_factory: Optional[Callable[[], AppContext]] = None) -> FastAPI:
    """创建应用；测试可传入自定义上下文工厂"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        ctx = (context_factory or build_context)()
        # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
        if settings.DEBUG and ctx.engine is not None:
            await create_tables(ctx.engine)
            logger.info("database_initialized", message="Database tables created (development)")
        else:
            logger.info(
                "database_migrations_required",
                message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
            )
        app.state.context = ctx

        # 上次退出时尚未发出的回调推进
        await ctx.reconciliation.resume_pending_forwards()

        yield
        # 关闭时的清理工作：取消等待中的延迟推进（意图已持久化在 orders.forward_pending）
        await ctx.aclose()
        logger.info("application_shutdown", message="Application shutdown")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="商店支付/退款状态对账服务",
    )

    # 添加中间件（注意顺序：从下往上执行）
    # 1. Request ID中间件（最先执行，为后续中间件提供request_id）
    app.add_middleware(RequestIDMiddleware)

    # 2. 日志中间件（依赖request_id）
    app.add_middleware(LoggingMiddleware)

    # 3. CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册全局异常处理器
    register_exception_handlers(app)

    # 注册路由
    app.include_router(payments_routes.router, prefix="/api")
    app.include_router(refunds_routes.router, prefix="/api")
    app.include_router(settings_routes.router, prefix="/api")
    app.include_router(backfill_routes.router, prefix="/api")

    @app.get("/ping", tags=["Health"])
    async def ping():
        return success_response(data="pong", message="pong")

    # 健康检查
    @app.get("/health", tags=["Health"])
    async def health_check():
        """健康检查端点"""
        return success_response(data={"status": "healthy"}, message="ok")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
