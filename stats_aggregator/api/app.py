"""
FastAPI 应用配置

配置 CORS、静态文件托管、路由注册。
"""

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .. import __version__
from ..manager import StatsManager
from .routers import stats

logger = logging.getLogger(__name__)


def create_app(manager: StatsManager) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        manager: 已构造的 StatsManager，挂在 app.state 上供路由使用
    """
    config = manager.config

    app = FastAPI(
        title="Stats Aggregator",
        description="客户端状态上报聚合服务",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.manager = manager

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册路由
    app.include_router(stats.router)

    # 静态文件托管（前端）
    if config.frontend.enabled:
        frontend_path = Path(config.frontend.path)
        if frontend_path.exists():
            app.mount("/", StaticFiles(directory=str(frontend_path), html=True), name="frontend")
            logger.info(f"Serving frontend from {frontend_path}")
        else:
            logger.warning(f"Frontend path not found: {frontend_path}")

    return app
