"""
依赖注入模块

提供 FastAPI 依赖项。
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ..manager import StatsManager

_basic = HTTPBasic(auto_error=False)


def get_manager(request: Request) -> StatsManager:
    """获取应用绑定的 StatsManager"""
    return request.app.state.manager


def verify_reporter(
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic),
    manager: StatsManager = Depends(get_manager),
):
    """
    验证上报账号（HTTP Basic）

    未配置任何账号时跳过验证（开发环境）。
    """
    auth = manager.config.auth
    if not auth.enabled:
        return

    if credentials is None or not auth.verify(credentials.username, credentials.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
