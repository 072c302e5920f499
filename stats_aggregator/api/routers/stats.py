"""
上报与快照 API

- POST /report: 客户端上报
- GET /json/stats.json: 前端读取聚合快照
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ...exceptions import InvalidPayload
from ...manager import StatsManager
from ...models import ReportResponse
from ..dependencies import get_manager, verify_reporter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stats"])


@router.post("/report", response_model=ReportResponse, dependencies=[Depends(verify_reporter)])
async def report(request: Request, manager: StatsManager = Depends(get_manager)):
    """
    接收客户端上报

    请求体为 JSON 对象，返回 {"code": 0, "size": <请求体字节数>}。
    """
    body = await request.body()
    try:
        size = await run_in_threadpool(manager.report, body)
    except InvalidPayload as e:
        logger.info(f"Rejected report ({len(body)} bytes): {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ReportResponse(code=0, size=size)


@router.get("/json/stats.json")
async def get_stats_json(manager: StatsManager = Depends(get_manager)):
    """获取所有客户端的聚合快照"""
    content = await run_in_threadpool(manager.snapshot_json)
    return Response(content=content, media_type="application/json")
