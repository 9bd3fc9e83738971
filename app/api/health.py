"""
健康检查接口：探活 + 依赖服务状态
"""

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.agent.runtime import get_store
from app.cache.state_store import StateStore, is_shared_store
from app.db.engine import get_db
from app.errors import UpstreamUnavailable

router = APIRouter(tags=["健康检查"])
log = structlog.get_logger()


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    store: StateStore = Depends(get_store),
):
    """健康检查：校验数据库 + 状态存储"""
    status = {
        "status": "ok",
        "database": "ok",
        "store": "ok" if is_shared_store(store) else "ok (in-process)",
    }

    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        status["database"] = f"error: {e}"
        status["status"] = "degraded"
        log.error("数据库健康检查失败", error=str(e))

    try:
        await store.ping()
    except UpstreamUnavailable as e:
        status["store"] = f"error: {e}"
        status["status"] = "degraded"
        log.error("状态存储健康检查失败", error=str(e))

    return status
