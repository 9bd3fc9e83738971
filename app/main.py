"""
FastAPI 应用主入口
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path

# 将项目根目录添加到 python path，以便直接运行 main.py 时能找到 app 模块
sys.path.append(str(Path(__file__).resolve().parent.parent))

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.agent.orchestrator import drain_settlements
from app.cache.redis_client import redis_client
from app.cache.state_store import get_state_store
from app.config import get_settings
from app.db.engine import engine
from app.errors import AppError
from app.observability.context import get_trigger_source
from app.observability.logging_config import setup_logging
from app.observability.metrics import ERROR_TOTAL
from app.observability.metrics_middleware import MetricsMiddleware
from app.observability.request_logger import RequestLoggerMiddleware

settings = get_settings()

# 初始化日志（在 import 时就生效）
setup_logging(env=settings.ENV)
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(application: FastAPI):
    """应用生命周期：启动时预检状态存储，关闭时清理资源"""
    log.info("应用启动", env=settings.ENV, app=settings.APP_NAME)

    # ── Warm-up：Fail Fast，共享存储不可用时拒绝启动 ──
    await get_state_store().ping()
    log.info("状态存储连接正常", shared=redis_client is not None)

    yield

    # 先等后台赞助记账落库，再关闭连接池
    await drain_settlements()
    # 关闭数据库连接池
    await engine.dispose()
    # 关闭 Redis 连接池
    if redis_client is not None:
        await redis_client.aclose()
    log.info("应用关闭，资源已释放")


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


# ── 异常映射 ──


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """业务异常统一映射为 HTTP 状态码"""
    ERROR_TOTAL.labels(error_type=exc.code).inc()
    log_method = log.error if exc.status_code >= 500 else log.warning
    log_method(
        "请求失败",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
        trigger_source=get_trigger_source(),
        **exc.context,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体校验失败与业务 ValidationError 同样返回 400"""
    log.warning("请求参数不合法", path=request.url.path)
    return JSONResponse(
        status_code=400,
        content={
            "error": "请求参数不合法",
            "code": "validation_error",
            "details": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()],
        },
    )


# ── 中间件（执行顺序：从下往上注册，从上往下执行） ──
app.add_middleware(RequestLoggerMiddleware)
app.add_middleware(MetricsMiddleware)

# ── Prometheus 指标端点 ──
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── 路由注册 ──
from app.api.health import router as health_router
from app.api.agent import router as agent_router
from app.api.delegation import router as delegation_router
from app.api.dashboard import router as dashboard_router

app.include_router(health_router)
app.include_router(agent_router)
app.include_router(delegation_router)
app.include_router(dashboard_router)


if __name__ == "__main__":
    import uvicorn
    # 允许直接运行 python app/main.py 启动服务
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.APP_PORT, reload=True)
