"""
结构化日志：structlog + contextvars

trace_id（HTTP 请求）与 cycle_id / trigger_source（Agent 周期）通过
merge_contextvars 自动并入每条日志。
- production：JSON 一行一条，交给日志采集
- 其他环境：彩色控制台输出
"""

import logging
import sys

import structlog

# 第三方库的 INFO 日志过于嘈杂（httpx 每个请求一条，LiteLLM 每次调用多条）
_NOISY_LOGGERS = ("httpx", "httpcore", "LiteLLM", "aiosqlite")


def setup_logging(env: str = "development", level: int = logging.INFO) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if env == "production":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=env != "test"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 标准库 logging（uvicorn / SQLAlchemy / alembic）输出到同一个流
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
