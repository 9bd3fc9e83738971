"""
定时调度脚本：按固定间隔触发 Agent 周期

运行方式：
    python scripts/run_agent.py                 # 模拟模式，每 CYCLE_INTERVAL_SECONDS 秒一轮
    python scripts/run_agent.py --live          # LIVE 模式（真实执行 + 委托记账）
    python scripts/run_agent.py --once          # 只跑一轮后退出

周期失败只记录日志，下一个 tick 重新评估（周期内不重试）。
周期超时取消时，已上链交易的记账继续在后台完成。
上一轮未结束时不会启动新一轮。
"""

import argparse
import asyncio
import sys
from pathlib import Path

# 确保项目根目录在 sys.path 中
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import structlog

from app.agent.orchestrator import drain_settlements
from app.agent.runtime import get_orchestrator
from app.agent.schemas import AgentConfig
from app.cache.redis_client import redis_client
from app.config import get_settings
from app.db.engine import engine
from app.observability.logging_config import setup_logging

settings = get_settings()
setup_logging(env=settings.ENV)
log = structlog.get_logger()


async def run_once(config: AgentConfig) -> None:
    orchestrator = get_orchestrator()
    try:
        await asyncio.wait_for(orchestrator.run_cycle(config), timeout=settings.CYCLE_TIMEOUT)
    except asyncio.TimeoutError:
        log.error("Agent 周期超时", timeout=settings.CYCLE_TIMEOUT)
    except Exception as e:
        # 编排器已记录详细上下文，这里只保证调度循环不退出
        log.error("Agent 周期失败，等待下一轮", error=str(e))


async def main(live: bool, once: bool, interval: int) -> None:
    config = AgentConfig.from_settings(
        execution_mode="LIVE" if live else "SIMULATION",
        trigger_source="scheduled",
    )
    log.info("调度启动", execution_mode=config.execution_mode, interval_seconds=interval)
    try:
        while True:
            await run_once(config)
            if once:
                break
            await asyncio.sleep(interval)
    finally:
        # 超时被取消的周期可能仍有记账在后台进行
        await drain_settlements()
        await engine.dispose()
        if redis_client is not None:
            await redis_client.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Gas 赞助 Agent 定时调度")
    parser.add_argument("--live", action="store_true", help="LIVE 模式（默认模拟）")
    parser.add_argument("--once", action="store_true", help="只运行一轮")
    parser.add_argument("--interval", type=int, default=settings.CYCLE_INTERVAL_SECONDS)
    args = parser.parse_args()
    asyncio.run(main(args.live, args.once, args.interval))
