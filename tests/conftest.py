"""
测试公共配置与 fixture

环境变量必须在导入任何 app 模块之前设置（Settings 在导入时加载并缓存）。
"""

import os

os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "DB_SCHEMA": "",
    "REDIS_URL": "",
    "AGENT_API_KEY": "test-api-key",
    "REACTIVE_CALLBACK_SECRET": "test-reactive-secret",
    "PROOF_POST_EVERY": "3",
    "RESERVE_LOCK_WAIT": "1.0",
    "ENV": "test",
})

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.cache.state_store import MemoryStateStore
from app.db.models import Base, Delegation


@pytest.fixture
def store():
    """每个用例独立的进程内状态存储"""
    return MemoryStateStore()


@pytest_asyncio.fixture
async def session_factory():
    """每个用例独立的 SQLite 内存库"""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def delegation(session_factory):
    """预算 1,000,000 wei 的 ACTIVE 委托"""
    async with session_factory() as db:
        record = Delegation(
            delegator="0x" + "a" * 40,
            agent="0x" + "b" * 40,
            gas_budget_wei=Decimal(1_000_000),
            valid_from=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        db.add(record)
        await db.commit()
        return record
