"""
种子数据脚本：写入一条演示用委托（本地联调 /api/delegation/{id}/usage）

运行方式：
    python scripts/seed_delegation.py <delegator> <agent> <gas_budget_wei>

幂等设计：同一 delegator + agent 已存在 ACTIVE 委托时直接输出其 id，不重复插入。
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# 确保项目根目录在 sys.path 中
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select

from app.db.engine import async_session, engine
from app.db.models.delegation import Delegation


async def seed(delegator: str, agent: str, gas_budget_wei: int) -> str:
    async with async_session() as db:
        existing = (
            await db.execute(
                select(Delegation).where(
                    Delegation.delegator == delegator,
                    Delegation.agent == agent,
                    Delegation.status == "ACTIVE",
                )
            )
        ).scalars().first()
        if existing:
            print(f"  [跳过] 已存在 ACTIVE 委托: {existing.id}")
            return existing.id

        delegation = Delegation(
            delegator=delegator,
            agent=agent,
            gas_budget_wei=Decimal(gas_budget_wei),
        )
        db.add(delegation)
        await db.commit()
        print(f"  [新增] 委托 {delegation.id}，预算 {gas_budget_wei} wei")
        return delegation.id


async def main(args: list[str]) -> None:
    try:
        await seed(args[0], args[1], int(args[2]))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(sys.argv[1:]))
