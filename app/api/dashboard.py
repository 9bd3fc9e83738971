"""
成本看板：观测过滤 / 模板决策节省的推理调用 + 社交配额
"""

from fastapi import APIRouter, Depends

from app.agent.runtime import get_rate_allocator
from app.budget.cost_savings import get_cost_savings
from app.budget.rate_allocator import RateBudgetAllocator

router = APIRouter(tags=["看板"])


@router.get("/api/dashboard/cost-savings")
async def cost_savings(allocator: RateBudgetAllocator | None = Depends(get_rate_allocator)):
    return await get_cost_savings(allocator)
