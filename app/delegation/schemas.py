"""
委托账本数据模型（接口层）

金额字段统一为 wei 整数；数据库中的 Numeric 在这里转为 int。
"""

from datetime import datetime

from pydantic import BaseModel, Field

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


class Pagination(BaseModel):
    """生效的分页参数（原样回显给调用方）"""

    limit: int = Field(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)
    offset: int = Field(0, ge=0)


class UsageEvent(BaseModel):
    """单次 Gas 花费记录"""

    id: str
    delegation_id: str
    gas_used: int
    gas_cost_wei: int
    tx_hash: str | None = None
    success: bool
    over_budget: bool = False
    error_message: str | None = None
    created_at: datetime


class DelegationSummary(BaseModel):
    """委托汇总：budget = spent + remaining 恒成立"""

    id: str
    delegator: str
    agent: str
    status: str
    gas_budget_wei: int
    gas_budget_spent: int
    gas_budget_remaining: int
    usage_count: int
    total_gas_used: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None


class UsagePage(BaseModel):
    """GET /api/delegation/{id}/usage 的响应体"""

    delegation_id: str
    delegator: str
    agent: str
    usage: list[UsageEvent]
    count: int
    pagination: Pagination
    summary: DelegationSummary
