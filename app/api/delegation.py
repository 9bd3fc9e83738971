"""
委托使用记录查询

GET /api/delegation/{delegation_id}/usage?limit=50&offset=0
- 400 分页参数越界或非数字
- 401 缺少/错误的 API Key
- 404 委托不存在（回显 id）
"""

from fastapi import APIRouter, Depends

from app.agent.runtime import get_ledger
from app.delegation.ledger import DelegationLedger
from app.delegation.schemas import UsagePage
from app.security.auth import require_api_key

router = APIRouter(tags=["委托"], dependencies=[Depends(require_api_key)])


@router.get("/api/delegation/{delegation_id}/usage")
async def delegation_usage(
    delegation_id: str,
    limit: str | None = None,
    offset: str | None = None,
    ledger: DelegationLedger = Depends(get_ledger),
) -> UsagePage:
    # 分页参数按字符串接收，由账本统一校验（非数字也返回 400 而不是 422）
    return await ledger.get_usage_page(delegation_id, limit, offset)
