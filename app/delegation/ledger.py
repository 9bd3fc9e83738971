"""
委托 Gas 账本：按委托记账 + 分页查询使用历史

写路径（record_usage）只由 Agent 周期在 LIVE 模式下调用：
- 条件 UPDATE 一条语句完成「检查余额 + 扣减」，并发扣减不会透支
- 交易已上链的结算（already_spent）不做检查，照实扣减，超支记录带 over_budget 标记
- 花完（或超支）时 ACTIVE 状态翻转为 EXHAUSTED
- 同一事务内追加使用记录

读路径从不修改数据。分页切片与汇总是两次独立读取，不保证事务一致。
"""

import re
from decimal import Decimal

import structlog
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.delegation import Delegation, DelegationUsage
from app.delegation.schemas import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    DelegationSummary,
    Pagination,
    UsageEvent,
    UsagePage,
)
from app.errors import DelegationBudgetExceeded, NotFoundError, ValidationError

log = structlog.get_logger()

_INT_PATTERN = re.compile(r"^[+-]?\d+$")


def _parse_int(name: str, value, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} 必须是整数", field=name)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_PATTERN.match(value.strip()):
        return int(value.strip())
    raise ValidationError(f"{name} 必须是整数: {value!r}", field=name)


def parse_pagination(limit=None, offset=None) -> Pagination:
    """
    解析分页参数：缺省 limit=50 / offset=0；
    越界或非数字直接拒绝，不做静默截断。
    """
    parsed_limit = _parse_int("limit", limit, DEFAULT_LIMIT)
    parsed_offset = _parse_int("offset", offset, 0)
    if not 1 <= parsed_limit <= MAX_LIMIT:
        raise ValidationError(f"limit 必须在 1-{MAX_LIMIT} 之间: {parsed_limit}", field="limit")
    if parsed_offset < 0:
        raise ValidationError(f"offset 不能为负数: {parsed_offset}", field="offset")
    return Pagination(limit=parsed_limit, offset=parsed_offset)


class DelegationLedger:
    """委托账本（PG 持久化）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── 读取 ──

    async def get_delegation(self, delegation_id: str) -> DelegationSummary | None:
        """委托汇总；不存在时返回 None"""
        async with self._session_factory() as db:
            delegation = await db.get(Delegation, delegation_id)
            if delegation is None:
                return None
            usage_count, total_gas = (
                await db.execute(
                    select(
                        func.count(DelegationUsage.id),
                        func.coalesce(func.sum(DelegationUsage.gas_used), 0),
                    ).where(DelegationUsage.delegation_id == delegation_id)
                )
            ).one()

        budget = int(delegation.gas_budget_wei)
        spent = int(delegation.gas_budget_spent)
        return DelegationSummary(
            id=delegation.id,
            delegator=delegation.delegator,
            agent=delegation.agent,
            status=delegation.status,
            gas_budget_wei=budget,
            gas_budget_spent=spent,
            gas_budget_remaining=budget - spent,
            usage_count=int(usage_count),
            total_gas_used=int(total_gas),
            valid_from=delegation.valid_from,
            valid_until=delegation.valid_until,
        )

    async def get_usage(
        self,
        delegation_id: str,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> list[UsageEvent]:
        """使用记录，按时间倒序；委托不存在时抛出 NotFoundError"""
        page = parse_pagination(limit, offset)
        async with self._session_factory() as db:
            if await db.get(Delegation, delegation_id) is None:
                raise NotFoundError("委托不存在", entity_id=delegation_id)
            rows = await db.execute(
                select(DelegationUsage)
                .where(DelegationUsage.delegation_id == delegation_id)
                .order_by(DelegationUsage.created_at.desc(), DelegationUsage.id.desc())
                .limit(page.limit)
                .offset(page.offset)
            )
            return [
                UsageEvent(
                    id=u.id,
                    delegation_id=u.delegation_id,
                    gas_used=u.gas_used,
                    gas_cost_wei=int(u.gas_cost_wei),
                    tx_hash=u.tx_hash,
                    success=u.success,
                    over_budget=u.over_budget,
                    error_message=u.error_message,
                    created_at=u.created_at,
                )
                for u in rows.scalars().all()
            ]

    async def get_usage_page(self, delegation_id: str, limit=None, offset=None) -> UsagePage:
        """接口层响应：身份信息 + 分页切片 + 回显分页 + 汇总"""
        page = parse_pagination(limit, offset)
        summary = await self.get_delegation(delegation_id)
        if summary is None:
            log.info("查询不存在的委托", delegation_id=delegation_id)
            raise NotFoundError("委托不存在", entity_id=delegation_id)
        usage = await self.get_usage(delegation_id, page.limit, page.offset)
        return UsagePage(
            delegation_id=delegation_id,
            delegator=summary.delegator,
            agent=summary.agent,
            usage=usage,
            count=len(usage),
            pagination=page,
            summary=summary,
        )

    # ── 写入 ──

    async def record_usage(
        self,
        delegation_id: str,
        gas_used: int,
        gas_cost_wei: int,
        tx_hash: str | None = None,
        success: bool = True,
        error_message: str | None = None,
        already_spent: bool = False,
    ) -> UsageEvent:
        """
        扣减委托预算并追加一条使用记录。

        already_spent=True 表示交易已经上链：不再检查状态与余额，照实扣减并记账，
        超出预算时记录标记为 over_budget，ACTIVE 委托翻转为 EXHAUSTED。

        Raises:
            ValidationError: gas_used / gas_cost_wei 为负
            NotFoundError: 委托不存在
            DelegationBudgetExceeded: 委托非 ACTIVE 或余额不足（仅 already_spent=False）
        """
        if gas_used < 0 or gas_cost_wei < 0:
            raise ValidationError("gas_used / gas_cost_wei 不能为负数", delegation_id=delegation_id)
        cost = Decimal(gas_cost_wei)

        async with self._session_factory() as db:
            new_spent = Delegation.gas_budget_spent + cost
            conditions = [Delegation.id == delegation_id]
            if not already_spent:
                conditions += [Delegation.status == "ACTIVE", new_spent <= Delegation.gas_budget_wei]
            result = await db.execute(
                update(Delegation)
                .where(*conditions)
                .values(
                    gas_budget_spent=new_spent,
                    status=case(
                        (
                            and_(Delegation.status == "ACTIVE", new_spent >= Delegation.gas_budget_wei),
                            "EXHAUSTED",
                        ),
                        else_=Delegation.status,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                delegation = await db.get(Delegation, delegation_id)
                if delegation is None:
                    raise NotFoundError("委托不存在", entity_id=delegation_id)
                log.warning(
                    "委托预算不足，拒绝记账",
                    delegation_id=delegation_id,
                    status=delegation.status,
                    gas_cost_wei=gas_cost_wei,
                )
                raise DelegationBudgetExceeded(
                    "委托 Gas 预算不足或已失效",
                    delegation_id=delegation_id,
                    status=delegation.status,
                )

            over_budget = False
            if already_spent:
                delegation = await db.get(Delegation, delegation_id)
                over_budget = delegation.gas_budget_spent > delegation.gas_budget_wei
                if over_budget:
                    log.warning(
                        "链上花费超出委托预算，照实记账",
                        delegation_id=delegation_id,
                        gas_cost_wei=gas_cost_wei,
                        overspent_wei=int(delegation.gas_budget_spent - delegation.gas_budget_wei),
                        tx_hash=tx_hash,
                    )

            usage = DelegationUsage(
                delegation_id=delegation_id,
                gas_used=gas_used,
                gas_cost_wei=cost,
                tx_hash=tx_hash,
                success=success,
                over_budget=over_budget,
                error_message=error_message,
            )
            db.add(usage)
            await db.commit()

            log.info(
                "委托已记账",
                delegation_id=delegation_id,
                gas_used=gas_used,
                gas_cost_wei=gas_cost_wei,
                tx_hash=tx_hash,
            )
            return UsageEvent(
                id=usage.id,
                delegation_id=delegation_id,
                gas_used=gas_used,
                gas_cost_wei=gas_cost_wei,
                tx_hash=tx_hash,
                success=success,
                over_budget=over_budget,
                error_message=error_message,
                created_at=usage.created_at,
            )
