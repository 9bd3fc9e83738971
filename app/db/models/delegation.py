"""
委托模型：委托人授予 Agent 的 Gas 额度 + 只追加的使用记录

金额统一以 wei 存储（Numeric(78, 0) 覆盖 uint256）。
使用记录只追加，不更新不删除。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from uuid6 import uuid7

from app.db.models.base import Base, settings

WEI = Numeric(78, 0)


def _new_id() -> str:
    return str(uuid7())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fk(table_column: str) -> str:
    return f"{settings.DB_SCHEMA}.{table_column}" if settings.DB_SCHEMA else table_column


class Delegation(Base):
    """委托表：在授权时创建（不在本服务职责内），赞助时扣减"""

    __tablename__ = "delegations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    delegator: Mapped[str] = mapped_column(String(42), nullable=False, index=True, comment="委托人地址")
    agent: Mapped[str] = mapped_column(String(42), nullable=False, index=True, comment="被授权 Agent 地址")
    gas_budget_wei: Mapped[Decimal] = mapped_column(WEI, nullable=False, comment="Gas 总预算")
    gas_budget_spent: Mapped[Decimal] = mapped_column(
        WEI, nullable=False, default=Decimal(0), comment="已花费"
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="ACTIVE", comment="ACTIVE/REVOKED/EXPIRED/EXHAUSTED"
    )
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DelegationUsage(Base):
    """使用记录：每次赞助一条"""

    __tablename__ = "delegation_usages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    delegation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(_fk("delegations.id")), nullable=False, index=True
    )
    gas_used: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="消耗 Gas 单位")
    gas_cost_wei: Mapped[Decimal] = mapped_column(WEI, nullable=False, comment="实际花费")
    tx_hash: Mapped[str | None] = mapped_column(String(66), comment="交易哈希")
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    over_budget: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, comment="交易已上链但超出剩余预算"
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True, comment="创建时间"
    )
