"""
储备金数据模型

存入 Redis 的快照必须有对应的 Pydantic 模型：
写入时 model_dump_json()，读取时 model_validate_json()。
"""

from datetime import datetime

from pydantic import BaseModel, Field


class BurnRateSnapshot(BaseModel):
    """一次赞助的消耗快照，用于推算燃烧速率"""

    timestamp: datetime
    sponsorships: int = 1
    eth_burned: float = Field(ge=0)


class WalletBalance(BaseModel):
    """Agent 钱包在单条链上的余额"""

    chain_id: int
    chain_name: str
    eth_balance: float = Field(ge=0)
    usdc_balance: float = Field(ge=0)


class ReserveState(BaseModel):
    """
    共享储备快照（单 key 聚合）。

    - 存储中不存在 ⇒ 逻辑上的“无状态”，而不是全零记录
    - 只通过部分合并更新，从不删除
    - emergency_mode 只由紧急模式评估器修改
    """

    eth_balance: float = Field(0.0, ge=0)
    usdc_balance: float = Field(0.0, ge=0)
    chain_id: int

    # ── 消耗与续航 ──
    avg_burn_per_sponsorship: float = Field(0.0, ge=0)
    sponsorships_last_24h: int = Field(0, ge=0)
    daily_burn_rate_eth: float = Field(0.0, ge=0)
    runway_days: float = Field(0.0, ge=0)
    forecasted_burn_rate_7d: float = Field(0.0, ge=0)
    forecasted_runway_days: float = Field(0.0, ge=0)
    burn_rate_history: list[BurnRateSnapshot] = Field(default_factory=list)

    # ── 阈值（配置项） ──
    target_reserve_eth: float = Field(gt=0)
    critical_threshold_eth: float = Field(ge=0)

    # ── 派生指标 ──
    health_score: int = Field(0, ge=0, le=100)
    emergency_mode: bool = False

    last_updated: datetime
    version: int = Field(0, ge=0)  # 每次写入 +1


class EmergencyAssessment(BaseModel):
    """紧急模式判定结果，三个子条件分别暴露便于单独验证"""

    critical_balance: bool  # eth_balance < critical_threshold_eth
    runway_exhausted: bool  # runway_days < 1
    forecast_unhealthy: bool  # forecasted_runway_days < 3 且 health_score < 20

    @property
    def emergency(self) -> bool:
        return self.critical_balance or self.runway_exhausted or self.forecast_unhealthy
