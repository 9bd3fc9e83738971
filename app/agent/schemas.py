"""
Agent 周期数据结构

周期内各步骤之间只传递这里的纯数据结构：
观测 Observation → 决策 Decision → 执行 ExecutionOutcome → 周期结果 CycleResult
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from app.config import get_settings

ExecutionMode = Literal["SIMULATION", "LIVE"]
TriggerSource = Literal["scheduled", "reactive-webhook", "manual"]
ActionType = Literal["WAIT", "SPONSOR_TRANSACTION", "SWAP_RESERVES", "ALERT_HUMAN"]
DecisionSource = Literal["filter", "template", "llm"]
CycleOutcome = Literal[
    "FILTERED",  # 观测无显著变化，跳过推理
    "WAITED",  # 决策为 WAIT
    "LOW_CONFIDENCE",  # 置信度低于阈值
    "EMERGENCY_HALT",  # 紧急模式，禁止动作
    "REJECTED",  # 超出单笔价值上限 / 委托不可用
    "SIMULATED",  # 模拟模式，只记录意图
    "EXECUTED",  # LIVE 模式已执行
    "ALERTED",  # 请求人工介入
]


# ── 触发载荷 ──


class TriggerPayload(BaseModel):
    """外部触发事件：chain_id 非负、event 非空，data 原样透传"""

    chain_id: int = Field(ge=0)
    event: str = Field(min_length=1)
    data: Any = None

    @field_validator("event")
    @classmethod
    def _event_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("event 不能为空")
        return value


# ── 周期配置 ──


class AgentConfig(BaseModel):
    """单次周期的运行配置"""

    confidence_threshold: float = Field(ge=0, le=1)
    max_transaction_value_usd: float = Field(gt=0)
    execution_mode: ExecutionMode = "SIMULATION"
    trigger_source: TriggerSource = "manual"
    event_data: TriggerPayload | None = None
    gas_price_max_gwei: float = Field(gt=0)

    @classmethod
    def from_settings(cls, **overrides) -> "AgentConfig":
        """从全局 Settings 加载默认值，调用方按需覆盖"""
        s = get_settings()
        values = {
            "confidence_threshold": s.CONFIDENCE_THRESHOLD,
            "max_transaction_value_usd": s.MAX_TRANSACTION_VALUE_USD,
            "gas_price_max_gwei": s.GAS_PRICE_MAX_GWEI,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# ── 观测 ──


class Observation(BaseModel):
    """一条观测：source 标明来源（reserves / gas / event）"""

    source: str
    chain_id: int | None = None
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── 决策 ──


class Decision(BaseModel):
    """推理或模板给出的决策"""

    action: ActionType
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    parameters: dict = Field(default_factory=dict)
    estimated_value_usd: float = Field(0.0, ge=0)
    source: DecisionSource = "llm"
    metadata: dict = Field(default_factory=dict)


# ── 执行 ──


class ExecutionOutcome(BaseModel):
    """执行器返回：交易被打包但回滚时 success=False，Gas 仍然被消耗"""

    success: bool
    tx_hash: str | None = None
    gas_used: int | None = None
    gas_price_gwei: float | None = None
    gas_cost_wei: int | None = None
    error: str | None = None


# ── 周期结果 ──


class CycleResult(BaseModel):
    """周期结果，API 与调度器直接返回"""

    cycle_id: str
    trigger_source: TriggerSource
    execution_mode: ExecutionMode
    outcome: CycleOutcome
    decision: Decision | None = None
    emergency_mode: bool = False
    observations: int = 0
    execution: ExecutionOutcome | None = None
    duration_ms: int = 0
