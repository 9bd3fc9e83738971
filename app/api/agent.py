"""
Agent 接口：手动触发周期 / Reactive Webhook 触发 / 运行状态

- POST /api/agent/cycle     — Bearer API Key
- POST /api/reactive/event  — Bearer API Key + X-Reactive-Signature（原始 body 的 HMAC）
- GET  /api/agent/status    — 储备快照 + 紧急判定 + 当月配额
"""

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.agent.orchestrator import AgentCycleOrchestrator
from app.agent.runtime import get_orchestrator, get_rate_allocator, get_reserve_manager
from app.agent.schemas import AgentConfig, CycleResult, ExecutionMode, TriggerPayload
from app.budget.rate_allocator import RateBudgetAllocator
from app.errors import UpstreamUnavailable, ValidationError
from app.reserve.emergency import evaluate_emergency
from app.reserve.state import ReserveStateManager
from app.security.auth import require_api_key, verify_reactive_signature

router = APIRouter(tags=["Agent"])
log = structlog.get_logger()

# Reactive 事件只做模拟推演，门槛沿用事件回调的默认值
REACTIVE_CONFIDENCE_THRESHOLD = 0.75
REACTIVE_MAX_TRANSACTION_VALUE_USD = 10000.0


class AgentCycleRequest(BaseModel):
    execution_mode: ExecutionMode = "SIMULATION"
    confidence_threshold: float | None = Field(None, ge=0, le=1)
    max_transaction_value_usd: float | None = Field(None, gt=0)
    gas_price_max_gwei: float | None = Field(None, gt=0)
    event_data: TriggerPayload | None = None


@router.post("/api/agent/cycle", dependencies=[Depends(require_api_key)])
async def trigger_cycle(
    req: AgentCycleRequest | None = None,
    orchestrator: AgentCycleOrchestrator = Depends(get_orchestrator),
) -> CycleResult:
    """手动触发一轮周期（默认模拟模式）"""
    req = req or AgentCycleRequest()
    config = AgentConfig.from_settings(
        trigger_source="manual",
        **req.model_dump(),
    )
    return await orchestrator.run_cycle(config)


@router.post("/api/reactive/event", dependencies=[Depends(require_api_key)])
async def reactive_event(
    body: bytes = Depends(verify_reactive_signature),
    orchestrator: AgentCycleOrchestrator = Depends(get_orchestrator),
):
    """链上事件回调：签名通过后以模拟模式跑一轮"""
    try:
        payload = TriggerPayload.model_validate_json(body)
    except PydanticValidationError as e:
        raise ValidationError("事件载荷不合法", details=e.errors(include_url=False, include_context=False, include_input=False)) from e

    log.info("收到 Reactive 事件", chain_id=payload.chain_id, event=payload.event)
    config = AgentConfig.from_settings(
        confidence_threshold=REACTIVE_CONFIDENCE_THRESHOLD,
        max_transaction_value_usd=REACTIVE_MAX_TRANSACTION_VALUE_USD,
        execution_mode="SIMULATION",
        trigger_source="reactive-webhook",
        event_data=payload,
    )
    result = await orchestrator.run_cycle(config)
    return {"ok": True, "triggered": True, "cycle_id": result.cycle_id, "outcome": result.outcome}


@router.get("/api/agent/status")
async def agent_status(
    reserve: ReserveStateManager = Depends(get_reserve_manager),
    allocator: RateBudgetAllocator | None = Depends(get_rate_allocator),
):
    """储备与配额概览；各部分独立降级为 null"""
    state = await reserve.get_reserve_state()

    budget = None
    if allocator is not None:
        try:
            budget = await allocator.get_usage_stats()
        except UpstreamUnavailable:
            log.warning("读取配额用量失败，状态接口降级")

    return {
        "reserve": state.model_dump(mode="json", exclude={"burn_rate_history"}) if state else None,
        "emergency": evaluate_emergency(state).model_dump() if state else None,
        "budget": budget,
    }
