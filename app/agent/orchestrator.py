"""
Agent 周期编排器：观测 → 过滤 → 模板/推理 → 门控 → 执行 → 记账

门控顺序（全部是显式的布尔判断，不靠异常控制流程）：
1. 观测无显著变化        → FILTERED（不推理）
2. 置信度 < 阈值          → LOW_CONFIDENCE
3. 决策为 WAIT            → WAITED
4. 决策为 ALERT_HUMAN     → ALERTED（health 类别发帖）
5. 紧急模式（重新评估）    → EMERGENCY_HALT
6. 价值超过单笔上限        → REJECTED
7. SIMULATION            → SIMULATED（只记录意图，不调执行器、不动账本）
8. LIVE                  → 委托不可用 REJECTED，否则 EXECUTED
                           （执行器 → 委托账本 → 储备记账 → 赞助证明）
                           交易上链后的记账照实扣减（可能超支），且不受周期取消影响

失败语义：任一步骤抛出异常即中止本轮，带 cycle_id / trigger_source 记录日志后
原样抛给调用方；周期内不重试，由调度器或下一个 Webhook 重新触发。
进行中的周期不会被后来的触发抢占。
"""

import asyncio
import time

import structlog
from uuid6 import uuid7

from app.agent.executor import ActionExecutor
from app.agent.observation_filter import ObservationFilter
from app.agent.observe import BalanceProvider
from app.agent.reasoner import Reasoner
from app.agent.schemas import (
    AgentConfig,
    CycleOutcome,
    CycleResult,
    Decision,
    ExecutionOutcome,
    Observation,
)
from app.agent.templates import get_template_decision
from app.config import get_settings
from app.delegation.ledger import DelegationLedger
from app.observability.context import cycle_id_var, trigger_source_var
from app.observability.metrics import (
    CYCLE_DURATION,
    CYCLE_TOTAL,
    ERROR_TOTAL,
    OBSERVATION_FILTER_SKIPS,
    OBSERVATION_FILTER_TOTAL,
    TEMPLATE_RESPONSE_USED,
)
from app.reserve.emergency import EmergencyEvaluator
from app.reserve.schemas import ReserveState, WalletBalance
from app.reserve.state import ReserveStateManager
from app.social.publisher import SocialPublisher

log = structlog.get_logger()
settings = get_settings()


def build_observations(
    state: ReserveState,
    balances: list[WalletBalance],
    gas_price_gwei: float | None,
    config: AgentConfig,
) -> list[Observation]:
    """把储备快照、Gas 价格与触发事件整理成统一的观测列表"""
    observations = [
        Observation(
            source="reserves",
            chain_id=state.chain_id,
            data={
                "agent_reserves": {"eth": state.eth_balance, "usdc": state.usdc_balance},
                "chains": [b.model_dump() for b in balances],
                "runway_days": state.runway_days,
                "health_score": state.health_score,
                "emergency_mode": state.emergency_mode,
            },
        )
    ]
    if gas_price_gwei is not None:
        observations.append(
            Observation(source="gas", chain_id=state.chain_id, data={"gas_price_gwei": gas_price_gwei})
        )
    event = config.event_data
    if event is not None:
        data = dict(event.data) if isinstance(event.data, dict) else {"payload": event.data}
        observations.append(
            Observation(source="event", chain_id=event.chain_id, data={**data, "event": event.event})
        )
    return observations


_settlements: set[asyncio.Task] = set()


def _log_orphaned_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        log.error("后台赞助记账失败", error=str(task.exception()), error_type=type(task.exception()).__name__)


async def _shielded(coro) -> None:
    """调用方被取消时记账任务继续在后台完成"""
    task = asyncio.ensure_future(coro)
    _settlements.add(task)
    task.add_done_callback(_settlements.discard)
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_log_orphaned_failure)
        raise


async def drain_settlements() -> None:
    """进程退出前等待仍在后台进行的赞助记账"""
    if _settlements:
        log.info("等待后台赞助记账完成", pending=len(_settlements))
        await asyncio.gather(*_settlements, return_exceptions=True)


def _gas_cost_wei(outcome: ExecutionOutcome, fallback_price_gwei: float | None) -> int:
    if outcome.gas_cost_wei is not None:
        return outcome.gas_cost_wei
    price = outcome.gas_price_gwei if outcome.gas_price_gwei is not None else fallback_price_gwei
    return int((outcome.gas_used or 0) * round((price or 0) * 10**9))


class AgentCycleOrchestrator:
    """单轮决策周期；所有依赖由外部注入"""

    def __init__(
        self,
        reserve: ReserveStateManager,
        evaluator: EmergencyEvaluator,
        balances: BalanceProvider,
        observation_filter: ObservationFilter,
        reasoner: Reasoner,
        executor: ActionExecutor,
        ledger: DelegationLedger,
        publisher: SocialPublisher | None = None,
    ):
        self.reserve = reserve
        self.evaluator = evaluator
        self.balances = balances
        self.observation_filter = observation_filter
        self.reasoner = reasoner
        self.executor = executor
        self.ledger = ledger
        self.publisher = publisher

    async def run_cycle(self, config: AgentConfig) -> CycleResult:
        cycle_id = str(uuid7())
        cycle_token = cycle_id_var.set(cycle_id)
        source_token = trigger_source_var.set(config.trigger_source)
        start = time.monotonic()

        with structlog.contextvars.bound_contextvars(
            cycle_id=cycle_id, trigger_source=config.trigger_source
        ):
            log.info("Agent 周期开始", execution_mode=config.execution_mode)
            try:
                result = await self._run(cycle_id, config)
            except Exception as e:
                CYCLE_TOTAL.labels(trigger_source=config.trigger_source, outcome="error").inc()
                ERROR_TOTAL.labels(error_type=type(e).__name__).inc()
                log.error(
                    "Agent 周期失败，本轮中止",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                raise
            finally:
                duration_ms = int((time.monotonic() - start) * 1000)
                CYCLE_DURATION.labels(trigger_source=config.trigger_source).observe(duration_ms)
                cycle_id_var.reset(cycle_token)
                trigger_source_var.reset(source_token)

            result.duration_ms = duration_ms
            CYCLE_TOTAL.labels(trigger_source=config.trigger_source, outcome=result.outcome).inc()
            log.info(
                "Agent 周期结束",
                outcome=result.outcome,
                action=result.decision.action if result.decision else None,
                duration_ms=duration_ms,
            )
            return result

    async def _run(self, cycle_id: str, config: AgentConfig) -> CycleResult:
        def finish(
            outcome: CycleOutcome,
            decision: Decision | None,
            emergency: bool,
            execution: ExecutionOutcome | None = None,
        ) -> CycleResult:
            return CycleResult(
                cycle_id=cycle_id,
                trigger_source=config.trigger_source,
                execution_mode=config.execution_mode,
                outcome=outcome,
                decision=decision,
                emergency_mode=emergency,
                observations=len(observations),
                execution=execution,
            )

        # ── 1. 观测 ──
        balances = await self.balances.get_agent_wallet_balances()
        state = await self.reserve.refresh_from_balances(balances)
        emergency = await self.evaluator.check_and_update()
        gas_price = await self.balances.get_gas_price_gwei(state.chain_id)
        observations = build_observations(state, balances, gas_price, config)

        # ── 2. 观测过滤 ──
        OBSERVATION_FILTER_TOTAL.inc()
        if not await self.observation_filter.is_significant(observations):
            OBSERVATION_FILTER_SKIPS.inc()
            await self.observation_filter.save(observations)
            log.info("观测无显著变化，跳过推理")
            decision = Decision(
                action="WAIT",
                confidence=1.0,
                reasoning="No significant changes detected in observations",
                source="filter",
            )
            return finish("FILTERED", decision, emergency)

        # ── 3. 模板决策 / 4. 推理 ──
        decision = get_template_decision(observations, config.gas_price_max_gwei)
        if decision is not None:
            TEMPLATE_RESPONSE_USED.inc()
        else:
            decision = await self.reasoner.reason(observations)
        await self.observation_filter.save(observations)

        # ── 5. 置信度 ──
        if decision.confidence < config.confidence_threshold:
            log.info(
                "置信度低于阈值，不采取行动",
                confidence=decision.confidence,
                threshold=config.confidence_threshold,
            )
            return finish("LOW_CONFIDENCE", decision, emergency)

        if decision.action == "WAIT":
            return finish("WAITED", decision, emergency)

        if decision.action == "ALERT_HUMAN":
            if self.publisher is not None:
                await self.publisher.publish("health", f"Agent requests human review: {decision.reasoning}")
            log.warning("请求人工介入", reasoning=decision.reasoning)
            return finish("ALERTED", decision, emergency)

        # ── 6. 紧急模式复核 ──
        emergency = await self.evaluator.check_and_update()
        if emergency:
            log.warning("紧急模式生效，禁止动作", action=decision.action)
            return finish("EMERGENCY_HALT", decision, emergency)

        # ── 7. 价值上限 + 执行 ──
        if decision.estimated_value_usd > config.max_transaction_value_usd:
            log.warning(
                "决策价值超过单笔上限",
                action=decision.action,
                value_usd=decision.estimated_value_usd,
                limit_usd=config.max_transaction_value_usd,
            )
            return finish("REJECTED", decision, emergency)

        if config.execution_mode == "SIMULATION":
            log.info(
                "模拟模式：记录意图，不执行",
                action=decision.action,
                parameters=decision.parameters,
                value_usd=decision.estimated_value_usd,
            )
            return finish("SIMULATED", decision, emergency)

        delegation_id = decision.parameters.get("delegation_id")
        if decision.action == "SPONSOR_TRANSACTION" and delegation_id:
            summary = await self.ledger.get_delegation(delegation_id)
            if summary is None or summary.status != "ACTIVE" or summary.gas_budget_remaining <= 0:
                log.warning(
                    "委托不可用，拒绝赞助",
                    delegation_id=delegation_id,
                    status=summary.status if summary else None,
                )
                return finish("REJECTED", decision, emergency)

        outcome = await self.executor.execute(decision)
        if decision.action == "SPONSOR_TRANSACTION":
            # 交易已上链：记账不随周期超时或取消而中断
            await _shielded(self._settle_sponsorship(decision, outcome, delegation_id, gas_price))
        return finish("EXECUTED", decision, emergency, outcome)

    async def _settle_sponsorship(
        self,
        decision: Decision,
        outcome: ExecutionOutcome,
        delegation_id: str | None,
        gas_price: float | None,
    ) -> None:
        """赞助后记账：委托账本 → 储备快照 → 赞助证明"""
        if delegation_id and outcome.gas_used is not None:
            await self.ledger.record_usage(
                delegation_id,
                gas_used=outcome.gas_used,
                gas_cost_wei=_gas_cost_wei(outcome, gas_price),
                tx_hash=outcome.tx_hash,
                success=outcome.success,
                error_message=outcome.error,
                already_spent=True,
            )
        elif not delegation_id:
            log.warning("决策未指定委托，跳过委托记账", wallet=decision.parameters.get("wallet"))

        if not outcome.success:
            log.warning("赞助交易失败", tx_hash=outcome.tx_hash, error=outcome.error)
            return

        balances = await self.balances.get_agent_wallet_balances()
        state = await self.reserve.apply_sponsorship(
            balances,
            gas_used=outcome.gas_used,
            gas_price_gwei=outcome.gas_price_gwei if outcome.gas_price_gwei is not None else gas_price,
        )
        if self.publisher is not None:
            await self.publisher.maybe_post_sponsorship_proof(
                f"Sponsored tx {outcome.tx_hash} ({outcome.gas_used or 0} gas). "
                f"Reserve: {state.eth_balance:.4f} ETH, runway {state.runway_days:.1f} days."
            )
