"""
Agent 周期编排测试：门控顺序、模拟/实盘分支、记账副作用、失败语义
"""

import asyncio

import pytest

from app.agent.observation_filter import ObservationFilter
from app.agent.orchestrator import AgentCycleOrchestrator, build_observations, drain_settlements
from app.agent.schemas import AgentConfig, Decision, ExecutionOutcome, TriggerPayload
from app.budget.rate_allocator import RateBudgetAllocator
from app.cache.state_store import MemoryStateStore
from app.delegation.ledger import DelegationLedger
from app.errors import UpstreamUnavailable
from app.observability.metrics import read_counter
from app.reserve.emergency import EmergencyEvaluator
from app.reserve.state import ReserveStateManager, default_reserve_state
from app.social.publisher import SocialPublisher
from fakes import FakeBalances, FakeExecutor, FakeReasoner, RecordingSink, SpyLedger

LOW_GAS_EVENT = TriggerPayload(
    chain_id=8453,
    event="LowGasDetected",
    data={"low_gas_wallets": [{"wallet": "0x" + "c" * 40, "balance_eth": 0.0001}]},
)


def _sponsor(delegation_id: str | None = "d-1", confidence: float = 0.9, value: float = 5.0) -> Decision:
    parameters = {"wallet": "0x" + "c" * 40}
    if delegation_id:
        parameters["delegation_id"] = delegation_id
    return Decision(
        action="SPONSOR_TRANSACTION",
        confidence=confidence,
        reasoning="user is out of gas",
        parameters=parameters,
        estimated_value_usd=value,
    )


def _config(**overrides) -> AgentConfig:
    return AgentConfig.from_settings(**{"event_data": LOW_GAS_EVENT, **overrides})


class _GatedLedger(SpyLedger):
    """记账在 gate 打开前挂起，用于在结算途中取消周期"""

    def __init__(self, inner):
        super().__init__(inner)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def record_usage(self, delegation_id, **kwargs):
        self.entered.set()
        await self.gate.wait()
        return await super().record_usage(delegation_id, **kwargs)


class _Harness:
    """一次性装配编排器及其替身"""

    def __init__(self, store, reasoner=None, balances=None, executor=None, ledger=None, allocator=None):
        self.store = store
        self.sink = RecordingSink()
        self.reserve = ReserveStateManager(store)
        self.publisher = SocialPublisher(self.sink, allocator, store)
        self.balances = balances or FakeBalances()
        self.reasoner = reasoner or FakeReasoner(_sponsor())
        self.executor = executor or FakeExecutor()
        self.ledger = ledger or SpyLedger()
        self.orchestrator = AgentCycleOrchestrator(
            reserve=self.reserve,
            evaluator=EmergencyEvaluator(self.reserve, self.publisher),
            balances=self.balances,
            observation_filter=ObservationFilter(store),
            reasoner=self.reasoner,
            executor=self.executor,
            ledger=self.ledger,
            publisher=self.publisher,
        )

    async def run(self, **overrides):
        return await self.orchestrator.run_cycle(_config(**overrides))


class TestBuildObservations:
    def test_includes_reserves_gas_and_event(self):
        state = default_reserve_state().model_copy(update={"eth_balance": 0.4, "usdc_balance": 12.0})
        observations = build_observations(state, [], 0.3, _config())

        assert [o.source for o in observations] == ["reserves", "gas", "event"]
        assert observations[0].data["agent_reserves"] == {"eth": 0.4, "usdc": 12.0}
        assert observations[1].data["gas_price_gwei"] == 0.3
        assert observations[2].data["event"] == "LowGasDetected"
        assert observations[2].chain_id == 8453

    def test_unknown_gas_and_scalar_event_data(self):
        event = TriggerPayload(chain_id=1, event="Ping", data="raw")
        observations = build_observations(default_reserve_state(), [], None, _config(event_data=event))

        assert [o.source for o in observations] == ["reserves", "event"]
        assert observations[1].data == {"payload": "raw", "event": "Ping"}


class TestGates:
    @pytest.mark.asyncio
    async def test_simulation_never_executes_or_debits(self, store):
        h = _Harness(store)
        result = await h.run(execution_mode="SIMULATION")

        assert result.outcome == "SIMULATED"
        assert result.decision.action == "SPONSOR_TRANSACTION"
        assert result.execution is None
        assert h.executor.calls == []
        assert h.ledger.calls == []
        assert (await h.reserve.get_reserve_state()).sponsorships_last_24h == 0

    @pytest.mark.asyncio
    async def test_low_confidence_stops_before_acting(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(confidence=0.5)))
        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "LOW_CONFIDENCE"
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_confidence_equal_to_threshold_passes(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(confidence=0.8)))
        result = await h.run(confidence_threshold=0.8)
        assert result.outcome == "SIMULATED"

    @pytest.mark.asyncio
    async def test_wait_decision(self, store):
        wait = Decision(action="WAIT", confidence=0.9, reasoning="nothing to do")
        h = _Harness(store, reasoner=FakeReasoner(wait))
        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "WAITED"
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_empty_balances_halt_in_emergency(self, store):
        h = _Harness(store, balances=FakeBalances(balances=[]))
        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "EMERGENCY_HALT"
        assert result.emergency_mode is True
        assert h.executor.calls == []
        assert h.ledger.calls == []
        assert any("EMERGENCY" in m for m in h.sink.messages)

    @pytest.mark.asyncio
    async def test_value_above_limit_rejected(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(value=500.0)))
        result = await h.run(execution_mode="LIVE", max_transaction_value_usd=100.0)

        assert result.outcome == "REJECTED"
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_value_equal_to_limit_passes(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(value=100.0)))
        result = await h.run(max_transaction_value_usd=100.0)
        assert result.outcome == "SIMULATED"

    @pytest.mark.asyncio
    async def test_alert_human_publishes_health_post(self, store):
        alert = Decision(action="ALERT_HUMAN", confidence=0.95, reasoning="reserve drifting")
        allocator = RateBudgetAllocator(
            MemoryStateStore(), {"proof": 5, "stats": 5, "health": 5, "emergency": 5}
        )
        h = _Harness(store, reasoner=FakeReasoner(alert), allocator=allocator)
        result = await h.run()

        assert result.outcome == "ALERTED"
        assert h.sink.messages == ["Agent requests human review: reserve drifting"]
        assert (await allocator.get_usage_stats())["by_category"]["health"]["used"] == 1


class TestFilterAndTemplates:
    @pytest.mark.asyncio
    async def test_repeated_observations_filtered(self, store):
        h = _Harness(store)
        skips_before = read_counter("sponsor_observation_filter_skips")

        first = await h.run()
        second = await h.run()

        assert first.outcome == "SIMULATED"
        assert second.outcome == "FILTERED"
        assert second.decision.source == "filter"
        assert h.reasoner.calls == 1
        assert read_counter("sponsor_observation_filter_skips") - skips_before == 1

    @pytest.mark.asyncio
    async def test_no_opportunities_template_skips_reasoner(self, store):
        h = _Harness(store)
        used_before = read_counter("sponsor_template_response_used")

        result = await h.run(event_data=None)

        assert result.outcome == "WAITED"
        assert result.decision.source == "template"
        assert h.reasoner.calls == 0
        assert read_counter("sponsor_template_response_used") - used_before == 1

    @pytest.mark.asyncio
    async def test_high_gas_template(self, store):
        h = _Harness(store, balances=FakeBalances(gas_price=5.0))
        result = await h.run(gas_price_max_gwei=2.0)

        assert result.outcome == "WAITED"
        assert result.decision.metadata["template"] == "gas-too-high"
        assert h.reasoner.calls == 0


class TestLiveExecution:
    @pytest.mark.asyncio
    async def test_sponsorship_settles_ledger_and_reserve(self, store, session_factory, delegation):
        ledger = SpyLedger(DelegationLedger(session_factory))
        executor = FakeExecutor(
            ExecutionOutcome(success=True, tx_hash="0x" + "e" * 64, gas_used=21000, gas_price_gwei=0.1, gas_cost_wei=50_000)
        )
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), executor=executor, ledger=ledger)

        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "EXECUTED"
        assert result.execution.tx_hash == "0x" + "e" * 64
        assert len(executor.calls) == 1
        assert [c[0] for c in ledger.calls] == ["get_delegation", "record_usage"]

        summary = await ledger.inner.get_delegation(delegation.id)
        assert summary.gas_budget_spent == 50_000
        assert summary.usage_count == 1

        state = await h.reserve.get_reserve_state()
        assert state.sponsorships_last_24h == 1
        assert len(state.burn_rate_history) == 1

    @pytest.mark.asyncio
    async def test_gas_cost_derived_from_price(self, store, session_factory, delegation):
        ledger = SpyLedger(DelegationLedger(session_factory))
        executor = FakeExecutor(ExecutionOutcome(success=True, tx_hash="0x1", gas_used=1000, gas_price_gwei=0.0000001))
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), executor=executor, ledger=ledger)

        await h.run(execution_mode="LIVE")

        # 0.0000001 gwei = 100 wei
        assert ledger.calls[1][2]["gas_cost_wei"] == 100_000

    @pytest.mark.asyncio
    async def test_failed_transaction_recorded_but_reserve_untouched(self, store, session_factory, delegation):
        ledger = SpyLedger(DelegationLedger(session_factory))
        executor = FakeExecutor(
            ExecutionOutcome(success=False, tx_hash="0x2", gas_used=30000, gas_cost_wei=1_000, error="reverted")
        )
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), executor=executor, ledger=ledger)

        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "EXECUTED"
        [usage] = await ledger.inner.get_usage(delegation.id)
        assert usage.success is False
        assert (await h.reserve.get_reserve_state()).sponsorships_last_24h == 0

    @pytest.mark.asyncio
    async def test_cost_above_remaining_budget_still_settled(self, store, session_factory, delegation):
        inner = DelegationLedger(session_factory)
        await inner.record_usage(delegation.id, gas_used=1, gas_cost_wei=999_000)
        executor = FakeExecutor(
            ExecutionOutcome(success=True, tx_hash="0xabc", gas_used=21000, gas_price_gwei=0.1, gas_cost_wei=50_000)
        )
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), executor=executor, ledger=SpyLedger(inner))

        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "EXECUTED"
        assert len(executor.calls) == 1
        usage = await inner.get_usage(delegation.id)
        assert [(u.gas_cost_wei, u.tx_hash, u.over_budget) for u in usage] == [
            (50_000, "0xabc", True),
            (999_000, None, False),
        ]
        summary = await inner.get_delegation(delegation.id)
        assert summary.status == "EXHAUSTED"
        assert summary.gas_budget_spent == 1_049_000
        assert (await h.reserve.get_reserve_state()).sponsorships_last_24h == 1

    @pytest.mark.asyncio
    async def test_cancelled_cycle_still_settles(self, store, session_factory, delegation):
        ledger = _GatedLedger(DelegationLedger(session_factory))
        executor = FakeExecutor(
            ExecutionOutcome(success=True, tx_hash="0xdef", gas_used=21000, gas_price_gwei=0.1, gas_cost_wei=7_000)
        )
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), executor=executor, ledger=ledger)

        cycle = asyncio.create_task(h.run(execution_mode="LIVE"))
        await ledger.entered.wait()
        cycle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cycle

        ledger.gate.set()
        await drain_settlements()

        summary = await ledger.inner.get_delegation(delegation.id)
        assert summary.gas_budget_spent == 7_000
        assert summary.usage_count == 1
        assert (await h.reserve.get_reserve_state()).sponsorships_last_24h == 1

    @pytest.mark.asyncio
    async def test_exhausted_delegation_rejected_before_execution(self, store, session_factory, delegation):
        inner = DelegationLedger(session_factory)
        await inner.record_usage(delegation.id, gas_used=1, gas_cost_wei=1_000_000)
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation.id)), ledger=SpyLedger(inner))

        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "REJECTED"
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_delegation_rejected(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor("missing")))
        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "REJECTED"
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_sponsorship_without_delegation_skips_ledger(self, store):
        h = _Harness(store, reasoner=FakeReasoner(_sponsor(delegation_id=None)))
        result = await h.run(execution_mode="LIVE")

        assert result.outcome == "EXECUTED"
        assert h.ledger.calls == []
        assert (await h.reserve.get_reserve_state()).sponsorships_last_24h == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_reasoner_error_propagates_and_is_counted(self, store):
        h = _Harness(store, reasoner=FakeReasoner(error=UpstreamUnavailable("llm down")))
        errors_before = read_counter("sponsor_error")
        cycles_before = read_counter("sponsor_cycle")

        with pytest.raises(UpstreamUnavailable):
            await h.run(execution_mode="LIVE")

        assert read_counter("sponsor_error") - errors_before == 1
        assert read_counter("sponsor_cycle") - cycles_before == 1
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_each_cycle_gets_its_own_id(self, store):
        h = _Harness(store)
        first = await h.run()
        second = await h.run(event_data=None)
        assert first.cycle_id != second.cycle_id
