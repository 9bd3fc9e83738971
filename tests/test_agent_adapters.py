"""
外部适配器测试：推理输出解析、执行服务、JSON-RPC 余额查询
"""

import asyncio
import json

import httpx
import pytest

from app.agent.executor import HttpActionExecutor
from app.agent.observe import RpcBalanceProvider
from app.agent.reasoner import LLMReasoner
from app.agent.schemas import Decision, Observation
from app.errors import UpstreamUnavailable
from app.llm.client import LLMResponse
from app.llm.json_output import parse_json_object

WALLET = "0x" + "1" * 40
USDC = "0x" + "2" * 40


class _ScriptedLLM:
    def __init__(self, content: str = "", delay: float = 0.0):
        self.content = content
        self.delay = delay
        self.messages = None

    async def chat(self, messages, **kwargs):
        self.messages = messages
        if self.delay:
            await asyncio.sleep(self.delay)
        return LLMResponse(content=self.content, model="test-model", usage={"total_tokens": 12}, finish_reason="stop")


class TestParseJsonObject:
    def test_fenced_output(self):
        raw = '```json\n{"action": "WAIT", "confidence": 0.9}\n```'
        assert parse_json_object(raw) == {"action": "WAIT", "confidence": 0.9}

    def test_surrounding_prose_and_trailing_comma(self):
        raw = 'Here is my decision: {"action": "WAIT", "confidence": 0.9,} hope it helps'
        assert parse_json_object(raw)["action"] == "WAIT"

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object("[1, 2, 3]")


class TestLLMReasoner:
    @pytest.mark.asyncio
    async def test_parses_decision(self):
        llm = _ScriptedLLM(json.dumps({
            "action": "SPONSOR_TRANSACTION",
            "confidence": 0.85,
            "reasoning": "wallet is empty",
            "parameters": {"delegation_id": "d-1"},
            "estimated_value_usd": 2.5,
        }))
        decision = await LLMReasoner(llm).reason([Observation(source="gas", data={"gas_price_gwei": 0.2})])

        assert decision.action == "SPONSOR_TRANSACTION"
        assert decision.source == "llm"
        assert decision.parameters == {"delegation_id": "d-1"}
        assert "gas_price_gwei" in llm.messages[1]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        [
            "I cannot decide",
            json.dumps({"action": "PANIC", "confidence": 0.9, "reasoning": "x"}),
            json.dumps({"action": "WAIT", "confidence": 1.5, "reasoning": "x"}),
        ],
    )
    async def test_invalid_output_is_upstream_error(self, content):
        with pytest.raises(UpstreamUnavailable):
            await LLMReasoner(_ScriptedLLM(content)).reason([])

    @pytest.mark.asyncio
    async def test_timeout(self):
        llm = _ScriptedLLM('{"action": "WAIT", "confidence": 1, "reasoning": "x"}', delay=1.0)
        with pytest.raises(UpstreamUnavailable):
            await LLMReasoner(llm, timeout=0.05).reason([])


class TestHttpActionExecutor:
    @pytest.mark.asyncio
    async def test_posts_decision_and_parses_outcome(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.read()))
            return httpx.Response(200, json={"success": True, "tx_hash": "0xabc", "gas_used": 21000})

        decision = Decision(
            action="SPONSOR_TRANSACTION", confidence=0.9, reasoning="x", parameters={"wallet": WALLET}, estimated_value_usd=1.0
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            outcome = await HttpActionExecutor("http://exec.test/run", client=client).execute(decision)

        assert outcome.success is True
        assert outcome.gas_used == 21000
        assert seen == [{"action": "SPONSOR_TRANSACTION", "parameters": {"wallet": WALLET}, "estimated_value_usd": 1.0}]

    @pytest.mark.asyncio
    async def test_missing_url(self):
        with pytest.raises(UpstreamUnavailable):
            await HttpActionExecutor(url="").execute(Decision(action="WAIT", confidence=1, reasoning="x"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [httpx.Response(502), httpx.Response(200, text="oops"), httpx.Response(200, json={"tx_hash": "0x1"})],
    )
    async def test_bad_responses(self, response):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as client:
            with pytest.raises(UpstreamUnavailable):
                await HttpActionExecutor("http://exec.test/run", client=client).execute(
                    Decision(action="SWAP_RESERVES", confidence=1, reasoning="x")
                )


def _rpc_handler(results: dict, calls: list):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.read())
        calls.append(body["method"])
        result = results[body["method"]]
        if isinstance(result, Exception):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": str(result)}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    return handler


class TestRpcBalanceProvider:
    @pytest.mark.asyncio
    async def test_reads_eth_and_usdc(self):
        calls = []
        results = {
            "eth_getBalance": hex(2 * 10**17),  # 0.2 ETH
            "eth_call": hex(150 * 10**6),  # 150 USDC
            "eth_gasPrice": hex(3 * 10**8),  # 0.3 Gwei
        }
        async with httpx.AsyncClient(transport=httpx.MockTransport(_rpc_handler(results, calls))) as client:
            provider = RpcBalanceProvider({8453: "http://rpc.test"}, WALLET, {8453: USDC}, client=client)
            balances = await provider.get_agent_wallet_balances()
            gas = await provider.get_gas_price_gwei(8453)

        [balance] = balances
        assert balance.chain_name == "Base"
        assert balance.eth_balance == pytest.approx(0.2)
        assert balance.usdc_balance == pytest.approx(150.0)
        assert gas == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_rpc_error_means_unknown_balances(self):
        calls = []
        results = {"eth_getBalance": RuntimeError("boom"), "eth_gasPrice": RuntimeError("boom")}
        async with httpx.AsyncClient(transport=httpx.MockTransport(_rpc_handler(results, calls))) as client:
            provider = RpcBalanceProvider({1: "http://rpc.test"}, WALLET, {}, client=client)
            assert await provider.get_agent_wallet_balances() == []
            assert await provider.get_gas_price_gwei(1) is None

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        provider = RpcBalanceProvider({}, "", {})
        assert await provider.get_agent_wallet_balances() == []
        assert await provider.get_gas_price_gwei(8453) is None
