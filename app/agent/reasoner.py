"""
推理步骤：把观测交给 LLM，得到结构化决策

只负责调用与解析，不做任何门控（置信度 / 紧急模式 / 价值上限由编排器判断）。
调用失败或输出无法解析都按 UpstreamUnavailable 处理，本轮周期中止。
"""

import asyncio
import json
from typing import Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.agent.schemas import Decision, Observation
from app.config import get_settings
from app.errors import UpstreamUnavailable
from app.llm.client import LLMClient
from app.llm.json_output import parse_json_object
from app.observability.metrics import LLM_CALL_TOTAL

log = structlog.get_logger()
settings = get_settings()


class Reasoner(Protocol):
    async def reason(self, observations: list[Observation]) -> Decision: ...


_SYSTEM_PROMPT = """You are a gas sponsorship agent protecting a shared reserve.
Given the observations, choose exactly one action:
WAIT | SPONSOR_TRANSACTION | SWAP_RESERVES | ALERT_HUMAN.

Reply with a single JSON object:
{"action": "...", "confidence": 0.0-1.0, "reasoning": "...",
 "parameters": {...}, "estimated_value_usd": number}

For SPONSOR_TRANSACTION include "delegation_id" and "wallet" in parameters
when the observation provides them."""


class LLMReasoner:
    """LiteLLM 驱动的推理器"""

    def __init__(self, llm: LLMClient | None = None, timeout: float | None = None):
        self.llm = llm or LLMClient()
        self.timeout = timeout or settings.LLM_TIMEOUT

    async def reason(self, observations: list[Observation]) -> Decision:
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": json.dumps(
                    [obs.model_dump(mode="json") for obs in observations], ensure_ascii=False
                ),
            },
        ]
        try:
            response = await asyncio.wait_for(
                self.llm.chat(messages, response_format={"type": "json_object"}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(f"推理超时（{self.timeout}s）", cause=e) from e
        LLM_CALL_TOTAL.labels(model=response.model).inc()

        try:
            decision = Decision.model_validate({**parse_json_object(response.content), "source": "llm"})
        except (ValueError, PydanticValidationError) as e:
            log.error("推理输出不合法", model=response.model, preview=response.content[:200])
            raise UpstreamUnavailable("推理输出无法解析为决策", cause=e) from e

        log.info(
            "推理完成",
            model=response.model,
            action=decision.action,
            confidence=decision.confidence,
            tokens=response.usage.get("total_tokens", 0),
        )
        return decision
