"""
动作执行器：交易构造与签名在外部执行服务完成，这里只负责投递与结果解析

- 传输层失败 / 超时 → UpstreamUnavailable（本轮周期中止）
- 交易上链但回滚 → ExecutionOutcome(success=False)，Gas 照常记账
"""

from typing import Protocol

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from app.agent.schemas import Decision, ExecutionOutcome
from app.config import get_settings
from app.errors import UpstreamUnavailable

log = structlog.get_logger()
settings = get_settings()


class ActionExecutor(Protocol):
    async def execute(self, decision: Decision) -> ExecutionOutcome: ...


class HttpActionExecutor:
    """POST 决策到执行服务"""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url if url is not None else settings.EXECUTOR_URL
        self.timeout = timeout or settings.EXECUTOR_TIMEOUT
        self._client = client

    async def execute(self, decision: Decision) -> ExecutionOutcome:
        if not self.url:
            raise UpstreamUnavailable("未配置执行服务 EXECUTOR_URL", action=decision.action)

        payload = {
            "action": decision.action,
            "parameters": decision.parameters,
            "estimated_value_usd": decision.estimated_value_usd,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload)
            resp.raise_for_status()
            outcome = ExecutionOutcome.model_validate(resp.json())
        except httpx.HTTPError as e:
            log.error("执行服务调用失败", url=self.url, action=decision.action, error=str(e))
            raise UpstreamUnavailable(f"执行服务不可用: {e}", cause=e, action=decision.action) from e
        except (ValueError, PydanticValidationError) as e:
            log.error("执行服务响应不合法", url=self.url, action=decision.action)
            raise UpstreamUnavailable("执行服务响应不合法", cause=e, action=decision.action) from e

        log.info(
            "动作已执行",
            action=decision.action,
            success=outcome.success,
            tx_hash=outcome.tx_hash,
            gas_used=outcome.gas_used,
        )
        return outcome
