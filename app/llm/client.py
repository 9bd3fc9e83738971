"""
LLM 客户端：LiteLLM 异步调用的薄封装（推理器唯一的模型入口）

供应商异常统一包装为 LLMError（UpstreamUnavailable 子类），周期编排器按上游不可用处理。
"""

from dataclasses import dataclass, field

import structlog
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    RateLimitError,
    Timeout,
)

from app.config import get_settings
from app.errors import UpstreamUnavailable

log = structlog.get_logger()
settings = get_settings()

# 按顺序匹配，取第一个命中的说明
_FAILURE_LABELS = (
    (AuthenticationError, "认证失败，请检查 LLM_API_KEY"),
    (RateLimitError, "请求限流"),
    (Timeout, "调用超时"),
    (APIConnectionError, "连接失败"),
    (APIError, "API 返回错误"),
)
_LLM_FAILURES = tuple(exc_type for exc_type, _ in _FAILURE_LABELS)


class LLMError(UpstreamUnavailable):
    """模型调用失败"""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: dict = field(default_factory=dict)  # prompt_tokens / completion_tokens / total_tokens
    finish_reason: str = "stop"


class LLMClient:
    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: int | None = None,
    ):
        self.model = model or settings.LLM_DEFAULT_MODEL
        self.api_key = api_key or settings.LLM_API_KEY
        self.api_base = api_base or settings.LLM_API_BASE
        self.timeout = timeout or settings.LLM_TIMEOUT

    def _request(self, messages: list[dict], temperature: float, max_tokens: int, response_format: dict | None) -> dict:
        request: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "timeout": self.timeout,
        }
        optional = {"api_key": self.api_key, "api_base": self.api_base, "response_format": response_format}
        request.update({k: v for k, v in optional.items() if v})
        return request

    async def chat(
        self,
        messages: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 1024,
        response_format: dict | None = None,
    ) -> LLMResponse:
        """
        单次补全。决策类调用固定 temperature=0，需要结构化输出时传
        response_format={"type": "json_object"}。
        """
        try:
            response = await acompletion(**self._request(messages, temperature, max_tokens, response_format))
        except _LLM_FAILURES as e:
            label = next(text for exc_type, text in _FAILURE_LABELS if isinstance(e, exc_type))
            log.error("LLM 调用失败", model=self.model, reason=label, error=str(e))
            raise LLMError(f"LLM {label}: {e}", cause=e, model=self.model) from e

        choice = response.choices[0]
        usage = response.usage
        result = LLMResponse(
            content=choice.message.content or "",
            model=response.model or self.model,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
                "total_tokens": getattr(usage, "total_tokens", 0),
            },
            finish_reason=choice.finish_reason or "stop",
        )
        log.debug("LLM 调用完成", model=result.model, tokens=result.usage["total_tokens"])
        return result
