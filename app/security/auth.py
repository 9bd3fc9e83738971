"""
接口鉴权：Bearer API Key + Reactive Webhook 签名

两者都在读写任何状态之前完成校验，失败抛出 AuthenticationError（401）。
未配置密钥时一律拒绝（失败即关闭）。
"""

import hashlib
import hmac

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import get_settings
from app.errors import AuthenticationError

log = structlog.get_logger()
settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)

SIGNATURE_HEADER = "X-Reactive-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA256(body)，十六进制小写"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def require_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """FastAPI 依赖注入：校验 Authorization: Bearer <AGENT_API_KEY>"""
    if not settings.AGENT_API_KEY:
        log.error("AGENT_API_KEY 未配置，拒绝受保护接口")
        raise AuthenticationError("服务未配置 API Key")
    if credentials is None:
        raise AuthenticationError("缺少 Bearer Token")
    if not hmac.compare_digest(credentials.credentials.encode(), settings.AGENT_API_KEY.encode()):
        log.warning("API Key 校验失败")
        raise AuthenticationError("无效的 API Key")


async def verify_reactive_signature(request: Request) -> bytes:
    """
    FastAPI 依赖注入：校验 Webhook 原始请求体的 HMAC 签名。
    返回原始 body，路由自行解析（签名必须基于未解析的字节）。
    """
    if not settings.REACTIVE_CALLBACK_SECRET:
        log.error("REACTIVE_CALLBACK_SECRET 未配置，拒绝 Webhook")
        raise AuthenticationError("服务未配置 Webhook 密钥")

    signature = request.headers.get(SIGNATURE_HEADER, "").strip()
    if not signature:
        raise AuthenticationError(f"缺少 {SIGNATURE_HEADER}")
    signature = signature.removeprefix("sha256=").lower()

    body = await request.body()
    expected = compute_signature(settings.REACTIVE_CALLBACK_SECRET, body)
    if not hmac.compare_digest(signature, expected):
        log.warning("Webhook 签名校验失败", body_size=len(body))
        raise AuthenticationError("Webhook 签名无效")
    return body
