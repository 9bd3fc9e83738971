"""
通知出口：发帖/告警的最终投递

尽力而为：任何失败只记录日志，从不向上抛出，不阻断 Agent 周期。
"""

from typing import Protocol

import httpx
import structlog

from app.config import get_settings

log = structlog.get_logger()
settings = get_settings()


class NotificationSink(Protocol):
    async def post_notification(self, text: str) -> None: ...


class LogNotificationSink:
    """未配置 Webhook 时只写日志"""

    async def post_notification(self, text: str) -> None:
        log.info("通知（仅日志）", text=text)


class WebhookNotificationSink:
    """POST JSON 到社交/告警 Webhook"""

    def __init__(self, url: str, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT
        self._client = client

    async def post_notification(self, text: str) -> None:
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json={"text": text}, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json={"text": text})
            resp.raise_for_status()
            log.info("通知已发送", status_code=resp.status_code)
        except httpx.HTTPError as e:
            log.error("通知发送失败，已忽略", url=self.url, error=str(e))


def build_notification_sink() -> NotificationSink:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL)
    return LogNotificationSink()
