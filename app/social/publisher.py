"""
社交发帖：所有付费外部 API 调用先过月度配额，再投递到通知出口

- 配额分配器缺失（无共享存储）时只放行 emergency 类别，其余一律跳过（失败即关闭）
- 赞助证明按节奏发送：每 PROOF_POST_EVERY 次赞助发一条
"""

import structlog

from app.budget.rate_allocator import RateBudgetAllocator
from app.cache.redis_client import RedisKeys
from app.cache.state_store import StateStore
from app.config import get_settings
from app.errors import UpstreamUnavailable
from app.social.notifier import NotificationSink

log = structlog.get_logger()
settings = get_settings()


class SocialPublisher:
    """配额门控 + 尽力投递"""

    def __init__(
        self,
        sink: NotificationSink,
        allocator: RateBudgetAllocator | None = None,
        store: StateStore | None = None,
    ):
        self.sink = sink
        self.allocator = allocator
        self.store = store

    async def publish(self, category: str, text: str) -> bool:
        """返回 True 表示已投递（投递本身失败也只记日志）"""
        if self.allocator is None:
            if category != "emergency":
                log.info("配额分配器不可用，跳过付费发帖", category=category)
                return False
        elif not await self.allocator.check_and_consume(category):
            log.info("月度配额不足，跳过发帖", category=category)
            return False

        await self.sink.post_notification(text)
        return True

    async def maybe_post_sponsorship_proof(self, text: str) -> bool:
        """累计赞助次数，每 N 次发一条证明"""
        if self.store is None:
            return False
        try:
            count = await self.store.incr(RedisKeys.proof_counter())
        except UpstreamUnavailable:
            log.warning("赞助计数失败，跳过本次证明")
            return False

        if count % settings.PROOF_POST_EVERY != 0:
            log.debug("本次赞助不发证明", sponsorship_number=count)
            return False
        log.info("发送赞助证明", sponsorship_number=count)
        return await self.publish("proof", text)
