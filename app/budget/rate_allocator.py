"""
外部 API 月度配额分配器

按（月份, 类别）独立计数，类别固定为 proof / stats / health / emergency。
每个计数器是存储中的一个整数 key：budget:{YYYY-MM}:{category}，新月份的 key
天然从 0 开始，不需要重置任务。

原子性：硬上限类别用存储端脚本一次完成「判断 + INCRBY」，被拒绝的调用从不
改动计数器；软上限类别直接 INCRBY。最终 used 恰好等于被放行的数量之和。

上限策略：
- proof / stats / health：硬上限，超出即拒绝
- emergency：软上限，超出仍放行，只记日志与指标（紧急告警不能被静音）

存储不可用时一律拒绝（失败即关闭），保护成本预算。
"""

from datetime import datetime, timezone

import structlog

from app.cache.redis_client import RedisKeys
from app.cache.state_store import StateStore
from app.errors import UpstreamUnavailable, ValidationError
from app.observability.metrics import BUDGET_DECISION_TOTAL

log = structlog.get_logger()

CATEGORIES = ("proof", "stats", "health", "emergency")
SOFT_CAP_CATEGORIES = frozenset({"emergency"})
COUNTER_TTL_SECONDS = 40 * 86400  # 跨过月底后自然过期
QUOTA_WARNING_RATIO = 0.9


def current_month(now: datetime | None = None) -> str:
    """UTC 月份键，格式 YYYY-MM"""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class RateBudgetAllocator:
    """按类别的月度配额"""

    def __init__(
        self,
        store: StateStore,
        budgets: dict[str, int],
        soft_cap_categories: frozenset[str] = SOFT_CAP_CATEGORIES,
        clock=None,
    ):
        missing = set(CATEGORIES) - set(budgets)
        if missing:
            raise ValueError(f"缺少类别预算配置: {sorted(missing)}")
        if any(b <= 0 for b in budgets.values()):
            raise ValueError("类别预算必须 > 0")
        self.store = store
        self.budgets = {c: budgets[c] for c in CATEGORIES}
        self.soft_cap_categories = soft_cap_categories
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def quota(self) -> int:
        return sum(self.budgets.values())

    def _month(self) -> str:
        return current_month(self._clock())

    @staticmethod
    def _validate(category: str, amount: int) -> None:
        if category not in CATEGORIES:
            raise ValidationError(f"未知的配额类别: {category}", category=category)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError(f"消耗数量必须是正整数: {amount!r}", category=category)

    # ── 核心接口 ──

    async def check_and_consume(self, category: str, amount: int = 1) -> bool:
        """原子地检查并扣减配额，返回是否放行"""
        self._validate(category, amount)
        month = self._month()
        key = RedisKeys.category_usage(month, category)
        budget = self.budgets[category]

        try:
            if category in self.soft_cap_categories:
                used = await self.store.incr(key, amount, ttl_seconds=COUNTER_TTL_SECONDS)
            else:
                used = await self.store.incr_within(key, amount, budget, ttl_seconds=COUNTER_TTL_SECONDS)
        except UpstreamUnavailable:
            BUDGET_DECISION_TOTAL.labels(category=category, result="store_error").inc()
            log.error("配额存储不可用，拒绝本次调用", category=category, month=month)
            return False

        if used is None:
            BUDGET_DECISION_TOTAL.labels(category=category, result="denied").inc()
            log.warning("类别配额已用尽", category=category, amount=amount, budget=budget, month=month)
            return False

        if used > budget:
            BUDGET_DECISION_TOTAL.labels(category=category, result="over_budget").inc()
            log.warning(
                "软上限类别超出预算，仍然放行",
                category=category,
                used=used,
                budget=budget,
                month=month,
            )
        else:
            BUDGET_DECISION_TOTAL.labels(category=category, result="allowed").inc()
            log.debug("配额已消耗", category=category, used=used, budget=budget, month=month)
            if used >= budget * QUOTA_WARNING_RATIO:
                log.warning("类别配额即将用尽", category=category, used=used, budget=budget)
        return True

    async def _used(self, month: str, category: str) -> int:
        raw = await self.store.get(RedisKeys.category_usage(month, category))
        return max(0, int(raw)) if raw else 0

    async def get_usage_stats(self) -> dict:
        """当月用量汇总；存储不可用时抛出 UpstreamUnavailable 由调用方降级"""
        month = self._month()
        by_category = {}
        for category in CATEGORIES:
            used = await self._used(month, category)
            budget = self.budgets[category]
            by_category[category] = {
                "used": used,
                "budget": budget,
                "remaining": max(0, budget - used),
                "over_budget": used > budget,
            }
        total = sum(c["used"] for c in by_category.values())
        return {
            "month": month,
            "total": total,
            "quota": self.quota,
            "remaining": max(0, self.quota - total),
            "by_category": by_category,
        }

    async def reset(self, month: str | None = None) -> None:
        """人工重置（运维/测试用）"""
        month = month or self._month()
        for category in CATEGORIES:
            await self.store.set(RedisKeys.category_usage(month, category), "0")
        log.info("月度配额已手动重置", month=month)
