"""
月度配额分配器测试
"""

import asyncio
from datetime import datetime, timezone

import pytest

from app.budget.rate_allocator import CATEGORIES, RateBudgetAllocator, current_month
from app.cache.redis_client import RedisKeys
from app.errors import ValidationError
from fakes import FailingStore, YieldingStore

BUDGETS = {"proof": 5, "stats": 2, "health": 3, "emergency": 1}


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def allocator(store):
    return RateBudgetAllocator(store, BUDGETS)


class TestConstruction:
    def test_missing_category_rejected(self, store):
        with pytest.raises(ValueError):
            RateBudgetAllocator(store, {"proof": 1, "stats": 1, "health": 1})

    def test_non_positive_budget_rejected(self, store):
        with pytest.raises(ValueError):
            RateBudgetAllocator(store, {**BUDGETS, "stats": 0})

    def test_quota_is_sum_of_budgets(self, allocator):
        assert allocator.quota == 11

    def test_month_key_format(self):
        assert current_month(datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2026-03"


class TestCheckAndConsume:
    @pytest.mark.asyncio
    async def test_hard_cap_denies_after_budget(self, allocator):
        results = [await allocator.check_and_consume("stats") for _ in range(4)]
        assert results == [True, True, False, False]

        stats = await allocator.get_usage_stats()
        assert stats["by_category"]["stats"]["used"] == 2
        assert stats["by_category"]["stats"]["remaining"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_admit_exactly_budget(self, allocator):
        results = await asyncio.gather(*(allocator.check_and_consume("proof") for _ in range(20)))

        assert sum(results) == BUDGETS["proof"]
        stats = await allocator.get_usage_stats()
        assert stats["by_category"]["proof"]["used"] == BUDGETS["proof"]

    @pytest.mark.asyncio
    async def test_categories_are_independent(self, allocator):
        for _ in range(2):
            await allocator.check_and_consume("stats")
        assert await allocator.check_and_consume("stats") is False
        assert await allocator.check_and_consume("health") is True

    @pytest.mark.asyncio
    async def test_amount_larger_than_remaining_denied(self, allocator):
        assert await allocator.check_and_consume("proof", 4) is True
        assert await allocator.check_and_consume("proof", 2) is False
        assert await allocator.check_and_consume("proof", 1) is True

    @pytest.mark.asyncio
    async def test_denied_large_call_does_not_block_small_one(self):
        allocator = RateBudgetAllocator(YieldingStore(), BUDGETS)
        assert await allocator.check_and_consume("proof", 4) is True

        big, small = await asyncio.gather(
            allocator.check_and_consume("proof", 3),
            allocator.check_and_consume("proof", 1),
        )

        assert (big, small) == (False, True)
        assert (await allocator.get_usage_stats())["by_category"]["proof"]["used"] == 5

    @pytest.mark.asyncio
    async def test_denial_leaves_counter_untouched(self, allocator, store):
        await allocator.check_and_consume("stats", 2)
        assert await allocator.check_and_consume("stats", 5) is False
        assert await store.get(RedisKeys.category_usage(current_month(), "stats")) == "2"

    @pytest.mark.asyncio
    async def test_emergency_soft_cap_still_admits(self, allocator):
        assert await allocator.check_and_consume("emergency") is True
        assert await allocator.check_and_consume("emergency") is True

        stats = await allocator.get_usage_stats()
        emergency = stats["by_category"]["emergency"]
        assert emergency["used"] == 2
        assert emergency["over_budget"] is True
        assert emergency["remaining"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", ["tweets", "", "PROOF"])
    async def test_unknown_category_rejected(self, allocator, category):
        with pytest.raises(ValidationError):
            await allocator.check_and_consume(category)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, 1.5, True])
    async def test_invalid_amount_rejected(self, allocator, amount):
        with pytest.raises(ValidationError):
            await allocator.check_and_consume("proof", amount)

    @pytest.mark.asyncio
    async def test_store_failure_denies(self):
        allocator = RateBudgetAllocator(FailingStore(), BUDGETS)
        for category in CATEGORIES:
            assert await allocator.check_and_consume(category) is False


class TestMonthRollover:
    @pytest.mark.asyncio
    async def test_new_month_starts_from_zero(self, store):
        clock = _Clock(datetime(2026, 1, 31, 23, 0, tzinfo=timezone.utc))
        allocator = RateBudgetAllocator(store, BUDGETS, clock=clock)

        for _ in range(2):
            await allocator.check_and_consume("stats")
        assert await allocator.check_and_consume("stats") is False

        clock.now = datetime(2026, 2, 1, 0, 5, tzinfo=timezone.utc)
        assert await allocator.check_and_consume("stats") is True
        stats = await allocator.get_usage_stats()
        assert stats["month"] == "2026-02"
        assert stats["by_category"]["stats"]["used"] == 1

        # 上月计数保留在旧 key 下
        assert await store.get(RedisKeys.category_usage("2026-01", "stats")) == "2"


class TestReadOnlyViews:
    @pytest.mark.asyncio
    async def test_usage_stats_totals(self, allocator):
        await allocator.check_and_consume("proof", 3)
        await allocator.check_and_consume("health")

        stats = await allocator.get_usage_stats()
        assert stats["total"] == 4
        assert stats["quota"] == 11
        assert stats["remaining"] == 7
        assert set(stats["by_category"]) == set(CATEGORIES)

    @pytest.mark.asyncio
    async def test_reset_clears_current_month(self, allocator):
        for _ in range(2):
            await allocator.check_and_consume("stats")
        await allocator.reset()

        assert (await allocator.get_usage_stats())["total"] == 0
        assert await allocator.check_and_consume("stats") is True
