"""
成本看板：观测过滤 / 模板决策省下的推理调用 + 社交配额节省

只读取计数器，不做任何写入。
"""

import structlog

from app.budget.rate_allocator import RateBudgetAllocator
from app.config import get_settings
from app.errors import UpstreamUnavailable
from app.observability.metrics import read_counter

log = structlog.get_logger()
settings = get_settings()

# 单月 LLM 节省额上限（避免进程长时间运行后数值失真）
LLM_SAVINGS_CAP_USD = 108.0


def estimate_savings(
    skipped_by_filter: float,
    skipped_by_template: float,
    social_within_quota: bool,
    avg_call_cost_usd: float | None = None,
    social_plan_cost_usd: float | None = None,
) -> dict:
    """节省额 = 跳过的推理次数 × 单次平均成本（+ 守住免费社交配额省下的套餐费）"""
    avg_cost = settings.LLM_AVG_CALL_COST_USD if avg_call_cost_usd is None else avg_call_cost_usd
    plan_cost = settings.SOCIAL_PLAN_COST_USD if social_plan_cost_usd is None else social_plan_cost_usd

    llm_usd = min(round((skipped_by_filter + skipped_by_template) * avg_cost, 4), LLM_SAVINGS_CAP_USD)
    social_usd = plan_cost if social_within_quota else 0.0
    return {
        "llm_usd": llm_usd,
        "social_usd": social_usd,
        "total_usd": round(llm_usd + social_usd, 4),
    }


async def get_cost_savings(allocator: RateBudgetAllocator | None) -> dict:
    """汇总成本看板数据；配额分配器不可用时 social 为 None"""
    social = None
    if allocator is not None:
        try:
            social = await allocator.get_usage_stats()
        except UpstreamUnavailable:
            log.warning("读取配额用量失败，成本看板降级")

    llm = {
        "total_cycles": read_counter("sponsor_observation_filter"),
        "skipped_by_filter": read_counter("sponsor_observation_filter_skips"),
        "skipped_by_template": read_counter("sponsor_template_response_used"),
        "llm_calls": read_counter("sponsor_llm_call"),
    }
    within_quota = social is not None and social["total"] < social["quota"]
    return {
        "social": social,
        "llm": llm,
        "estimated_savings": estimate_savings(
            llm["skipped_by_filter"], llm["skipped_by_template"], within_quota
        ),
    }
