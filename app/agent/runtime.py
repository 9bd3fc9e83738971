"""
运行时组件装配：启动时解析一次，FastAPI 依赖注入与调度脚本共用

配额分配器只在共享存储（Redis）可用时启用；进程内存储下为 None，
调用方据此降级（发帖只放行 emergency，看板 social 为 null）。
"""

from functools import lru_cache

import structlog

from app.agent.executor import HttpActionExecutor
from app.agent.observation_filter import ObservationFilter
from app.agent.observe import RpcBalanceProvider
from app.agent.orchestrator import AgentCycleOrchestrator
from app.agent.reasoner import LLMReasoner
from app.budget.rate_allocator import RateBudgetAllocator
from app.cache.state_store import StateStore, get_state_store, is_shared_store
from app.config import get_settings
from app.db.engine import async_session
from app.delegation.ledger import DelegationLedger
from app.reserve.emergency import EmergencyEvaluator
from app.reserve.state import ReserveStateManager
from app.social.notifier import build_notification_sink
from app.social.publisher import SocialPublisher

log = structlog.get_logger()
settings = get_settings()


def get_store() -> StateStore:
    return get_state_store()


@lru_cache
def get_reserve_manager() -> ReserveStateManager:
    return ReserveStateManager(get_store())


@lru_cache
def get_rate_allocator() -> RateBudgetAllocator | None:
    store = get_store()
    if not is_shared_store(store):
        log.warning("共享存储不可用，外部 API 配额分配器停用")
        return None
    return RateBudgetAllocator(store, settings.category_budgets)


@lru_cache
def get_publisher() -> SocialPublisher:
    return SocialPublisher(build_notification_sink(), get_rate_allocator(), get_store())


@lru_cache
def get_emergency_evaluator() -> EmergencyEvaluator:
    return EmergencyEvaluator(get_reserve_manager(), get_publisher())


@lru_cache
def get_ledger() -> DelegationLedger:
    return DelegationLedger(async_session)


@lru_cache
def get_orchestrator() -> AgentCycleOrchestrator:
    return AgentCycleOrchestrator(
        reserve=get_reserve_manager(),
        evaluator=get_emergency_evaluator(),
        balances=RpcBalanceProvider(),
        observation_filter=ObservationFilter(get_store()),
        reasoner=LLMReasoner(),
        executor=HttpActionExecutor(),
        ledger=get_ledger(),
        publisher=get_publisher(),
    )
