"""
紧急模式：储备临界时停止一切赞助

判定规则（任一成立即进入紧急模式）：
- eth_balance < critical_threshold_eth
- runway_days < 1
- forecasted_runway_days < 3 且 health_score < 20

判定值与已存储值一致时不写入、不通知，可在每个周期并发调用。
"""

import structlog

from app.observability.metrics import EMERGENCY_TRANSITION_TOTAL
from app.reserve.schemas import EmergencyAssessment, ReserveState
from app.reserve.state import ReserveStateManager
from app.social.publisher import SocialPublisher

log = structlog.get_logger()

RUNWAY_FLOOR_DAYS = 1
FORECAST_FLOOR_DAYS = 3
HEALTH_FLOOR = 20


def evaluate_emergency(state: ReserveState) -> EmergencyAssessment:
    """纯函数：只依赖快照中的五个字段"""
    return EmergencyAssessment(
        critical_balance=state.eth_balance < state.critical_threshold_eth,
        runway_exhausted=state.runway_days < RUNWAY_FLOOR_DAYS,
        forecast_unhealthy=(
            state.forecasted_runway_days < FORECAST_FLOOR_DAYS
            and state.health_score < HEALTH_FLOOR
        ),
    )


class EmergencyEvaluator:
    """紧急模式状态机：NORMAL ⇄ EMERGENCY"""

    def __init__(self, reserve: ReserveStateManager, publisher: SocialPublisher | None = None):
        self.reserve = reserve
        self.publisher = publisher

    async def check_and_update(self) -> bool:
        """
        评估当前快照并在状态变化时持久化。
        返回 True 表示紧急模式生效（禁止赞助）。
        """
        state = await self.reserve.get_reserve_state()
        if state is None:
            # 无快照 = 未知，向安全方向失败，但不写入也不通知
            log.warning("储备快照不存在，视为紧急状态")
            return True

        assessment = evaluate_emergency(state)
        if assessment.emergency == state.emergency_mode:
            return assessment.emergency

        # 锁内以最新快照重新判定，日志与通知都用锁内的值；
        # 只有真正完成切换的一方记录日志与通知
        transitioned = False

        def build(current: ReserveState | None) -> dict:
            nonlocal assessment, state, transitioned
            if current is None:
                return {}
            state = current
            assessment = evaluate_emergency(current)
            if current.emergency_mode == assessment.emergency:
                return {}
            transitioned = True
            return {"emergency_mode": assessment.emergency}

        await self.reserve.mutate(build)
        if not transitioned:
            return assessment.emergency

        EMERGENCY_TRANSITION_TOTAL.labels(
            direction="enter" if assessment.emergency else "exit"
        ).inc()
        log.warning(
            "紧急模式切换",
            emergency_mode=assessment.emergency,
            eth_balance=state.eth_balance,
            runway_days=state.runway_days,
            forecasted_runway_days=state.forecasted_runway_days,
            health_score=state.health_score,
            **assessment.model_dump(),
        )

        if assessment.emergency and self.publisher is not None:
            await self.publisher.publish(
                "emergency",
                f"EMERGENCY: sponsorship reserves critically low. "
                f"ETH: {state.eth_balance:.4f}, Runway: {state.runway_days:.1f} days. "
                f"Sponsorship halted.",
            )

        return assessment.emergency
