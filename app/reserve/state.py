"""
储备状态管理：读取 / 合并 / 持久化共享储备快照

赞助周期与 Webhook 周期可能并发写同一个 key。读改写在单 key 写锁内完成
（SET NX PX 租约），每次写入 version + 1；拿不到锁超时按 UpstreamUnavailable 处理。

容错策略：
- get_reserve_state() 存储不可用或数据损坏时返回 None（调用方视为未知/不健康）
- update_reserve_state() 失败直接抛出，由周期编排器中止本轮
"""

import asyncio
import json
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.cache.redis_client import RedisKeys
from app.cache.state_store import StateStore
from app.config import get_settings
from app.errors import UpstreamUnavailable, ValidationError
from app.reserve.schemas import BurnRateSnapshot, ReserveState, WalletBalance

log = structlog.get_logger()
settings = get_settings()

TESTNET_CHAIN_IDS = {84532, 11155111}  # Base Sepolia / Sepolia
BURN_HISTORY_LIMIT = 200  # 同时是近 24h 赞助计数的上限
NO_BURN_RUNWAY_DAYS = 999.0  # 无消耗时的续航上限
MANAGED_FIELDS = {"last_updated", "version"}


def default_reserve_state() -> ReserveState:
    """首次写入时的基线"""
    return ReserveState(
        chain_id=settings.DEFAULT_CHAIN_ID,
        target_reserve_eth=settings.TARGET_RESERVE_ETH,
        critical_threshold_eth=settings.RESERVE_CRITICAL_ETH,
        last_updated=datetime.now(timezone.utc),
    )


def merge_reserve_state(state: ReserveState, partial: dict) -> ReserveState:
    """浅合并：只覆盖 partial 中出现的字段，其余字段原样保留"""
    unknown = set(partial) - set(ReserveState.model_fields)
    if unknown:
        raise ValidationError(f"未知的储备字段: {sorted(unknown)}", fields=sorted(unknown))
    try:
        return ReserveState.model_validate({**state.model_dump(), **partial})
    except PydanticValidationError as e:
        raise ValidationError(f"储备字段不合法: {e.errors()[0]['msg']}") from e


def calculate_health_score(state: ReserveState) -> int:
    """
    健康分 0-100：
    - 40% 余额比例（相对目标储备，测试网目标降为 5%）
    - 40% 续航天数（优先用预测续航）
    - 20% 活跃度（近 24h 赞助次数）
    """
    if state.eth_balance <= 0:
        return 0

    is_testnet = state.chain_id in TESTNET_CHAIN_IDS or settings.TESTNET_MODE
    target = max(0.01, state.target_reserve_eth * 0.05) if is_testnet else state.target_reserve_eth

    balance_score = min(state.eth_balance / target, 1) * 40

    runway = state.forecasted_runway_days if state.forecasted_runway_days > 0 else state.runway_days
    if runway >= 30:
        runway_score = 40.0
    elif runway >= 7:
        runway_score = 25 + (runway - 7) / 23 * 15
    elif runway >= 1:
        runway_score = 10 + (runway - 1) / 6 * 15
    elif runway > 0:
        runway_score = runway * 10
    else:
        runway_score = 0.0

    count = state.sponsorships_last_24h
    if count >= 50:
        activity_score = 20.0
    elif count >= 10:
        activity_score = 12 + (count - 10) / 40 * 8
    elif count >= 1:
        activity_score = 5 + (count - 1) / 9 * 7
    else:
        activity_score = 3.0  # 有余额但无活动，给一个基础分

    return min(100, max(0, round(balance_score + runway_score + activity_score)))


def derive_metrics(state: ReserveState) -> ReserveState:
    """合并后重新推导续航与健康分"""
    updates: dict = {}
    if state.daily_burn_rate_eth > 0:
        updates["runway_days"] = state.eth_balance / state.daily_burn_rate_eth
    if state.forecasted_burn_rate_7d > 0:
        updates["forecasted_runway_days"] = state.eth_balance / state.forecasted_burn_rate_7d
    derived = state.model_copy(update=updates)
    return derived.model_copy(update={"health_score": calculate_health_score(derived)})


def burn_rates(history: list[BurnRateSnapshot], now: datetime) -> dict:
    """从消耗快照推算近 24h 赞助次数、燃烧速率与 7 日预测速率（随时间窗口衰减）"""
    day_ago = now - timedelta(days=1)
    week_ago = now - timedelta(days=7)
    recent = [s for s in history if s.timestamp >= day_ago]
    burned_24h = sum(s.eth_burned for s in recent)
    count_24h = sum(s.sponsorships for s in recent)

    rates = {
        "sponsorships_last_24h": count_24h,
        "daily_burn_rate_eth": burned_24h,
        "avg_burn_per_sponsorship": burned_24h / count_24h if count_24h else 0.0,
    }
    # 样本不足 7 条时不做预测，续航回退到当前速率
    if len(history) >= 7:
        burned_7d = sum(s.eth_burned for s in history if s.timestamp >= week_ago)
        rates["forecasted_burn_rate_7d"] = max(burned_24h, burned_7d / 7)
    return rates


def idle_runway(rates: dict, balances_known: bool) -> dict:
    """窗口内没有消耗时，续航不能沿用上一次的推导值"""
    idle = NO_BURN_RUNWAY_DAYS if balances_known else 0.0
    updates: dict = {}
    if rates["daily_burn_rate_eth"] <= 0:
        updates["runway_days"] = idle
    if rates.get("forecasted_burn_rate_7d", 1) <= 0:
        updates["forecasted_runway_days"] = idle
    return updates


class ReserveStateManager:
    """共享储备快照的唯一读写入口"""

    def __init__(self, store: StateStore):
        self.store = store
        self.key = RedisKeys.reserve_state()
        self.lock_key = RedisKeys.reserve_lock()

    # ── 读 ──

    async def _read(self) -> ReserveState | None:
        raw = await self.store.get(self.key)
        if not raw:
            return None
        try:
            stored = json.loads(raw)
            # 老版本快照缺少的字段用默认值补齐
            return ReserveState.model_validate({**default_reserve_state().model_dump(), **stored})
        except (ValueError, PydanticValidationError) as e:
            log.warning("储备快照解析失败，按无状态处理", key=self.key, error=str(e))
            return None

    async def get_reserve_state(self) -> ReserveState | None:
        """读取当前储备快照；不存在或不可读时返回 None"""
        try:
            return await self._read()
        except UpstreamUnavailable:
            log.warning("读取储备快照失败，按未知状态处理", key=self.key)
            return None

    # ── 写 ──

    @asynccontextmanager
    async def _write_lock(self):
        """单 key 写锁：SET NX PX 租约，轮询等待到 RESERVE_LOCK_WAIT 为止"""
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.RESERVE_LOCK_WAIT
        while not await self.store.set_nx(self.lock_key, token, ttl_ms=settings.RESERVE_LOCK_TTL_MS):
            if loop.time() >= deadline:
                raise UpstreamUnavailable("等待储备快照写锁超时", key=self.key)
            await asyncio.sleep(0.02)
        try:
            yield
        finally:
            await self.store.delete_if_equals(self.lock_key, token)

    async def update_reserve_state(self, partial: dict) -> ReserveState:
        """读-合并-写：返回合并后的完整快照"""
        return await self.mutate(lambda _current: partial)

    async def mutate(self, build_partial: Callable[[ReserveState | None], dict]) -> ReserveState:
        """在写锁内基于当前快照计算增量（计数类字段避免丢失更新）"""
        async with self._write_lock():
            current = await self._read()
            partial = build_partial(current)
            managed = MANAGED_FIELDS & set(partial)
            if managed:
                raise ValidationError(f"字段由存储层维护，不可直接写入: {sorted(managed)}")
            baseline = current or default_reserve_state()
            merged = derive_metrics(merge_reserve_state(baseline, partial))

            now = datetime.now(timezone.utc)
            # last_updated 单调不减（防止时钟回拨）
            last_updated = max(now, current.last_updated) if current else now
            merged = merged.model_copy(
                update={"last_updated": last_updated, "version": baseline.version + 1}
            )
            await self.store.set(self.key, merged.model_dump_json())

        log.debug(
            "储备快照已更新",
            fields=sorted(partial),
            version=merged.version,
            health_score=merged.health_score,
        )
        return merged

    # ── 业务封装 ──

    async def refresh_from_balances(self, balances: list[WalletBalance]) -> ReserveState:
        """
        把余额观测写入快照（多链求和）。
        空列表表示余额未知：按零余额记录，让紧急判定向安全方向失败。
        """
        if not balances:
            log.warning("钱包余额未知，按零余额记录")

        def build(current: ReserveState | None) -> dict:
            updates: dict = {
                "eth_balance": sum(b.eth_balance for b in balances),
                "usdc_balance": sum(b.usdc_balance for b in balances),
            }
            if balances:
                primary = next(
                    (b for b in balances if b.chain_id == settings.DEFAULT_CHAIN_ID), balances[0]
                )
                updates["chain_id"] = primary.chain_id
            # 每次刷新都按时间窗口重算，安静一天后速率与计数自然归零
            rates = burn_rates(current.burn_rate_history if current else [], datetime.now(timezone.utc))
            updates.update(rates)
            # 没有消耗时续航视为无限（余额为零时仍由临界余额条件兜底）
            updates.update(idle_runway(rates, bool(balances)))
            return updates

        return await self.mutate(build)

    async def apply_sponsorship(
        self,
        balances: list[WalletBalance],
        gas_used: int | None,
        gas_price_gwei: float | None,
    ) -> ReserveState:
        """赞助成功后的记账：刷新余额、追加消耗快照、按窗口重算计数与速率"""

        def build(current: ReserveState | None) -> dict:
            updates: dict = {}
            if balances:
                updates["eth_balance"] = sum(b.eth_balance for b in balances)
                updates["usdc_balance"] = sum(b.usdc_balance for b in balances)

            # Gas 未知时仍追加一条零消耗快照，赞助次数照常计入
            now = datetime.now(timezone.utc)
            price = gas_price_gwei if gas_price_gwei is not None else 0.001
            snapshot = BurnRateSnapshot(timestamp=now, eth_burned=(gas_used or 0) * price / 1e9)
            history = (current.burn_rate_history if current else [])[-(BURN_HISTORY_LIMIT - 1):]
            history = [*history, snapshot]
            updates["burn_rate_history"] = [s.model_dump() for s in history]
            rates = burn_rates(history, now)
            updates.update(rates)
            known = bool(balances) or (current is not None and current.eth_balance > 0)
            updates.update(idle_runway(rates, known))
            return updates

        return await self.mutate(build)
