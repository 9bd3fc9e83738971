"""
观测过滤：与上一轮观测对比，无显著变化时跳过推理（节省 LLM 成本）

显著变化（任一成立）：
- 出现新的低 Gas 钱包
- 储备 ETH 或 USDC 下降超过 10%
- 任一协议预算变化超过 15%，或出现新的协议预算
- Gas 价格变化超过 0.5 Gwei
- 失败交易数增加

首轮（没有上一轮快照）总是视为显著。
"""

import json

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.agent.schemas import Observation
from app.cache.redis_client import RedisKeys
from app.cache.state_store import StateStore

log = structlog.get_logger()

RESERVE_DROP_RATIO = 0.10
PROTOCOL_BUDGET_CHANGE_RATIO = 0.15
GAS_PRICE_CHANGE_GWEI = 0.5


# ── 从观测中提取信号 ──


def extract_gas_price(observations: list[Observation]) -> float | None:
    for obs in observations:
        if obs.data.get("gas_price_gwei") is not None:
            return float(obs.data["gas_price_gwei"])
    return None


def extract_low_gas_wallets(observations: list[Observation]) -> set[str]:
    wallets: set[str] = set()
    for obs in observations:
        for item in obs.data.get("low_gas_wallets") or []:
            wallet = item.get("wallet") if isinstance(item, dict) else item
            if wallet:
                wallets.add(str(wallet).lower())
    return wallets


def extract_reserves(observations: list[Observation]) -> tuple[float | None, float | None]:
    """(eth, usdc)，后出现的观测覆盖先出现的"""
    eth = usdc = None
    for obs in observations:
        reserves = obs.data.get("agent_reserves")
        if isinstance(reserves, dict):
            eth = reserves.get("eth", eth)
            usdc = reserves.get("usdc", usdc)
    return eth, usdc


def extract_protocol_budgets(observations: list[Observation]) -> dict[str, float]:
    budgets: dict[str, float] = {}
    for obs in observations:
        for item in obs.data.get("protocol_budgets") or []:
            if isinstance(item, dict) and item.get("protocol_id") and isinstance(
                item.get("balance_usd"), (int, float)
            ):
                budgets[item["protocol_id"]] = float(item["balance_usd"])
    return budgets


def extract_failed_tx_count(observations: list[Observation]) -> int:
    for obs in observations:
        failed = obs.data.get("failed_transactions")
        if isinstance(failed, list):
            return len(failed)
    return 0


def _dropped(current: float | None, previous: float | None) -> bool:
    if current is None or previous is None or previous <= 0:
        return False
    return current < previous and (previous - current) / previous > RESERVE_DROP_RATIO


def has_significant_change(
    current: list[Observation],
    previous: list[Observation] | None,
) -> bool:
    """纯函数：判断本轮观测相对上一轮是否值得推理"""
    if not previous:
        log.debug("首轮观测，视为显著变化")
        return True

    new_wallets = extract_low_gas_wallets(current) - extract_low_gas_wallets(previous)
    if new_wallets:
        log.info("显著变化：新的低 Gas 钱包", count=len(new_wallets), sample=sorted(new_wallets)[:3])
        return True

    cur_eth, cur_usdc = extract_reserves(current)
    prev_eth, prev_usdc = extract_reserves(previous)
    if _dropped(cur_eth, prev_eth):
        log.info("显著变化：ETH 储备下降超过 10%", previous=prev_eth, current=cur_eth)
        return True
    if _dropped(cur_usdc, prev_usdc):
        log.info("显著变化：USDC 储备下降超过 10%", previous=prev_usdc, current=cur_usdc)
        return True

    prev_budgets = extract_protocol_budgets(previous)
    for protocol_id, budget in extract_protocol_budgets(current).items():
        prev_budget = prev_budgets.get(protocol_id)
        if prev_budget:
            if abs(budget - prev_budget) / prev_budget > PROTOCOL_BUDGET_CHANGE_RATIO:
                log.info("显著变化：协议预算变化超过 15%", protocol_id=protocol_id)
                return True
        elif budget > 0:
            log.info("显著变化：新的协议预算", protocol_id=protocol_id)
            return True

    cur_gas, prev_gas = extract_gas_price(current), extract_gas_price(previous)
    if cur_gas is not None and prev_gas is not None and abs(cur_gas - prev_gas) > GAS_PRICE_CHANGE_GWEI:
        log.info("显著变化：Gas 价格变化超过 0.5 Gwei", previous=prev_gas, current=cur_gas)
        return True

    if extract_failed_tx_count(current) > extract_failed_tx_count(previous):
        log.info("显著变化：出现新的失败交易")
        return True

    log.debug("观测无显著变化")
    return False


class ObservationFilter:
    """上一轮观测快照的读写 + 显著性判断"""

    def __init__(self, store: StateStore):
        self.store = store
        self.key = RedisKeys.previous_observations()

    async def load_previous(self) -> list[Observation] | None:
        raw = await self.store.get(self.key)
        if not raw:
            return None
        try:
            return [Observation.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError, PydanticValidationError):
            log.warning("上一轮观测快照损坏，按首轮处理", key=self.key)
            return None

    async def save(self, observations: list[Observation]) -> None:
        await self.store.set(
            self.key, json.dumps([obs.model_dump(mode="json") for obs in observations])
        )

    async def is_significant(self, observations: list[Observation]) -> bool:
        return has_significant_change(observations, await self.load_previous())
