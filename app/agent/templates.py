"""
模板决策：确定性场景直接给出决策，不调用 LLM

按顺序匹配：
1. Gas 价格高于上限 → WAIT
2. 没有低 Gas 钱包（无赞助机会）→ WAIT
3. ETH 低于 0.05 且 USDC ≥ 200 → SWAP_RESERVES（最多换 200 USDC 或一半 USDC）
"""

import structlog

from app.agent.observation_filter import (
    extract_gas_price,
    extract_low_gas_wallets,
    extract_protocol_budgets,
    extract_reserves,
)
from app.agent.schemas import Decision, Observation

log = structlog.get_logger()

SWAP_ETH_THRESHOLD = 0.05
SWAP_USDC_MINIMUM = 200.0
SWAP_MAX_AMOUNT_USDC = 200.0
SWAP_SLIPPAGE = 0.01


def get_template_decision(
    observations: list[Observation],
    gas_price_max_gwei: float = 2.0,
) -> Decision | None:
    """命中模板返回决策，否则返回 None（交给推理）"""
    gas_price = extract_gas_price(observations)
    if gas_price is not None and gas_price > gas_price_max_gwei:
        log.info("模板决策：Gas 过高，等待", gas_price=gas_price, threshold=gas_price_max_gwei)
        return Decision(
            action="WAIT",
            confidence=1.0,
            reasoning=(
                f"Gas price {gas_price:.2f} Gwei exceeds limit of {gas_price_max_gwei} Gwei. "
                "Waiting for lower gas conditions."
            ),
            source="template",
            metadata={"template": "gas-too-high", "gas_price": gas_price},
        )

    if not extract_low_gas_wallets(observations):
        has_protocols = bool(extract_protocol_budgets(observations))
        log.debug("模板决策：无低 Gas 钱包，等待", has_protocols=has_protocols)
        return Decision(
            action="WAIT",
            confidence=1.0,
            reasoning=(
                "No low-gas wallets detected. All eligible users have sufficient gas."
                if has_protocols
                else "No low-gas wallets detected and no protocols registered."
            ),
            source="template",
            metadata={"template": "no-opportunities"},
        )

    eth, usdc = extract_reserves(observations)
    if eth is not None and usdc is not None and eth < SWAP_ETH_THRESHOLD and usdc >= SWAP_USDC_MINIMUM:
        amount = min(SWAP_MAX_AMOUNT_USDC, usdc * 0.5)
        log.info("模板决策：ETH 储备过低，兑换 USDC", eth=eth, usdc=usdc, amount=amount)
        return Decision(
            action="SWAP_RESERVES",
            confidence=0.95,
            reasoning=(
                f"Agent ETH balance {eth:.4f} below critical threshold {SWAP_ETH_THRESHOLD}. "
                f"Swapping {amount:.2f} USDC to restore ETH reserves."
            ),
            parameters={
                "token_in": "USDC",
                "token_out": "ETH",
                "amount_in": f"{amount:.2f}",
                "slippage_tolerance": SWAP_SLIPPAGE,
            },
            estimated_value_usd=amount,
            source="template",
            metadata={"template": "critical-eth-low"},
        )

    return None
