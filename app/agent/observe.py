"""
观测层：通过 JSON-RPC 读取 Agent 钱包余额与 Gas 价格

任何失败都不抛出：
- 余额查询失败返回空列表（= 余额未知，储备按零余额记录，紧急判定向安全方向失败）
- Gas 价格查询失败返回 None（模板与过滤器跳过该条件）
"""

import asyncio
from typing import Protocol

import httpx
import structlog

from app.config import get_settings
from app.reserve.schemas import WalletBalance

log = structlog.get_logger()
settings = get_settings()

CHAIN_NAMES = {
    1: "Ethereum",
    8453: "Base",
    84532: "Base Sepolia",
    11155111: "Sepolia",
}

WEI_PER_ETH = 10**18
WEI_PER_GWEI = 10**9
USDC_DECIMALS = 6
_BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


class BalanceProvider(Protocol):
    async def get_agent_wallet_balances(self) -> list[WalletBalance]: ...

    async def get_gas_price_gwei(self, chain_id: int) -> float | None: ...


class RpcError(Exception):
    """JSON-RPC 返回 error 字段"""


class RpcBalanceProvider:
    """按链配置的 JSON-RPC 端点逐链查询"""

    def __init__(
        self,
        rpc_urls: dict[int, str] | None = None,
        wallet_address: str | None = None,
        usdc_addresses: dict[int, str] | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.rpc_urls = rpc_urls if rpc_urls is not None else settings.RPC_URLS
        self.wallet_address = wallet_address or settings.AGENT_WALLET_ADDRESS
        self.usdc_addresses = usdc_addresses if usdc_addresses is not None else settings.USDC_ADDRESSES
        self.timeout = timeout or settings.BALANCE_TIMEOUT
        self._client = client

    async def _rpc(self, client: httpx.AsyncClient, url: str, method: str, params: list) -> str:
        resp = await client.post(
            url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise RpcError(str(body["error"]))
        return body["result"]

    async def _chain_balance(self, client: httpx.AsyncClient, chain_id: int, url: str) -> WalletBalance:
        wei = int(await self._rpc(client, url, "eth_getBalance", [self.wallet_address, "latest"]), 16)

        usdc = 0.0
        usdc_address = self.usdc_addresses.get(chain_id)
        if usdc_address:
            call_data = _BALANCE_OF_SELECTOR + self.wallet_address.lower().removeprefix("0x").rjust(64, "0")
            raw = await self._rpc(client, url, "eth_call", [{"to": usdc_address, "data": call_data}, "latest"])
            usdc = int(raw, 16) / 10**USDC_DECIMALS if raw not in ("0x", "") else 0.0

        return WalletBalance(
            chain_id=chain_id,
            chain_name=CHAIN_NAMES.get(chain_id, f"chain-{chain_id}"),
            eth_balance=wei / WEI_PER_ETH,
            usdc_balance=usdc,
        )

    async def _with_client(self, fn):
        if self._client is not None:
            return await fn(self._client)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await fn(client)

    async def get_agent_wallet_balances(self) -> list[WalletBalance]:
        """所有已配置链的余额；任意一条链失败即返回 []"""
        if not self.wallet_address or not self.rpc_urls:
            log.warning("未配置钱包地址或 RPC 端点，余额未知")
            return []

        async def fetch(client: httpx.AsyncClient) -> list[WalletBalance]:
            return list(
                await asyncio.gather(
                    *(self._chain_balance(client, cid, url) for cid, url in self.rpc_urls.items())
                )
            )

        try:
            balances = await asyncio.wait_for(self._with_client(fetch), timeout=self.timeout)
        except (httpx.HTTPError, RpcError, asyncio.TimeoutError, KeyError, ValueError) as e:
            log.error("钱包余额查询失败，按余额未知处理", error=str(e))
            return []

        log.debug(
            "钱包余额",
            chains=[b.chain_id for b in balances],
            eth_total=sum(b.eth_balance for b in balances),
        )
        return balances

    async def get_gas_price_gwei(self, chain_id: int) -> float | None:
        url = self.rpc_urls.get(chain_id)
        if not url:
            return None

        async def fetch(client: httpx.AsyncClient) -> float:
            return int(await self._rpc(client, url, "eth_gasPrice", []), 16) / WEI_PER_GWEI

        try:
            return await asyncio.wait_for(self._with_client(fetch), timeout=self.timeout)
        except (httpx.HTTPError, RpcError, asyncio.TimeoutError, KeyError, ValueError) as e:
            log.warning("Gas 价格查询失败", chain_id=chain_id, error=str(e))
            return None
