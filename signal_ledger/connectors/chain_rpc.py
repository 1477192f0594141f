"""Base chain JSON-RPC connector.

Only the two read calls the verification engine needs:
  - eth_getTransactionCount  (wallet activity)
  - eth_getBalance           (wallet funding, in ETH)
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_ledger.config import ChainConfig
from signal_ledger.observability.logger import get_logger

log = get_logger(__name__)

_WEI_PER_ETH = 10**18


class ChainRPCClient:
    """Async JSON-RPC client for wallet history lookups."""

    def __init__(self, config: ChainConfig | None = None):
        self._config = config or ChainConfig()
        self._client: httpx.AsyncClient | None = None
        self._next_id = 0

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_secs),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _call(self, method: str, params: list[Any]) -> Any:
        client = await self._ensure_client()
        self._next_id += 1
        resp = await client.post(
            self._config.rpc_url,
            json={"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params},
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise ValueError(f"RPC error: {body['error']}")
        return body.get("result")

    async def get_transaction_count(self, address: str) -> int | None:
        try:
            result = await self._call("eth_getTransactionCount", [address, "latest"])
            return int(result or "0x0", 16)
        except (httpx.HTTPError, ValueError, TypeError) as e:
            log.warning("chain_rpc.tx_count_failed", address=address[:10], error=str(e))
            return None

    async def get_balance_eth(self, address: str) -> float | None:
        try:
            result = await self._call("eth_getBalance", [address, "latest"])
            return int(result or "0x0", 16) / _WEI_PER_ETH
        except (httpx.HTTPError, ValueError, TypeError) as e:
            log.warning("chain_rpc.balance_failed", address=address[:10], error=str(e))
            return None
