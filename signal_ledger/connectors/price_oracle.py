"""Price oracle connectors.

Resolves a valuation key to a USD price:
  - token symbols (uppercase) via CoinGecko /simple/price
  - contract addresses (lowercase 0x...) via DexScreener /tokens

A failed or unknown lookup returns None; callers treat that as
"no update this cycle".
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_ledger.config import OracleConfig
from signal_ledger.observability.logger import get_logger

log = get_logger(__name__)

_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "signal-ledger/1.0",
}

# Token symbol -> CoinGecko id
TOKEN_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "WETH": "weth",
    "BTC": "bitcoin",
    "SOL": "solana",
    "LINK": "chainlink",
    "ARB": "arbitrum",
    "OP": "optimism",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "DOGE": "dogecoin",
    "UNI": "uniswap",
    "AAVE": "aave",
    "SNX": "havven",
    "PEPE": "pepe",
    "WIF": "dogwifcoin",
    "BONK": "bonk",
}


@dataclass
class PriceQuote:
    """A single resolved price."""
    key: str
    price: float
    source: str = ""
    fetched_at: dt.datetime = field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc)
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "price": self.price,
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat(),
        }


class PriceOracle(Protocol):
    async def get_price(self, key: str) -> PriceQuote | None: ...

    async def close(self) -> None: ...


def is_address(key: str) -> bool:
    return key.startswith("0x") and len(key) == 42


class CoinGeckoOracle:
    """CoinGecko for symbols, DexScreener for contract addresses."""

    def __init__(self, config: OracleConfig | None = None):
        self._config = config or OracleConfig()
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_secs),
                headers=_HEADERS,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        client = await self._ensure_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self._config.max_retries)),
            wait=wait_exponential(min=0.5, max=2),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                resp = await client.get(url, params=params)
                resp.raise_for_status()
                return resp.json()
        return None

    async def get_price(self, key: str) -> PriceQuote | None:
        try:
            if is_address(key):
                return await self._dexscreener_price(key.lower())
            return await self._coingecko_price(key.upper())
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.warning("oracle.price_failed", key=key, error=str(e))
            return None

    async def _coingecko_price(self, symbol: str) -> PriceQuote | None:
        gecko_id = TOKEN_IDS.get(symbol)
        if not gecko_id:
            log.debug("oracle.unknown_symbol", symbol=symbol)
            return None
        data = await self._get_json(
            f"{self._config.coingecko_url}/simple/price",
            params={"ids": gecko_id, "vs_currencies": "usd"},
        )
        entry = (data or {}).get(gecko_id)
        if not entry or entry.get("usd") is None:
            return None
        return PriceQuote(key=symbol, price=float(entry["usd"]), source="coingecko")

    async def _dexscreener_price(self, address: str) -> PriceQuote | None:
        data = await self._get_json(f"{self._config.dexscreener_url}/tokens/{address}")
        pairs = (data or {}).get("pairs") or []
        # deepest pool wins
        pairs = sorted(
            (p for p in pairs if p.get("priceUsd")),
            key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0),
            reverse=True,
        )
        if not pairs:
            return None
        return PriceQuote(key=address, price=float(pairs[0]["priceUsd"]), source="dexscreener")


class StaticPriceOracle:
    """Fixed price table, for dry runs and fixtures."""

    def __init__(self, prices: dict[str, float]):
        self._prices = {
            (k.lower() if is_address(k) else k.upper()): v for k, v in prices.items()
        }

    async def get_price(self, key: str) -> PriceQuote | None:
        norm = key.lower() if is_address(key) else key.upper()
        price = self._prices.get(norm)
        if price is None:
            return None
        return PriceQuote(key=norm, price=price, source="static")

    async def close(self) -> None:
        return None


def create_price_oracle(config: OracleConfig) -> PriceOracle:
    if config.provider == "static":
        return StaticPriceOracle(config.static_prices)
    if config.provider == "coingecko":
        return CoinGeckoOracle(config)
    raise ValueError(f"Unknown price oracle: {config.provider}")
