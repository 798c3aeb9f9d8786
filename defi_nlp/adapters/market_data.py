from __future__ import annotations

import logging
import time
from typing import Protocol

import httpx

from defi_nlp.adapters.symbols import coingecko_id_for, normalize_protocol, normalize_token
from defi_nlp.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PRICES = {
    "USDC": 1.0,
    "USDT": 1.0,
    "SEI": 0.5,
    "WSEI": 0.5,
    "ETH": 2500.0,
    "WETH": 2500.0,
    "BTC": 60000.0,
    "WBTC": 60000.0,
    "ATOM": 8.0,
    "OSMO": 0.6,
}

# USD depth behind a 100% price move; impact scales linearly below it
DEFAULT_DEPTH_USD = {
    "USDC": 5_000_000.0,
    "USDT": 5_000_000.0,
    "SEI": 2_000_000.0,
    "WSEI": 2_000_000.0,
    "ETH": 10_000_000.0,
    "WETH": 10_000_000.0,
    "BTC": 10_000_000.0,
    "WBTC": 10_000_000.0,
}
FALLBACK_DEPTH_USD = 1_000_000.0


class MarketDataProvider(Protocol):
    async def get_price(self, token: str) -> float | None: ...

    async def get_price_impact(self, token: str, amount: float) -> float | None: ...

    async def get_health_factor(self, protocol: str) -> float | None: ...

    async def get_allowance(self, token: str, spender: str) -> float | None: ...


class StaticMarketData:
    """In-memory tables. Used in tests, test mode and as the offline default."""

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        depth_usd: dict[str, float] | None = None,
        health_factors: dict[str, float] | None = None,
        allowances: dict[tuple[str, str], float] | None = None,
    ) -> None:
        self.prices = dict(DEFAULT_PRICES if prices is None else prices)
        self.depth_usd = dict(DEFAULT_DEPTH_USD if depth_usd is None else depth_usd)
        self.health_factors = dict(health_factors or {})
        self.allowances = dict(allowances or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> StaticMarketData:
        prices = dict(DEFAULT_PRICES)
        if settings.test_mode:
            prices.update(settings.mock_prices_map())
        return cls(prices=prices)

    def set_price(self, token: str, price: float) -> None:
        self.prices[normalize_token(token).base] = float(price)

    async def get_price(self, token: str) -> float | None:
        return self.prices.get(normalize_token(token).base)

    async def get_price_impact(self, token: str, amount: float) -> float | None:
        base = normalize_token(token).base
        price = self.prices.get(base)
        if price is None:
            return None
        depth = self.depth_usd.get(base, FALLBACK_DEPTH_USD)
        return round(amount * price / depth * 100, 4)

    async def get_health_factor(self, protocol: str) -> float | None:
        return self.health_factors.get(normalize_protocol(protocol))

    async def get_allowance(self, token: str, spender: str) -> float | None:
        return self.allowances.get((normalize_token(token).base, normalize_protocol(spender)))


class CoinGeckoMarketData:
    """Spot prices from CoinGecko ``/simple/price`` with a short in-memory cache.

    CoinGecko has no notion of pool depth, health factors or allowances, so
    those queries answer ``None``.
    """

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: str = "",
        ttl_sec: int = 15,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.ttl_sec = ttl_sec
        self._client = client or httpx.AsyncClient(timeout=10)
        self._cache: dict[str, tuple[float, float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> CoinGeckoMarketData:
        return cls(
            base_url=settings.coingecko_base_url,
            api_key=settings.coingecko_api_key,
            ttl_sec=settings.price_cache_ttl_sec,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_price(self, token: str) -> float | None:
        base = normalize_token(token).base
        cached = self._cache.get(base)
        now = time.monotonic()
        if cached and now - cached[1] < self.ttl_sec:
            return cached[0]

        cg_id = coingecko_id_for(base)
        if not cg_id:
            return None

        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        resp = await self._client.get(
            f"{self.base_url}/simple/price",
            params={"ids": cg_id, "vs_currencies": "usd"},
            headers=headers,
        )
        resp.raise_for_status()
        data = resp.json()
        usd = (data.get(cg_id) or {}).get("usd")
        if usd is None:
            logger.info("coingecko_price_missing", extra={"event": "coingecko_price_missing", "symbol": base})
            return None
        price = float(usd)
        self._cache[base] = (price, now)
        return price

    async def get_price_impact(self, token: str, amount: float) -> float | None:
        return None

    async def get_health_factor(self, protocol: str) -> float | None:
        return None

    async def get_allowance(self, token: str, spender: str) -> float | None:
        return None


def build_market_data(settings: Settings) -> MarketDataProvider:
    if settings.market_data_provider == "coingecko" and not settings.test_mode:
        return CoinGeckoMarketData.from_settings(settings)
    return StaticMarketData.from_settings(settings)
