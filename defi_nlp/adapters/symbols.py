from __future__ import annotations

from dataclasses import dataclass
import re


@dataclass
class TokenMeta:
    input_symbol: str
    base: str


KNOWN_TOKENS = ("USDC", "USDT", "SEI", "WSEI", "ETH", "WETH", "BTC", "WBTC", "ATOM", "OSMO")
# swaps route through these when no direct pool exists
HUB_TOKENS = ("USDC", "SEI")
LIQUID_TOKENS = frozenset({"USDC", "USDT", "ETH", "SEI", "WSEI"})

TOKEN_ALIASES = {
    "USD": "USDC",
    "DOLLAR": "USDC",
    "DOLLARS": "USDC",
    "STABLE": "USDC",
    "STABLES": "USDC",
    "STABLECOIN": "USDC",
    "STABLECOINS": "USDC",
    "ETHEREUM": "ETH",
    "BITCOIN": "BTC",
    "XBT": "BTC",
    "COSMOS": "ATOM",
    "OSMOSIS": "OSMO",
}

KNOWN_PROTOCOLS = ("dragonswap", "symphony", "citrex", "silo", "takara", "yei-finance")

PROTOCOL_ALIASES = {
    "dragon": "dragonswap",
    "dragon swap": "dragonswap",
    "yei": "yei-finance",
    "yei finance": "yei-finance",
    "yeifinance": "yei-finance",
}

PROTOCOL_DISPLAY = {
    "dragonswap": "DragonSwap",
    "symphony": "Symphony",
    "citrex": "Citrex",
    "silo": "Silo",
    "takara": "Takara",
    "yei-finance": "Yei Finance",
}

COINGECKO_MAP = {
    "USDC": "usd-coin",
    "USDT": "tether",
    "SEI": "sei-network",
    "WSEI": "sei-network",
    "ETH": "ethereum",
    "WETH": "weth",
    "BTC": "bitcoin",
    "WBTC": "wrapped-bitcoin",
    "ATOM": "cosmos",
    "OSMO": "osmosis",
}


def normalize_token(symbol: str) -> TokenMeta:
    raw = str(symbol or "").strip().upper()
    s = raw.replace("$", "")
    s = re.sub(r"\s+", "", s)
    s = TOKEN_ALIASES.get(s, s)
    s = re.sub(r"[^A-Z0-9]", "", s)
    if not s:
        s = raw
    return TokenMeta(input_symbol=symbol, base=s)


def normalize_protocol(name: str) -> str:
    s = re.sub(r"\s+", " ", str(name or "").strip().lower())
    return PROTOCOL_ALIASES.get(s, s)


def protocol_display(name: str) -> str:
    key = normalize_protocol(name)
    return PROTOCOL_DISPLAY.get(key, name)


def coingecko_id_for(symbol: str) -> str | None:
    return COINGECKO_MAP.get(normalize_token(symbol).base)
