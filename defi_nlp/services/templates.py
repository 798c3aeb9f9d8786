from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping

from defi_nlp.core.types import DefiIntent

ParamKind = Literal["asset", "swap", "liquidity", "query", "batch"]


@dataclass(frozen=True)
class ParameterRule:
    type: Literal["number", "token", "protocol"]
    min_value: float | None = None
    max_value: float | None = None
    exclusive_min: bool = False


AMOUNT_RULE = ParameterRule("number", 0.0, 1e15, exclusive_min=True)
TOKEN_RULE = ParameterRule("token")
PROTOCOL_RULE = ParameterRule("protocol")

FIELD_RULES: Mapping[str, ParameterRule] = MappingProxyType(
    {
        "amount": AMOUNT_RULE,
        "token": TOKEN_RULE,
        "from_token": TOKEN_RULE,
        "to_token": TOKEN_RULE,
        "pair_token": TOKEN_RULE,
        "collateral_token": TOKEN_RULE,
        "protocol": PROTOCOL_RULE,
        "leverage": ParameterRule("number", 1.0, 100.0),
        "slippage": ParameterRule("number", 0.0, 50.0, exclusive_min=True),
        "percentage": ParameterRule("number", 0.0, 100.0),
    }
)

PARAMETER_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "token": "asset",
        "from_token": "from_asset",
        "to_token": "to_asset",
        "pair_token": "pair_asset",
        "collateral_token": "collateral_asset",
    }
)


def label_for(name: str) -> str:
    return PARAMETER_LABELS.get(name, name)


@dataclass(frozen=True)
class CommandTemplate:
    intent: DefiIntent
    action: str
    kind: ParamKind
    required: tuple[str, ...]
    optional: tuple[str, ...]
    risk_weight: int
    base_gas: int | None
    token_slots: tuple[str, ...]
    examples: tuple[str, ...] = ()

    @property
    def rules(self) -> dict[str, ParameterRule]:
        return {name: FIELD_RULES[name] for name in self.required + self.optional if name in FIELD_RULES}


def _asset(intent, action, required, optional, weight, gas, slots=("token",), examples=()) -> CommandTemplate:
    return CommandTemplate(intent, action, "asset", required, optional, weight, gas, slots, examples)


def _query(intent, action, examples=(), weight=1) -> CommandTemplate:
    return CommandTemplate(intent, action, "query", (), ("token", "protocol", "amount"), weight, None, ("token",), examples)


_TEMPLATES = (
    _asset(
        DefiIntent.LEND,
        "supply",
        ("amount", "token"),
        ("protocol", "percentage", "relative_amount", "leverage"),
        1,
        150_000,
        examples=("lend 1000 USDC", "supply 500 USDT to Silo"),
    ),
    _asset(
        DefiIntent.BORROW,
        "borrow",
        ("amount", "token"),
        ("protocol", "collateral_token", "leverage"),
        3,
        200_000,
        slots=("token", "collateral_token"),
        examples=("borrow 500 USDC", "borrow 200 USDC against SEI"),
    ),
    _asset(
        DefiIntent.REPAY,
        "repay",
        ("amount", "token"),
        ("protocol", "percentage", "relative_amount"),
        1,
        120_000,
        examples=("repay 500 USDC",),
    ),
    _asset(
        DefiIntent.WITHDRAW,
        "withdraw",
        ("amount", "token"),
        ("protocol", "percentage", "relative_amount"),
        1,
        120_000,
        examples=("withdraw 1000 USDC from Silo",),
    ),
    CommandTemplate(
        DefiIntent.SWAP,
        "swap",
        "swap",
        ("amount", "from_token", "to_token"),
        ("protocol", "slippage", "percentage", "relative_amount"),
        2,
        180_000,
        ("from_token", "to_token"),
        ("swap 1000 USDC to SEI",),
    ),
    CommandTemplate(
        DefiIntent.ADD_LIQUIDITY,
        "add_liquidity",
        "liquidity",
        ("amount", "token", "pair_token"),
        ("protocol", "percentage", "relative_amount"),
        2,
        250_000,
        ("token", "pair_token"),
        ("add liquidity 1000 SEI/USDC",),
    ),
    CommandTemplate(
        DefiIntent.REMOVE_LIQUIDITY,
        "remove_liquidity",
        "liquidity",
        ("token",),
        ("amount", "pair_token", "protocol", "percentage", "relative_amount"),
        1,
        200_000,
        ("token", "pair_token"),
        ("remove liquidity from SEI/USDC",),
    ),
    _asset(
        DefiIntent.OPEN_POSITION,
        "open_position",
        ("token",),
        ("amount", "leverage", "direction", "protocol"),
        4,
        300_000,
        examples=("open long ETH with 5x",),
    ),
    _asset(
        DefiIntent.CLOSE_POSITION,
        "close_position",
        ("token",),
        ("protocol", "percentage", "relative_amount"),
        1,
        200_000,
        examples=("close my ETH position",),
    ),
    _asset(
        DefiIntent.ARBITRAGE,
        "arbitrage",
        ("token",),
        ("amount", "protocol"),
        4,
        400_000,
        examples=("arbitrage SEI",),
    ),
    _asset(
        DefiIntent.CROSS_PROTOCOL_ARBITRAGE,
        "cross_protocol_arbitrage",
        ("token",),
        ("amount", "protocol"),
        5,
        500_000,
        examples=("arbitrage USDC between DragonSwap and Symphony",),
    ),
    _query(DefiIntent.PORTFOLIO_STATUS, "get_portfolio_status", ("show my portfolio",), weight=0),
    _query(DefiIntent.RISK_ASSESSMENT, "assess_risk", ("check my risk",)),
    _query(DefiIntent.YIELD_OPTIMIZATION, "optimize_yield", ("optimize my yield",)),
    _query(DefiIntent.REBALANCE, "rebalance", ("rebalance my portfolio",)),
    _query(DefiIntent.SHOW_RATES, "get_rates", ("show rates for USDC",), weight=0),
    _query(DefiIntent.SHOW_POSITIONS, "get_positions", ("show my positions",)),
    _query(DefiIntent.COMPARE_PROTOCOLS, "compare_protocols", ("compare Silo and Takara",)),
    _query(DefiIntent.MARKET_ANALYSIS, "analyze_market", ("analyze the SEI market",)),
    _query(DefiIntent.HELP, "get_help", ("help",)),
    _query(DefiIntent.EXPLAIN, "explain", ("explain impermanent loss",)),
)

TEMPLATES: Mapping[DefiIntent, CommandTemplate] = MappingProxyType({t.intent: t for t in _TEMPLATES})

_LENDING_VENUES = ("silo", "takara")
_DEX_VENUES = ("dragonswap", "symphony")

AVAILABLE_PROTOCOLS: Mapping[DefiIntent, tuple[str, ...]] = MappingProxyType(
    {
        DefiIntent.LEND: _LENDING_VENUES,
        DefiIntent.BORROW: _LENDING_VENUES,
        DefiIntent.REPAY: _LENDING_VENUES,
        DefiIntent.WITHDRAW: _LENDING_VENUES,
        DefiIntent.SWAP: _DEX_VENUES,
        DefiIntent.ADD_LIQUIDITY: _DEX_VENUES,
        DefiIntent.REMOVE_LIQUIDITY: _DEX_VENUES,
        DefiIntent.OPEN_POSITION: ("citrex",),
        DefiIntent.CLOSE_POSITION: ("citrex",),
        DefiIntent.ARBITRAGE: _DEX_VENUES,
        DefiIntent.CROSS_PROTOCOL_ARBITRAGE: _DEX_VENUES,
    }
)


def get_template(intent: DefiIntent) -> CommandTemplate | None:
    return TEMPLATES.get(intent)


def available_protocols(intent: DefiIntent) -> tuple[str, ...]:
    return AVAILABLE_PROTOCOLS.get(intent, ())
