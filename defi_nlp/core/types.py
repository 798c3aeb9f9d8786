from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DefiIntent(str, Enum):
    LEND = "lend"
    BORROW = "borrow"
    REPAY = "repay"
    WITHDRAW = "withdraw"
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"
    SWAP = "swap"
    OPEN_POSITION = "open_position"
    CLOSE_POSITION = "close_position"
    ARBITRAGE = "arbitrage"
    CROSS_PROTOCOL_ARBITRAGE = "cross_protocol_arbitrage"
    PORTFOLIO_STATUS = "portfolio_status"
    RISK_ASSESSMENT = "risk_assessment"
    YIELD_OPTIMIZATION = "yield_optimization"
    REBALANCE = "rebalance"
    SHOW_RATES = "show_rates"
    SHOW_POSITIONS = "show_positions"
    COMPARE_PROTOCOLS = "compare_protocols"
    MARKET_ANALYSIS = "market_analysis"
    HELP = "help"
    EXPLAIN = "explain"
    UNKNOWN = "unknown"


class EntityType(str, Enum):
    AMOUNT = "amount"
    TOKEN = "token"
    PROTOCOL = "protocol"
    PERCENTAGE = "percentage"
    LEVERAGE = "leverage"
    SLIPPAGE = "slippage"
    RISK_LEVEL = "risk_level"
    TIMEFRAME = "timeframe"
    RELATIVE_AMOUNT = "relative_amount"


LENDING_INTENTS = frozenset({DefiIntent.LEND, DefiIntent.BORROW, DefiIntent.REPAY, DefiIntent.WITHDRAW})
LIQUIDITY_INTENTS = frozenset({DefiIntent.ADD_LIQUIDITY, DefiIntent.REMOVE_LIQUIDITY})
TRADING_INTENTS = frozenset(
    {
        DefiIntent.SWAP,
        DefiIntent.OPEN_POSITION,
        DefiIntent.CLOSE_POSITION,
        DefiIntent.ARBITRAGE,
        DefiIntent.CROSS_PROTOCOL_ARBITRAGE,
    }
)
INFORMATIONAL_INTENTS = frozenset(
    {
        DefiIntent.PORTFOLIO_STATUS,
        DefiIntent.RISK_ASSESSMENT,
        DefiIntent.YIELD_OPTIMIZATION,
        DefiIntent.REBALANCE,
        DefiIntent.SHOW_RATES,
        DefiIntent.SHOW_POSITIONS,
        DefiIntent.COMPARE_PROTOCOLS,
        DefiIntent.MARKET_ANALYSIS,
        DefiIntent.HELP,
        DefiIntent.EXPLAIN,
    }
)


@dataclass(frozen=True)
class FinancialEntity:
    type: EntityType
    raw_value: str
    normalized_value: str
    confidence: float
    start: int
    end: int
    is_valid: bool = True

    @property
    def span(self) -> tuple[int, int]:
        return (self.start, self.end)

    def overlaps(self, other: FinancialEntity) -> bool:
        return self.start < other.end and other.start < self.end

    def as_float(self) -> float:
        return float(self.normalized_value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "raw_value": self.raw_value,
            "normalized_value": self.normalized_value,
            "confidence": round(self.confidence, 4),
            "span": [self.start, self.end],
            "is_valid": self.is_valid,
        }


@dataclass(frozen=True)
class IntentClassification:
    intent: DefiIntent
    confidence: float
    entities: tuple[FinancialEntity, ...] = ()
    sub_intent: str | None = None
    strategy_scores: dict[str, float] = field(default_factory=dict)
    matched_patterns: tuple[str, ...] = ()
    alternatives: tuple[tuple[DefiIntent, float], ...] = ()

    @property
    def confidence_level(self) -> str:
        if self.confidence >= 0.8:
            return "high"
        if self.confidence >= 0.6:
            return "medium"
        return "low"

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "confidence": round(self.confidence, 4),
            "confidence_level": self.confidence_level,
            "sub_intent": self.sub_intent,
            "entities": [e.to_dict() for e in self.entities],
            "strategy_scores": {k: round(v, 4) for k, v in self.strategy_scores.items()},
            "matched_patterns": list(self.matched_patterns),
            "alternatives": [[i.value, round(s, 4)] for i, s in self.alternatives],
        }


@dataclass(frozen=True)
class ValidationError:
    """One field-level finding. Collected and returned, never raised."""

    field: str
    code: str
    message: str
    severity: Literal["error", "warning", "info"] = "error"
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "field": self.field,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
        }
        if self.suggestion:
            out["suggestion"] = self.suggestion
        return out


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["lending", "borrowing", "liquidity", "trading"]
    protocol: str
    token: str
    value: float = Field(ge=0.0)
    apy: float | None = None
    health_factor: float | None = None


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: DefiIntent
    user_message: str = ""
    timestamp: float = 0.0
    successful: bool = True


class ConversationContext(BaseModel):
    """Read-only snapshot of the caller's session, owned outside this package."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    risk_tolerance: Literal["low", "medium", "high"] = "medium"
    preferred_protocols: tuple[str, ...] = ()
    portfolio_value: float | None = None
    active_positions: tuple[Position, ...] = ()
    history: tuple[ConversationTurn, ...] = ()


class ParsingContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    balances: dict[str, float] = Field(default_factory=dict)
    allowances: dict[str, float] = Field(default_factory=dict)
    positions: tuple[Position, ...] = ()
    gas_price_gwei: float | None = None

    def balance_of(self, token: str | None) -> float | None:
        if not token:
            return None
        value = self.balances.get(token.upper())
        if value is None:
            value = self.balances.get(token)
        return value
