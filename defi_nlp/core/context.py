from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

import pandas as pd

from defi_nlp.core.entities import KNOWN_TOKEN_RE, PROTOCOL_RE
from defi_nlp.adapters.symbols import normalize_protocol, normalize_token
from defi_nlp.core.types import (
    LENDING_INTENTS,
    LIQUIDITY_INTENTS,
    TRADING_INTENTS,
    ConversationContext,
    DefiIntent,
    EntityType,
    FinancialEntity,
)

logger = logging.getLogger(__name__)

RISK_COEFFICIENTS = {"lending": 0.2, "borrowing": 0.6, "liquidity": 0.4, "trading": 0.8}
DEFAULT_RISK_COEFFICIENT = 0.5
LOW_HEALTH_FACTOR = 1.5
LOW_HEALTH_MULTIPLIER = 1.5
COMPLEX_POSITION_VALUE = 10_000
TOLERANCE_CAPACITY = {"low": 0.2, "medium": 0.5, "high": 0.8}

NEXT_INTENT = {
    DefiIntent.PORTFOLIO_STATUS: DefiIntent.YIELD_OPTIMIZATION,
    DefiIntent.SHOW_RATES: DefiIntent.LEND,
    DefiIntent.LEND: DefiIntent.PORTFOLIO_STATUS,
}
EXECUTION_INTENTS = frozenset({DefiIntent.LEND, DefiIntent.BORROW, DefiIntent.SWAP})


@dataclass(frozen=True)
class UserProfile:
    experience_level: str
    preferred_protocols: tuple[str, ...]
    average_transaction_size: float
    most_used_intents: tuple[DefiIntent, ...]
    trading_patterns: tuple[str, ...]
    risk_tolerance: str


@dataclass(frozen=True)
class PortfolioState:
    total_value: float
    position_distribution: dict[str, float]
    risk_exposure: float
    liquidity_ratio: float
    yield_generating: bool
    health_factors: tuple[float, ...]
    diversification_score: float


@dataclass(frozen=True)
class ConversationFlow:
    stage: str
    completion: float
    next_expected_intent: DefiIntent | None
    required_information: tuple[str, ...]


@dataclass(frozen=True)
class ConversationState:
    current_topic: str
    intent_sequence: tuple[DefiIntent, ...]
    pending_actions: tuple[DefiIntent, ...]
    context_carryover: dict[str, tuple[str, ...]]
    flow: ConversationFlow


@dataclass(frozen=True)
class RiskFactor:
    type: str
    severity: str
    impact: float
    description: str


@dataclass(frozen=True)
class RiskProfile:
    tolerance: str
    risk_capacity: float
    current_risk: float
    risk_factors: tuple[RiskFactor, ...]
    suggestions: tuple[str, ...]


@dataclass(frozen=True)
class Recommendation:
    type: str
    priority: str
    title: str
    description: str
    action: str
    expected_benefit: str


@dataclass(frozen=True)
class ContextAnalysis:
    user_profile: UserProfile
    portfolio: PortfolioState
    conversation: ConversationState
    risk_profile: RiskProfile
    recommendations: tuple[Recommendation, ...] = ()
    recent_intents: tuple[DefiIntent, ...] = ()
    recent_action: DefiIntent | None = None
    has_lending_positions: bool = False
    has_liquidity_positions: bool = False
    portfolio_value: float = 0.0
    relevant_history: tuple[str, ...] = field(default_factory=tuple)


def _positions_frame(context: ConversationContext) -> pd.DataFrame:
    rows = [p.model_dump() for p in context.active_positions]
    df = pd.DataFrame(rows, columns=["type", "protocol", "token", "value", "apy", "health_factor"])
    if not df.empty:
        df["value"] = df["value"].astype(float)
        df["protocol"] = df["protocol"].map(normalize_protocol)
    return df


class ContextAnalyzer:
    """Summarises a read-only conversation snapshot into classifier hints."""

    def analyze(
        self,
        context: ConversationContext | None,
        current_entities: Sequence[FinancialEntity] = (),
    ) -> ContextAnalysis | None:
        if context is None:
            return None

        df = _positions_frame(context)
        profile = self._user_profile(context, df)
        portfolio = self._portfolio_state(context, df)
        conversation = self._conversation_state(context, current_entities)
        risk = self._risk_profile(context, portfolio)
        recommendations = self._recommendations(profile, portfolio, risk)

        has_types = set(df["type"]) if not df.empty else set()
        analysis = ContextAnalysis(
            user_profile=profile,
            portfolio=portfolio,
            conversation=conversation,
            risk_profile=risk,
            recommendations=recommendations,
            recent_intents=conversation.intent_sequence,
            recent_action=conversation.intent_sequence[-1] if conversation.intent_sequence else None,
            has_lending_positions="lending" in has_types,
            has_liquidity_positions="liquidity" in has_types,
            portfolio_value=portfolio.total_value,
            relevant_history=tuple(t.user_message for t in context.history[-5:] if t.user_message),
        )
        logger.debug(
            "context_analyzed",
            extra={
                "event": "context_analyzed",
                "experience": profile.experience_level,
                "positions": len(df),
                "topic": conversation.current_topic,
            },
        )
        return analysis

    def _user_profile(self, context: ConversationContext, df: pd.DataFrame) -> UserProfile:
        intents = [t.intent for t in context.history]
        counts = Counter(intents)
        complex_positions = 0
        if not df.empty:
            complex_positions = int(((df["type"] == "trading") | (df["value"] > COMPLEX_POSITION_VALUE)).sum())

        interactions = len(intents)
        unique = len(counts)
        if interactions > 100 and unique > 8 and complex_positions > 3:
            level = "advanced"
        elif interactions > 20 and unique > 4 and complex_positions > 1:
            level = "intermediate"
        else:
            level = "beginner"

        preferred: list[str] = []
        for name in context.preferred_protocols:
            key = normalize_protocol(name)
            if key and key not in preferred:
                preferred.append(key)
        if not df.empty:
            for key in df["protocol"].value_counts(sort=True).index:
                if key not in preferred:
                    preferred.append(str(key))

        trading_turns = sum(1 for i in intents if i in TRADING_INTENTS)
        return UserProfile(
            experience_level=level,
            preferred_protocols=tuple(preferred[:3]),
            average_transaction_size=float(df["value"].mean()) if not df.empty else 0.0,
            most_used_intents=tuple(i for i, _ in counts.most_common(5)),
            trading_patterns=("frequent_trader",) if trading_turns > 5 else (),
            risk_tolerance=context.risk_tolerance,
        )

    def _portfolio_state(self, context: ConversationContext, df: pd.DataFrame) -> PortfolioState:
        if df.empty:
            return PortfolioState(
                total_value=float(context.portfolio_value or 0.0),
                position_distribution={},
                risk_exposure=0.0,
                liquidity_ratio=0.0,
                yield_generating=False,
                health_factors=(),
                diversification_score=0.0,
            )

        total = float(df["value"].sum())
        health = df["health_factor"].astype(float)
        coeff = df["type"].map(RISK_COEFFICIENTS).fillna(DEFAULT_RISK_COEFFICIENT)
        coeff = coeff.where(~(health < LOW_HEALTH_FACTOR), coeff * LOW_HEALTH_MULTIPLIER)

        if total > 0:
            distribution = {str(k): float(v / total) for k, v in df.groupby("protocol")["value"].sum().items()}
            exposure = float((coeff * df["value"]).sum() / total)
            liquid = float(df.loc[df["type"].isin(["lending", "liquidity"]), "value"].sum())
            liquidity_ratio = liquid / total
        else:
            distribution = {}
            exposure = 0.0
            liquidity_ratio = 0.0

        spread = df["token"].map(lambda s: normalize_token(s).base).nunique() + df["protocol"].nunique() + df["type"].nunique()
        return PortfolioState(
            total_value=total,
            position_distribution=distribution,
            risk_exposure=exposure,
            liquidity_ratio=liquidity_ratio,
            yield_generating=bool((df["apy"].astype(float) > 0).any()),
            health_factors=tuple(float(h) for h in health.dropna()),
            diversification_score=min(spread / 10, 1.0),
        )

    def _conversation_state(
        self,
        context: ConversationContext,
        current_entities: Sequence[FinancialEntity],
    ) -> ConversationState:
        history = context.history
        last_three = [t.intent for t in history[-3:]]
        if last_three and all(i in LENDING_INTENTS for i in last_three):
            topic = "lending"
        elif DefiIntent.SWAP in last_three:
            topic = "trading"
        elif any(i in LIQUIDITY_INTENTS for i in last_three):
            topic = "liquidity"
        else:
            topic = "general"

        sequence = tuple(t.intent for t in history[-5:])
        pending = tuple(t.intent for t in history[-10:] if not t.successful)

        tokens: list[str] = []
        protocols: list[str] = []
        for turn in history[-5:]:
            for m in KNOWN_TOKEN_RE.finditer(turn.user_message):
                tokens.append(normalize_token(m.group(0)).base)
            for m in PROTOCOL_RE.finditer(turn.user_message):
                protocols.append(normalize_protocol(m.group(0)))
        for entity in current_entities:
            if entity.type == EntityType.TOKEN:
                tokens.append(entity.normalized_value)
            elif entity.type == EntityType.PROTOCOL:
                protocols.append(entity.normalized_value)
        carryover = {"tokens": tuple(dict.fromkeys(tokens)), "protocols": tuple(dict.fromkeys(protocols))}

        return ConversationState(
            current_topic=topic,
            intent_sequence=sequence,
            pending_actions=pending,
            context_carryover=carryover,
            flow=self._flow(sequence, current_entities),
        )

    def _flow(self, sequence: tuple[DefiIntent, ...], current_entities: Sequence[FinancialEntity]) -> ConversationFlow:
        last = sequence[-1] if sequence else None
        if DefiIntent.PORTFOLIO_STATUS in sequence:
            stage = "exploration"
        elif len(current_entities) > 2:
            stage = "decision"
        elif last in EXECUTION_INTENTS:
            stage = "execution"
        else:
            stage = "exploration"

        present = {e.type for e in current_entities}
        required = tuple(
            name for name, kind in (("amount", EntityType.AMOUNT), ("token", EntityType.TOKEN)) if kind not in present
        )
        return ConversationFlow(
            stage=stage,
            completion=min(len(sequence) / 5, 1.0),
            next_expected_intent=NEXT_INTENT.get(last) if last else None,
            required_information=required,
        )

    def _risk_profile(self, context: ConversationContext, portfolio: PortfolioState) -> RiskProfile:
        base = TOLERANCE_CAPACITY.get(context.risk_tolerance, 0.5)
        if portfolio.total_value > 100_000:
            size = 1.2
        elif portfolio.total_value > 10_000:
            size = 1.0
        else:
            size = 0.8

        factors: list[RiskFactor] = []
        if any(h < LOW_HEALTH_FACTOR for h in portfolio.health_factors):
            factors.append(RiskFactor("health_factor", "high", 0.8, "Some positions have low health factors"))
        if portfolio.diversification_score < 0.3:
            factors.append(RiskFactor("concentration", "medium", 0.6, "Portfolio lacks diversification"))
        if portfolio.risk_exposure > 0.7:
            factors.append(RiskFactor("leverage", "high", 0.9, "High leverage exposure"))

        suggestions: list[str] = []
        if portfolio.risk_exposure > 0.7:
            suggestions.append("Consider reducing position sizes")
        if any(f.type == "health_factor" for f in factors):
            suggestions.append("Add collateral to improve health factors")
        if any(f.type == "concentration" for f in factors):
            suggestions.append("Diversify across more assets and protocols")

        return RiskProfile(
            tolerance=context.risk_tolerance,
            risk_capacity=base * size,
            current_risk=portfolio.risk_exposure,
            risk_factors=tuple(factors),
            suggestions=tuple(suggestions),
        )

    def _recommendations(
        self,
        profile: UserProfile,
        portfolio: PortfolioState,
        risk: RiskProfile,
    ) -> tuple[Recommendation, ...]:
        out: list[Recommendation] = []
        if not portfolio.yield_generating and portfolio.total_value > 1000:
            out.append(
                Recommendation(
                    type="optimization",
                    priority="high",
                    title="Yield Optimization Opportunity",
                    description="You have idle funds that could be generating yield",
                    action="Consider lending your assets to earn interest",
                    expected_benefit="Potential 5-15% APY on idle funds",
                )
            )
        if risk.current_risk > risk.risk_capacity:
            out.append(
                Recommendation(
                    type="risk_reduction",
                    priority="high",
                    title="Risk Exposure Too High",
                    description="Your current risk level exceeds your capacity",
                    action="Consider reducing leverage or diversifying positions",
                    expected_benefit="Improved portfolio stability",
                )
            )
        if portfolio.diversification_score < 0.5:
            out.append(
                Recommendation(
                    type="optimization",
                    priority="medium",
                    title="Improve Diversification",
                    description="Your portfolio is concentrated in few assets",
                    action="Consider adding different asset classes or protocols",
                    expected_benefit="Reduced correlation risk",
                )
            )
        if profile.experience_level == "beginner":
            out.append(
                Recommendation(
                    type="education",
                    priority="medium",
                    title="Learn About DeFi Risks",
                    description="Understanding risks is crucial for DeFi success",
                    action="Start with small amounts and conservative strategies",
                    expected_benefit="Better risk management and decision making",
                )
            )
        return tuple(out)
