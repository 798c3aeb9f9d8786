from __future__ import annotations

import pytest

from defi_nlp.core.context import ContextAnalyzer
from defi_nlp.core.entities import EntityExtractor
from defi_nlp.core.types import ConversationContext, ConversationTurn, DefiIntent, Position


def _turn(intent: DefiIntent, message: str = "", successful: bool = True) -> ConversationTurn:
    return ConversationTurn(intent=intent, user_message=message, successful=successful)


def test_no_context_gives_no_analysis() -> None:
    assert ContextAnalyzer().analyze(None) is None


def test_portfolio_state_from_positions() -> None:
    context = ConversationContext(
        active_positions=(
            Position(type="lending", protocol="Silo", token="USDC", value=5000, apy=5.0),
            Position(type="borrowing", protocol="takara", token="SEI", value=2000, health_factor=1.2),
        ),
    )
    analysis = ContextAnalyzer().analyze(context)
    assert analysis is not None
    portfolio = analysis.portfolio

    assert portfolio.total_value == pytest.approx(7000)
    assert portfolio.position_distribution["silo"] == pytest.approx(5000 / 7000)
    assert portfolio.risk_exposure == pytest.approx((0.2 * 5000 + 0.6 * 1.5 * 2000) / 7000)
    assert portfolio.liquidity_ratio == pytest.approx(5000 / 7000)
    assert portfolio.yield_generating
    assert portfolio.health_factors == (1.2,)
    assert portfolio.diversification_score == pytest.approx(0.6)

    assert analysis.has_lending_positions
    assert not analysis.has_liquidity_positions
    assert analysis.portfolio_value == pytest.approx(7000)
    assert analysis.user_profile.preferred_protocols[0] in {"silo", "takara"}

    risk = analysis.risk_profile
    assert [f.type for f in risk.risk_factors] == ["health_factor"]
    assert "Add collateral to improve health factors" in risk.suggestions
    assert risk.risk_capacity == pytest.approx(0.5 * 0.8)


def test_idle_funds_and_beginner_recommendations() -> None:
    analysis = ContextAnalyzer().analyze(ConversationContext(portfolio_value=5000))
    assert analysis is not None
    titles = [r.title for r in analysis.recommendations]
    assert "Yield Optimization Opportunity" in titles
    assert "Learn About DeFi Risks" in titles
    assert analysis.user_profile.experience_level == "beginner"


def test_high_exposure_flags_risk_reduction() -> None:
    context = ConversationContext(
        risk_tolerance="low",
        active_positions=(Position(type="trading", protocol="citrex", token="ETH", value=20_000),),
    )
    analysis = ContextAnalyzer().analyze(context)
    assert analysis is not None
    assert analysis.risk_profile.current_risk == pytest.approx(0.8)
    assert any(f.type == "leverage" for f in analysis.risk_profile.risk_factors)
    assert any(r.type == "risk_reduction" for r in analysis.recommendations)


@pytest.mark.parametrize(
    "intents,topic",
    [
        ((DefiIntent.LEND, DefiIntent.WITHDRAW, DefiIntent.BORROW), "lending"),
        ((DefiIntent.LEND, DefiIntent.SWAP), "trading"),
        ((DefiIntent.HELP, DefiIntent.ADD_LIQUIDITY), "liquidity"),
        ((DefiIntent.HELP,), "general"),
        ((), "general"),
    ],
)
def test_conversation_topic(intents: tuple[DefiIntent, ...], topic: str) -> None:
    context = ConversationContext(history=tuple(_turn(i) for i in intents))
    analysis = ContextAnalyzer().analyze(context)
    assert analysis is not None
    assert analysis.conversation.current_topic == topic


def test_conversation_carryover_and_flow() -> None:
    context = ConversationContext(
        history=(
            _turn(DefiIntent.SHOW_RATES, "show rates for USDC on silo"),
            _turn(DefiIntent.LEND, "lend 100 ETH", successful=False),
        ),
    )
    entities = EntityExtractor().extract("swap SEI on takara")
    analysis = ContextAnalyzer().analyze(context, entities)
    assert analysis is not None
    conversation = analysis.conversation

    assert conversation.context_carryover["tokens"] == ("USDC", "ETH", "SEI")
    assert conversation.context_carryover["protocols"] == ("silo", "takara")
    assert conversation.pending_actions == (DefiIntent.LEND,)
    assert conversation.flow.stage == "execution"
    assert conversation.flow.next_expected_intent == DefiIntent.PORTFOLIO_STATUS
    assert conversation.flow.required_information == ("amount",)
    assert analysis.recent_action == DefiIntent.LEND
    assert analysis.relevant_history == ("show rates for USDC on silo", "lend 100 ETH")
