from __future__ import annotations

import pytest

from defi_nlp.core.errors import CommandBuildingError
from defi_nlp.core.types import DefiIntent, ParsingContext
from defi_nlp.services.builder import CommandBuilder, GasEstimator, RiskAssessor
from defi_nlp.services.parameters import (
    AssetParameters,
    CommandMetadata,
    CommandParameters,
    DerivedParameters,
    OptionalParameters,
    QueryParameters,
    RequiredApproval,
    RouteStep,
    SwapParameters,
)
from defi_nlp.services.templates import get_template

LEND = get_template(DefiIntent.LEND)
SWAP = get_template(DefiIntent.SWAP)


@pytest.mark.parametrize(
    "primary,level,score",
    [
        (AssetParameters(amount=1000, token="USDC"), "low", 1),
        (AssetParameters(amount=1000, token="USDC", leverage=2), "low", 2),
        (AssetParameters(amount=1000, token="USDC", leverage=3), "medium", 4),
        (AssetParameters(amount=1000, token="USDC", leverage=10), "high", 7),
        (AssetParameters(amount=50_000, token="USDC"), "low", 2),
        (AssetParameters(amount=200_000, token="USDC"), "medium", 3),
    ],
)
def test_risk_scoring(primary: AssetParameters, level: str, score: int) -> None:
    risk = RiskAssessor().assess(LEND, primary, DerivedParameters())
    assert (risk.level, risk.score) == (level, score)


@pytest.mark.parametrize(
    "intent,score",
    [(DefiIntent.PORTFOLIO_STATUS, 0), (DefiIntent.SHOW_RATES, 0), (DefiIntent.HELP, 1)],
)
def test_query_risk_weights(intent: DefiIntent, score: int) -> None:
    risk = RiskAssessor().assess(get_template(intent), QueryParameters(), DerivedParameters())
    assert (risk.level, risk.score) == ("low", score)


def test_price_impact_adds_risk() -> None:
    primary = SwapParameters(amount=100, from_token="USDC", to_token="SEI")
    risk = RiskAssessor().assess(SWAP, primary, DerivedParameters(price_impact=6.0))
    assert risk.score == 4
    assert "price_impact" in risk.factors


def test_citrex_floor_raises_risk() -> None:
    template = get_template(DefiIntent.CLOSE_POSITION)
    risk = RiskAssessor().assess(template, AssetParameters(token="ETH", protocol="citrex"), DerivedParameters())
    assert risk.score == 1
    assert risk.level == "high"


def test_gas_estimates() -> None:
    gas = GasEstimator()
    hops = (RouteStep(protocol="dragonswap", token_in="ETH", token_out="USDC"),) * 2
    assert gas.estimate(SWAP, SwapParameters(), hops) == 270_000
    assert gas.estimate(LEND, AssetParameters(leverage=3)) == 195_000
    assert gas.estimate(SWAP, SwapParameters(protocol="symphony")) == 216_000
    assert gas.estimate(get_template(DefiIntent.HELP), AssetParameters()) is None


@pytest.mark.parametrize(
    "params,action",
    [
        (CommandParameters(primary=SwapParameters(protocol="dragonswap")), "ds_swap"),
        (CommandParameters(primary=SwapParameters(), optional=OptionalParameters(max_slippage=0.05)), "precise_swap"),
        (
            CommandParameters(
                primary=SwapParameters(),
                derived=DerivedParameters(
                    route=(
                        RouteStep(protocol="dragonswap", token_in="ETH", token_out="USDC"),
                        RouteStep(protocol="dragonswap", token_in="USDC", token_out="BTC"),
                    )
                ),
            ),
            "multi_hop_swap",
        ),
    ],
)
def test_action_names(params: CommandParameters, action: str) -> None:
    assert CommandBuilder().action_name(SWAP, params) == action


def test_build_marks_confirmation_reasons() -> None:
    params = CommandParameters(primary=AssetParameters(amount=1000, token="USDC", leverage=10))
    command = CommandBuilder().build(LEND, params)
    assert command.action == "leveraged_supply"
    assert command.risk_level == "high"
    assert command.confirmation_required
    assert command.confirmation_reasons == ("high risk operation", "leverage above 2x")
    assert command.estimated_gas == 195_000
    assert command.validation_status == "valid"


def test_build_rejects_mismatched_parameters() -> None:
    with pytest.raises(CommandBuildingError):
        CommandBuilder().build(LEND, CommandParameters(primary=SwapParameters(amount=1)))


def test_build_batch() -> None:
    builder = CommandBuilder()
    small = builder.build(
        LEND,
        CommandParameters(primary=AssetParameters(amount=10, token="USDC")),
        metadata=CommandMetadata(confidence=0.9, protocols_involved=("silo",)),
    )
    risky = builder.build(
        LEND,
        CommandParameters(primary=AssetParameters(amount=10, token="USDC", leverage=10)),
        metadata=CommandMetadata(confidence=0.7, protocols_involved=("silo", "takara")),
    )
    batch = builder.build_batch([small, risky])
    assert batch.action == "batch"
    assert batch.risk_level == "high"
    assert batch.confirmation_required
    assert batch.estimated_gas == small.estimated_gas + risky.estimated_gas
    assert batch.parameters.primary.command_ids == (small.id, risky.id)
    assert batch.metadata.confidence == pytest.approx(0.7)
    assert batch.metadata.protocols_involved == ("silo", "takara")

    with pytest.raises(CommandBuildingError) as exc:
        builder.build_batch([])
    assert exc.value.code == "EMPTY_BATCH"


def test_optimize_command_returns_tuned_copy() -> None:
    builder = CommandBuilder()
    command = builder.build(
        SWAP,
        CommandParameters(primary=SwapParameters(amount=50_000, from_token="USDC", to_token="SEI", token="USDC")),
    )
    tuned = builder.optimize_command(command, ParsingContext(gas_price_gwei=10))

    optional = tuned.parameters.optional
    assert optional.max_slippage == pytest.approx(0.75)
    assert optional.gas_price == pytest.approx(12.0)
    assert optional.gas_limit == int(command.estimated_gas * 1.1)
    assert [(s.token_in, s.token_out) for s in tuned.parameters.derived.route] == [("USDC", "SEI")]
    assert tuned.parameters.derived.route[0].fee_tier == pytest.approx(0.3)

    assert command.parameters.optional.gas_price is None
    assert command.parameters.derived.route == ()


def test_execution_readiness() -> None:
    builder = CommandBuilder()
    approval = RequiredApproval(token="USDC", spender="silo", amount=1000)
    command = builder.build(
        LEND,
        CommandParameters(primary=AssetParameters(amount=1000, token="USDC")),
        metadata=CommandMetadata(required_approvals=(approval,)),
    )

    ready, issues = builder.check_execution_readiness(command, ParsingContext(balances={"USDC": 500, "SEI": 0}))
    assert not ready
    assert issues == [
        "Insufficient USDC balance",
        "Token approvals required before execution",
        "Insufficient SEI for gas fees",
    ]

    clean = command.model_copy(update={"metadata": CommandMetadata()})
    assert builder.check_execution_readiness(clean, ParsingContext(balances={"USDC": 5000, "SEI": 10})) == (True, [])
