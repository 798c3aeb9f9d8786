from __future__ import annotations

import pytest

from defi_nlp.core.types import DefiIntent, ParsingContext, Position
from defi_nlp.services.parameters import (
    AssetParameters,
    CommandParameters,
    DerivedParameters,
    LiquidityParameters,
    ParameterBag,
    SwapParameters,
)
from defi_nlp.services.templates import get_template
from defi_nlp.services.validator import ParameterValidator


def _check(intent: DefiIntent, primary: ParameterBag, parsing: ParsingContext | None = None, **derived):
    params = CommandParameters(primary=primary, derived=DerivedParameters(**derived))
    return ParameterValidator().validate(get_template(intent), params, parsing)


@pytest.mark.parametrize(
    "intent,primary,code,severity",
    [
        (DefiIntent.LEND, AssetParameters(amount=0, token="USDC"), "INVALID_AMOUNT", "error"),
        (DefiIntent.LEND, AssetParameters(amount=1e15, token="USDC"), "AMOUNT_TOO_LARGE", "error"),
        (DefiIntent.LEND, AssetParameters(amount=10, token="DOGE"), "UNSUPPORTED_TOKEN", "error"),
        (DefiIntent.LEND, AssetParameters(amount=10, token="USDC", protocol="aave"), "UNSUPPORTED_PROTOCOL", "error"),
        (DefiIntent.LEND, AssetParameters(amount=10, token="USDC", protocol="dragonswap"), "PROTOCOL_MISMATCH", "warning"),
        (DefiIntent.LEND, AssetParameters(amount=10, token="USDC", leverage=150), "INVALID_LEVERAGE", "error"),
        (DefiIntent.LEND, AssetParameters(amount=10, token="USDC", leverage=10), "HIGH_LEVERAGE", "warning"),
        (DefiIntent.SWAP, SwapParameters(amount=10, from_token="USDC", to_token="SEI", slippage=60), "INVALID_SLIPPAGE", "error"),
        (DefiIntent.SWAP, SwapParameters(amount=10, from_token="USDC", to_token="SEI", slippage=8), "HIGH_SLIPPAGE", "warning"),
        (DefiIntent.SWAP, SwapParameters(amount=10, from_token="SEI", to_token="SEI"), "SAME_TOKEN_SWAP", "error"),
        (
            DefiIntent.ADD_LIQUIDITY,
            LiquidityParameters(amount=10, token="ATOM", pair_token="USDC"),
            "LOW_LIQUIDITY_TOKEN",
            "warning",
        ),
    ],
)
def test_field_and_business_rules(intent: DefiIntent, primary: ParameterBag, code: str, severity: str) -> None:
    report = _check(intent, primary)
    found = [e for e in report.errors if e.code == code]
    assert len(found) == 1
    assert found[0].severity == severity
    assert report.is_valid is (severity != "error")


def test_missing_parameters_use_labels() -> None:
    report = _check(DefiIntent.SWAP, SwapParameters())
    assert report.missing_parameters == ("amount", "from_asset", "to_asset")
    assert report.codes().count("REQUIRED_PARAMETER_MISSING") == 3
    assert report.errors[1].suggestion == "Please specify the from asset"


def test_balance_rules() -> None:
    parsing = ParsingContext(balances={"USDC": 1000})
    assert _check(DefiIntent.LEND, AssetParameters(amount=950, token="USDC"), parsing).codes() == [
        "HIGH_PERCENTAGE_OF_BALANCE"
    ]
    assert _check(DefiIntent.LEND, AssetParameters(amount=500, token="USDC"), parsing).codes() == []
    # balances only gate spending intents
    assert _check(DefiIntent.WITHDRAW, AssetParameters(amount=5000, token="USDC"), parsing).codes() == []


def test_borrow_capacity() -> None:
    parsing = ParsingContext(positions=(Position(type="lending", protocol="silo", token="USDC", value=1000),))

    over = _check(DefiIntent.BORROW, AssetParameters(amount=800, token="USDC"), parsing)
    assert over.codes() == ["INSUFFICIENT_COLLATERAL"]
    assert over.errors[0].message == "Borrow exceeds available capacity of $750.0"

    near = _check(DefiIntent.BORROW, AssetParameters(amount=700, token="USDC"), parsing)
    assert near.codes() == ["HIGH_UTILIZATION"]
    assert near.is_valid


def test_price_impact_warning() -> None:
    primary = SwapParameters(amount=10, from_token="USDC", to_token="SEI")
    report = _check(DefiIntent.SWAP, primary, price_impact=6.5)
    assert report.codes() == ["HIGH_PRICE_IMPACT"]
    assert report.warnings[0].message == "Price impact is high (6.50%)"
