from __future__ import annotations

import asyncio
import logging

import pytest

from defi_nlp.adapters.market_data import StaticMarketData
from defi_nlp.core.classifier import IntentClassifier
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.entities import EntityExtractor
from defi_nlp.core.errors import CommandBuildingError, ParameterExtractionError, ProcessingError
from defi_nlp.core.types import DefiIntent, IntentClassification, ParsingContext, Position
from defi_nlp.services.disambiguation import AmbiguityType
from defi_nlp.services.parser import CommandParser
from defi_nlp.services.templates import get_template


class _SlowMarket(StaticMarketData):
    async def get_price(self, token: str) -> float | None:
        await asyncio.sleep(1)
        return await super().get_price(token)


class _BrokenMarket(StaticMarketData):
    async def get_price(self, token: str) -> float | None:
        raise RuntimeError("price feed down")


async def _parse(
    text: str,
    parsing: ParsingContext | None = None,
    config: NLPConfig | None = None,
    market: StaticMarketData | None = None,
):
    config = config or NLPConfig()
    entities = EntityExtractor(config).extract(text)
    classification = IntentClassifier(config).classify(text, entities)
    parser = CommandParser(config, market=market or StaticMarketData())
    return parser, await parser.parse(classification, text, parsing)


@pytest.mark.asyncio
async def test_lend_builds_command_with_approval() -> None:
    _, result = await _parse("lend 1000 USDC")
    command = result.command
    assert command is not None
    assert command.intent == DefiIntent.LEND
    assert command.action == "supply"
    assert command.risk_level == "low"
    assert not command.confirmation_required
    assert command.validation_status == "valid"
    assert command.metadata.confidence == pytest.approx(0.9)
    assert command.metadata.estimated_duration_s == 90

    derived = command.parameters.derived
    assert derived.total_cost == pytest.approx(1000)
    assert [f.type for f in derived.fees] == ["gas"]
    assert derived.fees[0].amount == pytest.approx(150_000 * 20e-9)
    assert len(derived.approvals) == 1
    assert derived.approvals[0].token == "USDC"
    assert derived.approvals[0].spender == "silo"
    assert command.metadata.required_approvals == derived.approvals

    assert "Try specifying a protocol: Silo, Takara" in [s.description for s in result.suggestions]
    assert result.disambiguation is None
    assert result.confirmation is None


@pytest.mark.asyncio
async def test_known_allowance_skips_approval() -> None:
    parsing = ParsingContext(allowances={"USDC": 5000})
    _, result = await _parse("lend 1000 USDC", parsing=parsing)
    assert result.command is not None
    assert result.command.parameters.derived.approvals == ()


@pytest.mark.asyncio
async def test_protocol_prefix_and_details() -> None:
    _, result = await _parse("lend 1000 USDC on silo")
    command = result.command
    assert command is not None
    assert command.action == "silo_supply"
    assert command.estimated_gas == 135_000
    assert command.parameters.derived.protocol_details["isolated_markets"] is True
    assert command.metadata.protocols_involved == ("silo",)
    assert all("protocol" not in s.description.lower() for s in result.suggestions)


@pytest.mark.asyncio
async def test_swap_enrichment() -> None:
    _, result = await _parse("swap 1000 USDC to SEI")
    command = result.command
    assert command is not None
    primary = command.parameters.primary
    assert (primary.from_token, primary.to_token) == ("USDC", "SEI")

    derived = command.parameters.derived
    assert [(s.token_in, s.token_out, s.protocol) for s in derived.route] == [("USDC", "SEI", "dragonswap")]
    assert derived.output_amount == pytest.approx(1000 / 0.5 * 0.995)
    assert derived.price_impact == pytest.approx(0.02)
    protocol_fee = next(f for f in derived.fees if f.type == "protocol")
    assert protocol_fee.amount == pytest.approx(3.0)
    assert derived.total_cost == pytest.approx(1003.0)
    assert derived.approvals[0].spender == "dragonswap"
    assert command.action == "swap"


@pytest.mark.asyncio
async def test_swap_without_hub_token_routes_through_usdc() -> None:
    _, result = await _parse("swap 1 ETH to BTC")
    command = result.command
    assert command is not None
    route = command.parameters.derived.route
    assert [(s.token_in, s.token_out) for s in route] == [("ETH", "USDC"), ("USDC", "BTC")]
    assert command.action == "multi_hop_swap"
    assert command.estimated_gas == 270_000
    assert command.metadata.estimated_duration_s == 60 + 30 + 30 * 2


def test_buy_with_reverses_token_order() -> None:
    text = "buy SEI with 100 USDC"
    entities = tuple(EntityExtractor().extract(text))
    primary, inferred = CommandParser().extract_parameters(get_template(DefiIntent.SWAP), entities, text)
    assert (primary.from_token, primary.to_token, primary.amount) == ("USDC", "SEI", 100.0)
    assert inferred == ()


def test_too_many_tokens() -> None:
    text = "lend 100 USDC and ETH"
    entities = tuple(EntityExtractor().extract(text))
    with pytest.raises(ParameterExtractionError) as exc:
        CommandParser().extract_parameters(get_template(DefiIntent.LEND), entities, text)
    assert exc.value.code == "TOO_MANY_TOKENS"


@pytest.mark.asyncio
async def test_percentage_resolves_against_balance() -> None:
    _, result = await _parse("lend 50% of my USDC", parsing=ParsingContext(balances={"USDC": 10_000}))
    command = result.command
    assert command is not None
    assert command.parameters.primary.amount == pytest.approx(5000)
    assert command.parameters.primary.percentage == pytest.approx(50)


@pytest.mark.asyncio
async def test_relative_share_prefers_matching_position() -> None:
    parsing = ParsingContext(
        balances={"USDC": 100},
        positions=(Position(type="lending", protocol="silo", token="USDC", value=3000),),
    )
    _, result = await _parse("withdraw half my USDC", parsing=parsing)
    command = result.command
    assert command is not None
    assert command.intent == DefiIntent.WITHDRAW
    assert command.parameters.primary.amount == pytest.approx(1500)
    assert command.parameters.primary.relative_amount == "half"


@pytest.mark.asyncio
async def test_token_and_protocol_inferred_from_single_position() -> None:
    parsing = ParsingContext(positions=(Position(type="lending", protocol="Silo", token="usdc", value=3000),))
    _, result = await _parse("withdraw 100", parsing=parsing)
    command = result.command
    assert command is not None
    assert command.parameters.primary.token == "USDC"
    assert command.parameters.primary.protocol == "silo"
    assert command.action == "silo_withdraw"
    assert result.inferred == ("token", "protocol")
    inferred = [e for e in result.validation.errors if e.code == "PARAMETER_INFERRED"]
    assert [e.severity for e in inferred] == ["info", "info"]


@pytest.mark.asyncio
async def test_insufficient_balance_blocks_command() -> None:
    _, result = await _parse("lend 1000 USDC", parsing=ParsingContext(balances={"USDC": 500}))
    assert result.command is None
    assert "INSUFFICIENT_BALANCE" in result.validation.codes()
    assert not result.needs_disambiguation


@pytest.mark.asyncio
async def test_borrow_health_factor_and_confirmation() -> None:
    market = StaticMarketData(health_factors={"silo": 2.5})
    parsing = ParsingContext(positions=(Position(type="lending", protocol="silo", token="USDC", value=1000),))
    _, result = await _parse("borrow 100 USDC on silo", parsing=parsing, market=market)
    command = result.command
    assert command is not None
    derived = command.parameters.derived
    assert derived.health_factor_after == pytest.approx(8.0)
    assert derived.protocol_details["current_health_factor"] == pytest.approx(2.5)
    assert derived.protocol_details["risk_tier"] == "conservative"
    assert command.confirmation_required
    assert result.confirmation is not None
    assert result.confirmation.default_option == "cancel"


@pytest.mark.asyncio
async def test_leveraged_position_liquidation_price() -> None:
    _, result = await _parse("open long ETH with 5x")
    command = result.command
    assert command is not None
    assert command.parameters.primary.direction == "long"
    assert command.parameters.derived.liquidation_price == pytest.approx(2000)
    assert command.risk_level == "high"


@pytest.mark.asyncio
async def test_slow_provider_is_omitted(caplog: pytest.LogCaptureFixture) -> None:
    config = NLPConfig(timeout_ms=20)
    with caplog.at_level(logging.WARNING):
        _, result = await _parse("swap 1000 USDC to SEI", config=config, market=_SlowMarket())
    assert result.command is not None
    assert result.command.parameters.derived.output_amount is None
    assert any(r.getMessage() == "enrichment_timeout" for r in caplog.records)


@pytest.mark.asyncio
async def test_failing_provider_is_omitted() -> None:
    _, result = await _parse("swap 1000 USDC to SEI", market=_BrokenMarket())
    assert result.command is not None
    assert result.command.parameters.derived.output_amount is None


@pytest.mark.asyncio
async def test_missing_token_then_resolve() -> None:
    parser, result = await _parse("lend 1000")
    assert result.command is None
    assert result.needs_disambiguation
    assert result.missing_parameters == ("asset",)
    assert result.disambiguation.ambiguity == AmbiguityType.MISSING_PARAMETER
    assert [o.id for o in result.disambiguation.options] == ["token_usdc", "token_usdt", "token_sei", "token_eth"]

    resolved = await parser.resolve(result, "token_usdc")
    assert resolved.command is not None
    assert resolved.command.parameters.primary.token == "USDC"
    assert resolved.command.parameters.primary.amount == pytest.approx(1000)


@pytest.mark.asyncio
async def test_resolve_unknown_option() -> None:
    parser, result = await _parse("lend 1000")
    with pytest.raises(ProcessingError) as exc:
        await parser.resolve(result, "token_doge")
    assert exc.value.code == "INVALID_OPTION"


@pytest.mark.asyncio
async def test_amount_and_share_conflict() -> None:
    parsing = ParsingContext(balances={"USDC": 10_000})
    parser, result = await _parse("lend 1000 USDC 50%", parsing=parsing)
    assert result.command is None
    assert result.disambiguation.ambiguity == AmbiguityType.PARAMETER_CONFLICT
    assert [o.id for o in result.disambiguation.options] == ["use_amount", "use_share"]

    resolved = await parser.resolve(result, "use_share", parsing)
    assert resolved.disambiguation is None
    assert resolved.command is not None
    assert resolved.command.parameters.primary.amount == pytest.approx(5000)
    assert AmbiguityType.PARAMETER_CONFLICT in resolved.resolved


@pytest.mark.asyncio
async def test_unknown_intent_has_no_template() -> None:
    with pytest.raises(CommandBuildingError) as exc:
        await CommandParser().parse(IntentClassification(DefiIntent.UNKNOWN, 0.9), "???")
    assert exc.value.code == "NO_TEMPLATE"


@pytest.mark.asyncio
async def test_validate_command_syntax() -> None:
    parser, result = await _parse("swap 1000 USDC to SEI")
    assert parser.validate_command_syntax(result.command)
    assert len(parser.get_supported_intents()) == 21
    assert parser.get_template(DefiIntent.SWAP).required == ("amount", "from_token", "to_token")
