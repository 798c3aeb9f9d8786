from __future__ import annotations

import asyncio
import json

import pytest

from defi_nlp.adapters.market_data import StaticMarketData
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.errors import ProcessingError
from defi_nlp.core.types import DefiIntent, ParsingContext
from defi_nlp.services.disambiguation import AmbiguityType, DisambiguationOption, DisambiguationOptions
from defi_nlp.services.parser import CommandParser
from defi_nlp.services.pipeline import HIGH_RISK_WARNING, REJECTION_HINT, NLPPipeline, TurnResult, TurnState


class _GatedMarket(StaticMarketData):
    """The first price lookup waits until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.calls = 0

    async def get_price(self, token: str) -> float | None:
        self.calls += 1
        if self.calls == 1:
            await self.gate.wait()
        return await super().get_price(token)


READY = [
    TurnState.RECEIVED,
    TurnState.ENTITIES_EXTRACTED,
    TurnState.CLASSIFIED,
    TurnState.PARAMETERS_EXTRACTED,
    TurnState.VALIDATED,
    TurnState.COMMAND_READY,
]


@pytest.mark.asyncio
async def test_simple_lend_is_ready() -> None:
    turn = await NLPPipeline().process("lend 1000 USDC")
    assert turn.state == TurnState.COMMAND_READY
    assert list(turn.transitions) == READY
    assert turn.command is not None
    assert turn.command.intent == DefiIntent.LEND
    assert turn.command.risk_level == "low"
    assert turn.command.metadata.required_approvals
    assert "Try specifying a protocol: Silo, Takara" in turn.suggestions
    assert turn.error is None

    payload = turn.to_dict()
    assert payload["state"] == "command_ready"
    assert payload["command"]["action"] == "supply"
    json.dumps(payload)


@pytest.mark.asyncio
async def test_large_lend_awaits_confirmation() -> None:
    turn = await NLPPipeline().process("lend 100000 USDC")
    assert turn.state == TurnState.AWAITING_CONFIRMATION
    assert list(turn.transitions) == READY + [TurnState.AWAITING_CONFIRMATION]
    assert turn.confirmation is not None
    assert turn.confirmation.default_option == "cancel"
    assert turn.disambiguation is None


@pytest.mark.asyncio
async def test_high_leverage_warns() -> None:
    turn = await NLPPipeline().process("lend 1000 USDC with 10x leverage")
    assert turn.command is not None
    assert turn.command.risk_level == "high"
    assert turn.state == TurnState.AWAITING_CONFIRMATION
    assert HIGH_RISK_WARNING in turn.warnings


@pytest.mark.asyncio
async def test_missing_token_asks_then_resolves() -> None:
    pipeline = NLPPipeline()
    turn = await pipeline.process("lend 1000")
    assert turn.state == TurnState.DISAMBIGUATION
    assert list(turn.transitions) == [
        TurnState.RECEIVED,
        TurnState.ENTITIES_EXTRACTED,
        TurnState.CLASSIFIED,
        TurnState.PARAMETERS_EXTRACTED,
        TurnState.DISAMBIGUATION,
    ]
    assert turn.command is None
    assert turn.processing.missing_parameters == ("asset",)
    assert turn.disambiguation.ambiguity == AmbiguityType.MISSING_PARAMETER

    answered = await pipeline.resolve(turn, "token_usdc")
    assert answered.state == TurnState.COMMAND_READY
    assert list(answered.transitions) == READY
    assert answered.command.parameters.primary.token == "USDC"


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["lend 50% of my USDC", "lend 50 % of my USDC"])
async def test_share_of_balance(text: str) -> None:
    parsing = ParsingContext(balances={"USDC": 10_000})
    turn = await NLPPipeline().process(text, parsing=parsing)
    assert turn.state == TurnState.COMMAND_READY
    assert turn.command.parameters.primary.amount == pytest.approx(5000)
    assert turn.command.parameters.primary.percentage == pytest.approx(50)


@pytest.mark.asyncio
async def test_unrelated_text_is_rejected() -> None:
    turn = await NLPPipeline().process("banana smoothie recipe")
    assert turn.state == TurnState.REJECTED
    assert list(turn.transitions) == [TurnState.RECEIVED, TurnState.ENTITIES_EXTRACTED, TurnState.REJECTED]
    assert turn.error.code == "NO_INTENT"
    assert turn.suggestions == (REJECTION_HINT,)
    assert turn.to_dict()["error"]["code"] == "NO_INTENT"


@pytest.mark.asyncio
async def test_non_text_is_rejected_before_classification() -> None:
    turn = await NLPPipeline().process(None)  # type: ignore[arg-type]
    assert turn.state == TurnState.REJECTED
    assert list(turn.transitions) == [TurnState.RECEIVED, TurnState.REJECTED]
    assert turn.error.code == "INVALID_INPUT"
    assert turn.text == "None"


@pytest.mark.asyncio
async def test_vague_text_offers_intent_choices() -> None:
    pipeline = NLPPipeline()
    turn = await pipeline.process("what about yield")
    assert turn.state == TurnState.REJECTED
    assert turn.error.code == "LOW_CONFIDENCE"
    assert turn.disambiguation is not None
    assert turn.disambiguation.options[0].id == "intent_yield_optimization"

    answered = await pipeline.resolve(turn, "intent_yield_optimization")
    assert answered.state == TurnState.COMMAND_READY
    assert answered.command.intent == DefiIntent.YIELD_OPTIMIZATION


@pytest.mark.asyncio
async def test_vague_text_without_disambiguation() -> None:
    turn = await NLPPipeline(NLPConfig(enable_disambiguation=False)).process("what about yield")
    assert turn.state == TurnState.REJECTED
    assert turn.disambiguation is None


@pytest.mark.asyncio
async def test_parameter_error_is_invalid() -> None:
    turn = await NLPPipeline().process("lend 100 USDC and ETH")
    assert turn.state == TurnState.INVALID
    assert turn.transitions[-1] == TurnState.INVALID
    assert turn.error.code == "TOO_MANY_TOKENS"
    assert turn.classification.intent == DefiIntent.LEND


@pytest.mark.asyncio
async def test_insufficient_balance_is_invalid() -> None:
    parsing = ParsingContext(balances={"USDC": 500})
    turn = await NLPPipeline().process("lend 1000 USDC", parsing=parsing)
    assert turn.state == TurnState.INVALID
    assert turn.transitions[-2:] == (TurnState.VALIDATED, TurnState.INVALID)
    assert "INSUFFICIENT_BALANCE" in [e["code"] for e in turn.to_dict()["errors"]]


@pytest.mark.asyncio
async def test_resolve_without_question_raises() -> None:
    pipeline = NLPPipeline()
    turn = await pipeline.process("lend 1000 USDC")
    with pytest.raises(ProcessingError) as exc:
        await pipeline.resolve(turn, "token_usdc")
    assert exc.value.code == "INVALID_OPTION"


@pytest.mark.asyncio
async def test_resolve_without_parsed_command_raises() -> None:
    question = DisambiguationOptions(
        AmbiguityType.MISSING_PARAMETER,
        "Which asset would you like to use?",
        (DisambiguationOption("token_usdc", "USDC", "Use USDC", {"token": "USDC"}),),
    )
    turn = TurnResult(text="lend 1000", state=TurnState.DISAMBIGUATION, transitions=(), clarification=question)
    with pytest.raises(ProcessingError) as exc:
        await NLPPipeline().resolve(turn, "token_usdc")
    assert exc.value.code == "NO_PENDING_COMMAND"
    assert exc.value.details["ambiguity"] == AmbiguityType.MISSING_PARAMETER.value


@pytest.mark.asyncio
async def test_newer_turn_supersedes_older_one() -> None:
    config = NLPConfig(timeout_ms=5000)
    market = _GatedMarket()
    pipeline = NLPPipeline(config, parser=CommandParser(config, market=market))

    first = asyncio.create_task(pipeline.submit("chat-1", "lend 1000 USDC"))
    while market.calls == 0:
        await asyncio.sleep(0.01)

    second = await pipeline.submit("chat-1", "lend 500 USDC")
    stale = await first

    assert stale.state == TurnState.SUPERSEDED
    assert stale.transitions == (TurnState.RECEIVED, TurnState.SUPERSEDED)
    assert second.state == TurnState.COMMAND_READY
    assert second.command.parameters.primary.amount == pytest.approx(500)
    assert pipeline._inflight == {}


@pytest.mark.asyncio
async def test_sessions_do_not_supersede_each_other() -> None:
    pipeline = NLPPipeline()
    a, b = await asyncio.gather(
        pipeline.submit("chat-1", "lend 1000 USDC"),
        pipeline.submit("chat-2", "swap 100 USDC to SEI"),
    )
    assert a.state == TurnState.COMMAND_READY
    assert b.command.intent == DefiIntent.SWAP
