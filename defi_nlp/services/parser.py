from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable

import pydantic

from defi_nlp.adapters.market_data import MarketDataProvider, StaticMarketData
from defi_nlp.adapters.symbols import HUB_TOKENS, protocol_display
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.errors import CommandBuildingError, ParameterExtractionError, ProcessingError
from defi_nlp.core.types import (
    DefiIntent,
    EntityType,
    FinancialEntity,
    IntentClassification,
    ParsingContext,
    ValidationError,
)
from defi_nlp.services.builder import CommandBuilder
from defi_nlp.services.disambiguation import AmbiguityType, DisambiguationEngine, DisambiguationOptions
from defi_nlp.services.parameters import (
    PARAMETER_MODELS,
    CommandMetadata,
    CommandParameters,
    DerivedParameters,
    ExecutableCommand,
    Fee,
    ParameterBag,
    RequiredApproval,
    RouteStep,
)
from defi_nlp.services.templates import TEMPLATES, CommandTemplate, available_protocols, get_template
from defi_nlp.services.validator import SPENDING_INTENTS, ParameterValidator, ValidationReport

logger = logging.getLogger(__name__)

DIRECTION_RE = re.compile(r"\b(long|short)\b", re.IGNORECASE)
BUY_WITH_RE = re.compile(r"\bbuy\s+\$?[a-z]+\s+with\b", re.IGNORECASE)

HEALTH_FACTOR_LTV = 0.8
GWEI = 1e-9
DEFAULT_GAS_PRICE_GWEI = 20.0
BASE_DURATION_S = 60
APPROVAL_DURATION_S = 30
ARBITRAGE_DURATION_S = 120
ROUTE_STEP_DURATION_S = 30
HIGH_IMPACT_SUGGESTION = 1.0

ARBITRAGE_INTENTS = frozenset({DefiIntent.ARBITRAGE, DefiIntent.CROSS_PROTOCOL_ARBITRAGE})
# where a share ("50%", "all") of the position is taken from instead of the wallet balance
POSITION_SOURCES = {
    DefiIntent.WITHDRAW: "lending",
    DefiIntent.REPAY: "borrowing",
    DefiIntent.REMOVE_LIQUIDITY: "liquidity",
    DefiIntent.CLOSE_POSITION: "trading",
}
# ambiguities raised from entities; once answered they are not asked again
ENTITY_AMBIGUITIES = frozenset(
    {AmbiguityType.PARAMETER_CONFLICT, AmbiguityType.MULTIPLE_AMOUNTS, AmbiguityType.PROTOCOL_CHOICE}
)


@dataclass(frozen=True)
class Suggestion:
    type: str
    title: str
    description: str
    action: str | None = None
    expected_benefit: str | None = None
    risk_level: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class CommandProcessingResult:
    classification: IntentClassification
    raw_text: str
    template: CommandTemplate
    parameters: CommandParameters
    validation: ValidationReport
    command: ExecutableCommand | None = None
    disambiguation: DisambiguationOptions | None = None
    confirmation: DisambiguationOptions | None = None
    suggestions: tuple[Suggestion, ...] = ()
    inferred: tuple[str, ...] = ()
    resolved: frozenset[AmbiguityType] = field(default_factory=frozenset)
    processing_time_ms: float = 0.0

    @property
    def errors(self) -> tuple[ValidationError, ...]:
        return self.validation.errors

    @property
    def missing_parameters(self) -> tuple[str, ...]:
        return self.validation.missing_parameters

    @property
    def needs_disambiguation(self) -> bool:
        return self.disambiguation is not None and self.disambiguation.blocking


class CommandParser:
    """Turns a classification into parameters, enriches them, then validates and builds."""

    def __init__(
        self,
        config: NLPConfig | None = None,
        market: MarketDataProvider | None = None,
        validator: ParameterValidator | None = None,
        disambiguation: DisambiguationEngine | None = None,
        builder: CommandBuilder | None = None,
    ) -> None:
        self.config = config or NLPConfig()
        self.market = market or StaticMarketData()
        self.validator = validator or ParameterValidator()
        self.disambiguation = disambiguation or DisambiguationEngine(self.config)
        self.builder = builder or CommandBuilder()

    async def parse(
        self,
        classification: IntentClassification,
        raw_text: str,
        parsing: ParsingContext | None = None,
    ) -> CommandProcessingResult:
        started = time.perf_counter()
        template = get_template(classification.intent)
        if template is None:
            raise CommandBuildingError(
                f"No command template for intent {classification.intent.value}",
                code="NO_TEMPLATE",
                details={"intent": classification.intent.value},
            )
        primary, inferred = self.extract_parameters(template, classification.entities, raw_text, parsing)
        return await self._complete(
            template,
            CommandParameters(primary=primary),
            classification,
            raw_text,
            parsing,
            inferred=inferred,
            started=started,
        )

    async def resolve(
        self,
        result: CommandProcessingResult,
        option_id: str,
        parsing: ParsingContext | None = None,
    ) -> CommandProcessingResult:
        pending = result.disambiguation
        if pending is None:
            raise ProcessingError("Nothing to resolve", code="INVALID_OPTION", details={"option_id": option_id})
        option = self.disambiguation.resolve(pending, option_id)

        started = time.perf_counter()
        primary = result.parameters.primary
        changes = {k: v for k, v in option.parameters.items() if k in type(primary).model_fields}
        try:
            primary = primary.updated(**changes)
        except pydantic.ValidationError as exc:
            raise ParameterExtractionError(
                "Option does not fit the command parameters",
                details={"option_id": option_id, "error": str(exc)},
            ) from exc

        return await self._complete(
            result.template,
            CommandParameters(primary=primary, optional=result.parameters.optional),
            result.classification,
            result.raw_text,
            parsing,
            inferred=result.inferred,
            started=started,
            resolved=result.resolved | {pending.ambiguity},
        )

    def extract_parameters(
        self,
        template: CommandTemplate,
        entities: tuple[FinancialEntity, ...],
        raw_text: str,
        parsing: ParsingContext | None = None,
    ) -> tuple[ParameterBag, tuple[str, ...]]:
        model = PARAMETER_MODELS[template.kind]
        fields = model.model_fields
        values: dict[str, Any] = {}
        inferred: list[str] = []

        def first(entity_type: EntityType) -> FinancialEntity | None:
            return next((e for e in entities if e.type == entity_type), None)

        amount = first(EntityType.AMOUNT)
        if amount is not None:
            values["amount"] = amount.as_float()

        tokens = [e.normalized_value for e in entities if e.type == EntityType.TOKEN]
        slots = template.token_slots
        if len(tokens) > len(slots):
            raise ParameterExtractionError(
                f"Too many tokens for {template.intent.value}",
                code="TOO_MANY_TOKENS",
                details={"tokens": tokens, "slots": list(slots)},
            )
        if template.kind == "swap" and len(tokens) == 2 and BUY_WITH_RE.search(raw_text):
            tokens.reverse()
        if len(tokens) == 1:
            values["token"] = tokens[0]
        elif len(tokens) == 2:
            values[slots[0]] = tokens[0]
            values[slots[1]] = tokens[1]
            if template.kind == "swap":
                values["token"] = tokens[0]

        protocol = first(EntityType.PROTOCOL)
        if protocol is not None:
            values["protocol"] = protocol.normalized_value
        leverage = first(EntityType.LEVERAGE)
        if leverage is not None and "leverage" in fields:
            values["leverage"] = leverage.as_float()
        slippage = first(EntityType.SLIPPAGE)
        if slippage is not None and "slippage" in fields:
            values["slippage"] = slippage.as_float()
        if "direction" in fields:
            m = DIRECTION_RE.search(raw_text)
            if m:
                values["direction"] = m.group(1).lower()

        percentage = first(EntityType.PERCENTAGE)
        relative = first(EntityType.RELATIVE_AMOUNT)
        if percentage is not None and "percentage" in fields:
            values["percentage"] = percentage.as_float()
        if relative is not None and "relative_amount" in fields:
            values["relative_amount"] = relative.normalized_value

        if parsing is not None:
            self._infer_from_positions(template, values, parsing, inferred)
            if "amount" not in values and ("percentage" in values or "relative_amount" in values):
                base = self._share_base(template, values.get("from_token") or values.get("token"), parsing)
                if base is not None:
                    if "percentage" in values:
                        values["amount"] = base * values["percentage"] / 100
                    else:
                        values["amount"] = base / 2 if values["relative_amount"] == "half" else base

        try:
            primary = model(**{k: v for k, v in values.items() if k in fields})
        except pydantic.ValidationError as exc:
            raise ParameterExtractionError(
                "Could not map entities to parameters",
                details={"intent": template.intent.value, "error": str(exc)},
            ) from exc
        return primary, tuple(inferred)

    def _infer_from_positions(
        self,
        template: CommandTemplate,
        values: dict[str, Any],
        parsing: ParsingContext,
        inferred: list[str],
    ) -> None:
        source = POSITION_SOURCES.get(template.intent)
        if source is None or "token" in values:
            return
        matches = [p for p in parsing.positions if p.type == source]
        if len(matches) != 1:
            return
        values["token"] = matches[0].token.upper()
        inferred.append("token")
        if "protocol" not in values:
            values["protocol"] = matches[0].protocol.lower()
            inferred.append("protocol")

    def _share_base(self, template: CommandTemplate, token: str | None, parsing: ParsingContext) -> float | None:
        if not token:
            return None
        source = POSITION_SOURCES.get(template.intent)
        if source is not None:
            held = [p.value for p in parsing.positions if p.type == source and p.token.upper() == token]
            if held:
                return float(sum(held))
        return parsing.balance_of(token)

    async def _bounded(self, label: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.config.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(
                "enrichment_timeout",
                extra={"event": "enrichment_timeout", "field": label, "timeout_ms": self.config.timeout_ms},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("enrichment_failed", extra={"event": "enrichment_failed", "field": label, "error": str(exc)})
        return None

    def route_for(self, primary: ParameterBag) -> tuple[RouteStep, ...]:
        src, dst = primary.get("from_token"), primary.get("to_token")
        if not src or not dst or src == dst:
            return ()
        protocol = primary.get("protocol") or "dragonswap"
        tier = self.builder.protocols.fee_tier(protocol)
        if src in HUB_TOKENS or dst in HUB_TOKENS:
            return (RouteStep(protocol=protocol, token_in=src, token_out=dst, fee_tier=tier),)
        hub = HUB_TOKENS[0]
        return (
            RouteStep(protocol=protocol, token_in=src, token_out=hub, fee_tier=tier),
            RouteStep(protocol=protocol, token_in=hub, token_out=dst, fee_tier=tier),
        )

    async def derive(
        self,
        template: CommandTemplate,
        primary: ParameterBag,
        parsing: ParsingContext | None = None,
        max_slippage: float = 0.5,
    ) -> tuple[DerivedParameters, float | None]:
        """Provider-backed fields. Anything that fails or times out is left out."""
        if template.kind in ("query", "batch"):
            return DerivedParameters(), None

        intent = template.intent
        amount = primary.get("amount")
        token = primary.get("from_token") or primary.get("token")
        protocol = primary.get("protocol")
        out: dict[str, Any] = {}

        price = await self._bounded("price", self.market.get_price(token)) if token else None
        amount_usd = amount * price if amount is not None and price is not None else None

        route = self.route_for(primary) if template.kind == "swap" else ()
        out["route"] = route

        if template.kind == "swap" and amount is not None and price is not None and primary.get("to_token"):
            to_price = await self._bounded("to_price", self.market.get_price(primary.get("to_token")))
            if to_price:
                slippage = primary.get("slippage") or max_slippage
                out["output_amount"] = amount * price / to_price * (1 - slippage / 100)

        if intent in (DefiIntent.SWAP, DefiIntent.ADD_LIQUIDITY) and token and amount is not None:
            impact = await self._bounded("price_impact", self.market.get_price_impact(token, amount))
            if impact is not None:
                out["price_impact"] = float(impact)

        if intent == DefiIntent.BORROW and amount is not None and price is not None and parsing is not None:
            collateral = sum(p.value for p in parsing.positions if p.type == "lending")
            debt = sum(p.value for p in parsing.positions if p.type == "borrowing")
            if collateral > 0:
                out["health_factor_after"] = collateral * HEALTH_FACTOR_LTV / (debt + amount * price)

        details: dict[str, Any] = {}
        if intent == DefiIntent.BORROW and protocol:
            current = await self._bounded("health_factor", self.market.get_health_factor(protocol))
            if current is not None:
                details["current_health_factor"] = float(current)
        out["protocol_details"] = details

        leverage = primary.get("leverage") or 1.0
        if leverage > 1 and token:
            mark = price
            if mark is None:
                mark = await self._bounded("mark_price", self.market.get_price(token))
            if mark is not None:
                if primary.get("direction") == "short":
                    out["liquidation_price"] = mark * (1 + 1 / leverage)
                else:
                    out["liquidation_price"] = mark * (1 - 1 / leverage)

        fees: list[Fee] = []
        tier = self.builder.protocols.fee_tier(protocol or (route[0].protocol if route else None))
        if tier is not None and amount is not None and token:
            fees.append(Fee(type="protocol", amount=amount * tier / 100, token=token))
        gas = self.builder.gas.estimate(template, primary, route)
        if gas:
            gwei = parsing.gas_price_gwei if parsing and parsing.gas_price_gwei else DEFAULT_GAS_PRICE_GWEI
            fees.append(Fee(type="gas", amount=gas * gwei * GWEI, token="SEI"))
        out["fees"] = tuple(fees)
        if amount is not None:
            out["total_cost"] = amount + sum(f.amount for f in fees if f.type == "protocol")

        if intent in SPENDING_INTENTS and token and amount is not None:
            spender = protocol or (available_protocols(intent) or ("router",))[0]
            allowance = parsing.allowances.get(token) if parsing is not None else None
            if allowance is None:
                allowance = await self._bounded("allowance", self.market.get_allowance(token, spender))
            if allowance is None or allowance < amount:
                out["approvals"] = (RequiredApproval(token=token, spender=spender, amount=amount),)

        return DerivedParameters(**out), amount_usd

    async def _complete(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        classification: IntentClassification,
        raw_text: str,
        parsing: ParsingContext | None,
        *,
        inferred: tuple[str, ...] = (),
        started: float,
        resolved: frozenset[AmbiguityType] = frozenset(),
    ) -> CommandProcessingResult:
        derived, amount_usd = await self.derive(template, params.primary, parsing, params.optional.max_slippage)
        params = params.model_copy(update={"derived": derived})

        report = self.validator.validate(template, params, parsing, amount_usd=amount_usd, inferred=inferred)
        ambiguities = [
            a
            for a in self.disambiguation.detect(template, params, report, classification.entities)
            if not (a in resolved and a in ENTITY_AMBIGUITIES)
        ]
        blocking = self.disambiguation.blocking_ambiguity(ambiguities)

        disambiguation = None
        if blocking is not None and self.config.enable_disambiguation:
            disambiguation = self.disambiguation.build_options(
                blocking, template, params, report, classification.entities, parsing
            )

        command = None
        if report.is_valid and blocking is None:
            command = self.builder.build(
                template,
                params,
                metadata=self._metadata(template, classification, params, started),
            )
        confirmation = None
        if command is not None and command.confirmation_required:
            confirmation = self.disambiguation.confirmation_request(command)

        elapsed = (time.perf_counter() - started) * 1000
        return CommandProcessingResult(
            classification=classification,
            raw_text=raw_text,
            template=template,
            parameters=command.parameters if command is not None else params,
            validation=report,
            command=command,
            disambiguation=disambiguation,
            confirmation=confirmation,
            suggestions=self._suggestions(template, params, command, ambiguities),
            inferred=inferred,
            resolved=resolved,
            processing_time_ms=elapsed,
        )

    def _metadata(
        self,
        template: CommandTemplate,
        classification: IntentClassification,
        params: CommandParameters,
        started: float,
    ) -> CommandMetadata:
        derived = params.derived
        protocols: list[str] = []
        if params.primary.get("protocol"):
            protocols.append(params.primary.get("protocol"))
        for step in derived.route:
            if step.protocol not in protocols:
                protocols.append(step.protocol)

        duration = BASE_DURATION_S + APPROVAL_DURATION_S * len(derived.approvals)
        if template.intent in ARBITRAGE_INTENTS:
            duration += ARBITRAGE_DURATION_S
        if len(derived.route) > 1:
            duration += ROUTE_STEP_DURATION_S * len(derived.route)

        return CommandMetadata(
            confidence=classification.confidence,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            required_approvals=derived.approvals,
            protocols_involved=tuple(protocols),
            estimated_duration_s=duration,
        )

    def _suggestions(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        command: ExecutableCommand | None,
        ambiguities: list[AmbiguityType],
    ) -> tuple[Suggestion, ...]:
        out: list[Suggestion] = []
        impact = params.derived.price_impact
        if template.intent == DefiIntent.SWAP and impact is not None and impact > HIGH_IMPACT_SUGGESTION:
            out.append(
                Suggestion(
                    type="optimization",
                    title="High Price Impact",
                    description=f"Price impact is {impact:.2f}%. Consider splitting the trade into smaller swaps",
                    action="split_trade",
                    expected_benefit="Lower price impact",
                    risk_level="low",
                )
            )
        if command is not None and command.risk_level == "high":
            out.append(
                Suggestion(
                    type="risk_warning",
                    title="High Risk Operation",
                    description="This operation carries high risk. Consider reducing the amount or leverage",
                    action="reduce_risk",
                    risk_level="high",
                )
            )
        if params.primary.get("protocol") == "dragonswap":
            out.append(
                Suggestion(
                    type="alternative",
                    title="Alternative Protocol",
                    description="Symphony may offer better execution for this trade",
                    action="use_symphony",
                    expected_benefit="Potentially better rates",
                    risk_level="low",
                )
            )
        if AmbiguityType.MISSING_PROTOCOL in ambiguities and not self.disambiguation.is_blocking(
            AmbiguityType.MISSING_PROTOCOL
        ):
            names = ", ".join(protocol_display(p) for p in available_protocols(template.intent))
            out.append(
                Suggestion(
                    type="protocol",
                    title="Choose a Protocol",
                    description=f"Try specifying a protocol: {names}",
                )
            )
        return tuple(out)

    def get_supported_intents(self) -> list[DefiIntent]:
        return list(TEMPLATES)

    def get_template(self, intent: DefiIntent) -> CommandTemplate | None:
        return get_template(intent)

    def validate_command_syntax(self, command: ExecutableCommand) -> bool:
        template = get_template(command.intent)
        if template is None:
            return False
        if command.action == "batch":
            return command.parameters.primary.kind == "batch"
        if command.parameters.primary.kind != template.kind:
            return False
        return all(command.parameters.primary.get(name) is not None for name in template.required)
