from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Sequence

from defi_nlp.core.errors import CommandBuildingError
from defi_nlp.core.fmt import fmt_amount
from defi_nlp.core.types import INFORMATIONAL_INTENTS, DefiIntent, ParsingContext
from defi_nlp.services.parameters import (
    BatchParameters,
    CommandMetadata,
    CommandParameters,
    DerivedParameters,
    ExecutableCommand,
    ParameterBag,
    RouteStep,
)
from defi_nlp.services.templates import CommandTemplate

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high"]
RISK_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2}

LARGE_AMOUNT = 10_000
VERY_LARGE_AMOUNT = 100_000
CONFIRM_LEVERAGE = 2.0
HIGH_RISK_SCORE = 6
MEDIUM_RISK_SCORE = 3
HIGH_IMPACT = 5.0

CONFIRM_INTENTS = frozenset(
    {
        DefiIntent.BORROW,
        DefiIntent.OPEN_POSITION,
        DefiIntent.CLOSE_POSITION,
        DefiIntent.ARBITRAGE,
        DefiIntent.CROSS_PROTOCOL_ARBITRAGE,
    }
)

MULTI_HOP_GAS = 1.5
LEVERAGE_GAS = 1.3
DEFAULT_GAS = 100_000
DEFAULT_GAS_PRICE_GWEI = 20.0
CONFIRMED_GAS_BOOST = 1.2
GAS_LIMIT_HEADROOM = 1.1
SEI_PER_GAS_UNIT_GWEI = 1e-9

PROTOCOL_GAS: dict[str, float] = {"dragonswap": 1.0, "symphony": 1.2, "citrex": 1.5, "silo": 0.9}
PROTOCOL_PREFIX: dict[str, str] = {
    "dragonswap": "ds",
    "symphony": "sym",
    "citrex": "ctx",
    "silo": "silo",
    "takara": "tkr",
    "yei-finance": "yei",
}
PROTOCOL_DETAILS: dict[str, dict[str, Any]] = {
    "dragonswap": {"dex_version": "v2", "fee_tier": 0.3},
    "symphony": {"dex_version": "v3", "fee_tier": 0.05},
    "citrex": {"perp_version": "v1", "margin_requirement": 0.1},
    "silo": {"isolated_markets": True, "risk_tier": "conservative"},
}
# a protocol may raise the risk level, never lower it
PROTOCOL_RISK_FLOOR: dict[str, RiskLevel] = {"citrex": "high"}


def max_level(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if RISK_ORDER[a] >= RISK_ORDER[b] else b


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    score: int
    factors: tuple[str, ...] = ()


class RiskAssessor:
    def assess(self, template: CommandTemplate, primary: ParameterBag, derived: DerivedParameters) -> RiskAssessment:
        score = template.risk_weight
        factors: list[str] = []

        amount = primary.get("amount") or 0.0
        if amount > LARGE_AMOUNT:
            score += 1
            factors.append("large_amount")
        if amount > VERY_LARGE_AMOUNT:
            score += 1
            factors.append("very_large_amount")

        leverage = primary.get("leverage") or 1.0
        if leverage > 1:
            score += 1
        if leverage > 2:
            score += 2
        if leverage > 5:
            score += 3
        if leverage > 1:
            factors.append("leverage")

        if derived.price_impact is not None and derived.price_impact > HIGH_IMPACT:
            score += 2
            factors.append("price_impact")

        if score >= HIGH_RISK_SCORE:
            level: RiskLevel = "high"
        elif score >= MEDIUM_RISK_SCORE:
            level = "medium"
        else:
            level = "low"

        floor = PROTOCOL_RISK_FLOOR.get(primary.get("protocol") or "")
        if floor is not None:
            level = max_level(level, floor)
            factors.append(f"protocol_{primary.get('protocol')}")
        return RiskAssessment(level=level, score=score, factors=tuple(factors))


class GasEstimator:
    def estimate(
        self,
        template: CommandTemplate,
        primary: ParameterBag,
        route: Sequence[RouteStep] = (),
    ) -> int | None:
        if template.intent in INFORMATIONAL_INTENTS:
            return None
        gas = float(template.base_gas or DEFAULT_GAS)
        if len(route) > 1:
            gas *= MULTI_HOP_GAS
        if (primary.get("leverage") or 1.0) > 1:
            gas *= LEVERAGE_GAS
        gas *= PROTOCOL_GAS.get(primary.get("protocol") or "", 1.0)
        return int(gas)


class ProtocolMapper:
    def prefix(self, protocol: str | None) -> str | None:
        return PROTOCOL_PREFIX.get(protocol or "")

    def details(self, protocol: str | None) -> dict[str, Any]:
        return dict(PROTOCOL_DETAILS.get(protocol or "", {}))

    def fee_tier(self, protocol: str | None) -> float | None:
        return PROTOCOL_DETAILS.get(protocol or "", {}).get("fee_tier")


def confirmation_reasons(template: CommandTemplate, primary: ParameterBag, risk: RiskAssessment) -> tuple[str, ...]:
    reasons: list[str] = []
    if risk.level == "high":
        reasons.append("high risk operation")
    if (primary.get("amount") or 0.0) > LARGE_AMOUNT:
        reasons.append(f"high value transaction above {fmt_amount(LARGE_AMOUNT)}")
    if (primary.get("leverage") or 1.0) > CONFIRM_LEVERAGE:
        reasons.append("leverage above 2x")
    if template.intent in CONFIRM_INTENTS:
        reasons.append(f"{template.intent.value} requires confirmation")
    return tuple(reasons)


class CommandBuilder:
    def __init__(
        self,
        risk: RiskAssessor | None = None,
        gas: GasEstimator | None = None,
        protocols: ProtocolMapper | None = None,
    ) -> None:
        self.risk = risk or RiskAssessor()
        self.gas = gas or GasEstimator()
        self.protocols = protocols or ProtocolMapper()

    def action_name(self, template: CommandTemplate, params: CommandParameters) -> str:
        primary = params.primary
        prefix = self.protocols.prefix(primary.get("protocol"))
        if prefix:
            return f"{prefix}_{template.action}"
        modifiers = ""
        if (primary.get("leverage") or 1.0) > 1:
            modifiers += "leveraged_"
        if params.optional.max_slippage < 0.1:
            modifiers += "precise_"
        if len(params.derived.route) > 1:
            modifiers += "multi_hop_"
        return modifiers + template.action

    def enrich(self, params: CommandParameters) -> CommandParameters:
        details = self.protocols.details(params.primary.get("protocol"))
        if not details:
            return params
        merged = {**params.derived.protocol_details, **details}
        return params.model_copy(update={"derived": params.derived.model_copy(update={"protocol_details": merged})})

    def build(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        *,
        metadata: CommandMetadata | None = None,
        validation_status: Literal["valid", "invalid", "pending"] = "valid",
    ) -> ExecutableCommand:
        if params.primary.kind != template.kind:
            raise CommandBuildingError(
                "Parameter kind does not match template",
                details={"intent": template.intent.value, "kind": params.primary.kind, "expected": template.kind},
            )
        params = self.enrich(params)
        risk = self.risk.assess(template, params.primary, params.derived)
        reasons = confirmation_reasons(template, params.primary, risk)
        command = ExecutableCommand(
            intent=template.intent,
            action=self.action_name(template, params),
            parameters=params,
            risk_level=risk.level,
            risk_score=risk.score,
            confirmation_required=bool(reasons),
            confirmation_reasons=reasons,
            estimated_gas=self.gas.estimate(template, params.primary, params.derived.route),
            validation_status=validation_status,
            metadata=metadata or CommandMetadata(),
        )
        logger.info(
            "command_built",
            extra={
                "event": "command_built",
                "intent": template.intent.value,
                "action": command.action,
                "risk_level": risk.level,
                "risk_score": risk.score,
                "confirmation_required": command.confirmation_required,
            },
        )
        return command

    def build_batch(self, commands: Sequence[ExecutableCommand]) -> ExecutableCommand:
        if not commands:
            raise CommandBuildingError("Cannot build an empty batch", code="EMPTY_BATCH")

        level: RiskLevel = "low"
        reasons: list[str] = []
        approvals = []
        protocols: list[str] = []
        for cmd in commands:
            level = max_level(level, cmd.risk_level)
            reasons.extend(r for r in cmd.confirmation_reasons if r not in reasons)
            approvals.extend(cmd.metadata.required_approvals)
            protocols.extend(p for p in cmd.metadata.protocols_involved if p not in protocols)
        gases = [c.estimated_gas for c in commands if c.estimated_gas is not None]

        return ExecutableCommand(
            intent=commands[0].intent,
            action="batch",
            parameters=CommandParameters(primary=BatchParameters(command_ids=tuple(c.id for c in commands))),
            risk_level=level,
            risk_score=max(c.risk_score for c in commands),
            confirmation_required=any(c.confirmation_required for c in commands),
            confirmation_reasons=tuple(reasons),
            estimated_gas=sum(gases) if gases else None,
            validation_status="valid" if all(c.validation_status == "valid" for c in commands) else "invalid",
            metadata=CommandMetadata(
                confidence=min(c.metadata.confidence for c in commands),
                processing_time_ms=sum(c.metadata.processing_time_ms for c in commands),
                required_approvals=tuple(approvals),
                protocols_involved=tuple(protocols),
                estimated_duration_s=sum(c.metadata.estimated_duration_s for c in commands),
            ),
        )

    def optimize_command(self, command: ExecutableCommand, parsing: ParsingContext | None = None) -> ExecutableCommand:
        """Returns a tuned copy; the input command is left untouched."""
        params = command.parameters
        primary = params.primary
        optional_updates: dict[str, Any] = {}

        if primary.kind == "swap":
            amount = primary.get("amount") or 0.0
            base = params.optional.max_slippage
            if amount > VERY_LARGE_AMOUNT:
                optional_updates["max_slippage"] = base * 2
            elif amount > LARGE_AMOUNT:
                optional_updates["max_slippage"] = base * 1.5

        gas_price = (parsing.gas_price_gwei if parsing and parsing.gas_price_gwei else DEFAULT_GAS_PRICE_GWEI)
        if command.confirmation_required:
            gas_price *= CONFIRMED_GAS_BOOST
        optional_updates["gas_price"] = gas_price
        if command.estimated_gas:
            optional_updates["gas_limit"] = int(command.estimated_gas * GAS_LIMIT_HEADROOM)

        derived = params.derived
        if primary.kind == "swap" and not derived.route and primary.get("from_token") and primary.get("to_token"):
            protocol = primary.get("protocol") or "dragonswap"
            step = RouteStep(
                protocol=protocol,
                token_in=primary.get("from_token"),
                token_out=primary.get("to_token"),
                fee_tier=self.protocols.fee_tier(protocol),
            )
            derived = derived.model_copy(update={"route": (step,)})

        new_params = params.model_copy(
            update={"optional": params.optional.model_copy(update=optional_updates), "derived": derived}
        )
        return command.model_copy(update={"parameters": new_params})

    def check_execution_readiness(
        self,
        command: ExecutableCommand,
        parsing: ParsingContext | None = None,
    ) -> tuple[bool, list[str]]:
        issues: list[str] = []
        primary = command.parameters.primary
        amount = primary.get("amount")
        token = primary.get("from_token") or primary.get("token")

        if amount and token and parsing is not None and parsing.balances:
            balance = parsing.balance_of(token)
            if balance is None or balance < amount:
                issues.append(f"Insufficient {token} balance")

        if command.metadata.required_approvals:
            issues.append("Token approvals required before execution")

        if parsing is not None and parsing.balance_of("SEI") is not None:
            gas_price = parsing.gas_price_gwei or DEFAULT_GAS_PRICE_GWEI
            gas_cost = (command.estimated_gas or 0) * SEI_PER_GAS_UNIT_GWEI * gas_price
            if parsing.balance_of("SEI") < gas_cost:
                issues.append("Insufficient SEI for gas fees")

        if command.risk_level == "high":
            issues.append("High risk operation - review carefully before execution")

        return (not issues, issues)
