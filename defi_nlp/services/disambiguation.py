from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from defi_nlp.adapters.symbols import protocol_display
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.errors import ProcessingError
from defi_nlp.core.fmt import fmt_amount
from defi_nlp.core.types import DefiIntent, EntityType, FinancialEntity, ParsingContext
from defi_nlp.services.parameters import CommandParameters, ExecutableCommand
from defi_nlp.services.templates import CommandTemplate, available_protocols, label_for
from defi_nlp.services.validator import ValidationReport

logger = logging.getLogger(__name__)

UNCLEAR_INTENT_TIMEOUT_MS = 45_000
CONFIRMATION_TIMEOUT_MS = 60_000
FALLBACK_TOKENS = ("USDC", "USDT", "SEI", "ETH")
FALLBACK_AMOUNTS = (100, 500, 1000)
MULTI_PROTOCOL_INTENTS = frozenset({DefiIntent.CROSS_PROTOCOL_ARBITRAGE, DefiIntent.COMPARE_PROTOCOLS})


class AmbiguityType(str, Enum):
    UNCLEAR_INTENT = "unclear_intent"
    TOKEN_DIRECTION = "token_direction"
    MISSING_PARAMETER = "missing_parameter"
    MISSING_PROTOCOL = "missing_protocol"
    PARAMETER_CONFLICT = "parameter_conflict"
    MULTIPLE_AMOUNTS = "multiple_amounts"
    PROTOCOL_CHOICE = "protocol_choice"
    RISK_CONFIRMATION = "risk_confirmation"


PRIORITY = {
    AmbiguityType.UNCLEAR_INTENT: 11,
    AmbiguityType.TOKEN_DIRECTION: 10,
    AmbiguityType.MISSING_PARAMETER: 9,
    AmbiguityType.MISSING_PROTOCOL: 8,
    AmbiguityType.PARAMETER_CONFLICT: 7,
    AmbiguityType.MULTIPLE_AMOUNTS: 6,
    AmbiguityType.PROTOCOL_CHOICE: 5,
    AmbiguityType.RISK_CONFIRMATION: 4,
}

ALWAYS_BLOCKING = frozenset(
    {
        AmbiguityType.UNCLEAR_INTENT,
        AmbiguityType.TOKEN_DIRECTION,
        AmbiguityType.MISSING_PARAMETER,
        AmbiguityType.PARAMETER_CONFLICT,
        AmbiguityType.MULTIPLE_AMOUNTS,
    }
)
STRICT_BLOCKING = frozenset({AmbiguityType.MISSING_PROTOCOL, AmbiguityType.PROTOCOL_CHOICE})

INTENT_CHOICES = {
    DefiIntent.LEND: ("Lend/Supply tokens", "Earn yield by lending your tokens"),
    DefiIntent.BORROW: ("Borrow tokens", "Borrow tokens against your collateral"),
    DefiIntent.SWAP: ("Swap tokens", "Exchange one token for another"),
    DefiIntent.PORTFOLIO_STATUS: ("Check portfolio", "View your current positions and balances"),
    DefiIntent.SHOW_RATES: ("Check rates", "View current lending and borrowing rates"),
}

PROTOCOL_DESCRIPTIONS = {
    ("silo", DefiIntent.LEND): "Conservative lending with isolated markets",
    ("silo", DefiIntent.BORROW): "Secure borrowing with risk isolation",
    ("takara", DefiIntent.LEND): "Competitive rates with auto-compounding",
    ("takara", DefiIntent.BORROW): "Flexible borrowing options",
    ("dragonswap", DefiIntent.SWAP): "Popular DEX with good liquidity",
    ("dragonswap", DefiIntent.ADD_LIQUIDITY): "Earn fees providing liquidity",
    ("symphony", DefiIntent.SWAP): "Advanced DEX with concentrated liquidity",
    ("symphony", DefiIntent.ADD_LIQUIDITY): "Higher capital efficiency",
    ("citrex", DefiIntent.OPEN_POSITION): "Perpetual trading with leverage",
}


@dataclass(frozen=True)
class DisambiguationOption:
    id: str
    label: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.8

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "parameters": dict(self.parameters),
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True)
class DisambiguationOptions:
    ambiguity: AmbiguityType
    question: str
    options: tuple[DisambiguationOption, ...]
    missing_parameters: tuple[str, ...] = ()
    default_option: str | None = None
    timeout_ms: int = 30_000
    blocking: bool = True

    def option(self, option_id: str) -> DisambiguationOption | None:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ambiguity": self.ambiguity.value,
            "question": self.question,
            "options": [o.to_dict() for o in self.options],
            "missing_parameters": list(self.missing_parameters),
            "default_option": self.default_option,
            "timeout_ms": self.timeout_ms,
            "blocking": self.blocking,
        }


def _protocol_description(protocol: str, intent: DefiIntent) -> str:
    return PROTOCOL_DESCRIPTIONS.get((protocol, intent), f"Use {protocol_display(protocol)} protocol")


class DisambiguationEngine:
    def __init__(self, config: NLPConfig | None = None) -> None:
        self.config = config or NLPConfig()

    def is_blocking(self, ambiguity: AmbiguityType) -> bool:
        if ambiguity in ALWAYS_BLOCKING:
            return True
        return ambiguity in STRICT_BLOCKING and self.config.mode == "strict"

    def detect(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        report: ValidationReport,
        entities: Sequence[FinancialEntity] = (),
    ) -> list[AmbiguityType]:
        """Ambiguities present in this turn, highest priority first."""
        primary = params.primary
        found: list[AmbiguityType] = []

        if template.kind == "swap" and primary.get("token") and not primary.get("from_token") and not primary.get("to_token"):
            found.append(AmbiguityType.TOKEN_DIRECTION)
        if report.missing_parameters:
            found.append(AmbiguityType.MISSING_PARAMETER)
        if available_protocols(template.intent) and not primary.get("protocol"):
            found.append(AmbiguityType.MISSING_PROTOCOL)

        amounts = [e for e in entities if e.type == EntityType.AMOUNT]
        shares = [e for e in entities if e.type in (EntityType.PERCENTAGE, EntityType.RELATIVE_AMOUNT)]
        if amounts and shares and "amount" in template.required + template.optional:
            found.append(AmbiguityType.PARAMETER_CONFLICT)
        if len({e.normalized_value for e in amounts}) > 1:
            found.append(AmbiguityType.MULTIPLE_AMOUNTS)

        protocols = {e.normalized_value for e in entities if e.type == EntityType.PROTOCOL}
        if len(protocols) > 1 and template.intent not in MULTI_PROTOCOL_INTENTS:
            found.append(AmbiguityType.PROTOCOL_CHOICE)

        return sorted(found, key=lambda a: PRIORITY[a], reverse=True)

    def blocking_ambiguity(self, ambiguities: Sequence[AmbiguityType]) -> AmbiguityType | None:
        for ambiguity in ambiguities:
            if self.is_blocking(ambiguity):
                return ambiguity
        return None

    def build_options(
        self,
        ambiguity: AmbiguityType,
        template: CommandTemplate,
        params: CommandParameters,
        report: ValidationReport,
        entities: Sequence[FinancialEntity] = (),
        parsing: ParsingContext | None = None,
    ) -> DisambiguationOptions:
        primary = params.primary
        timeout = self.config.disambiguation_timeout_ms
        blocking = self.is_blocking(ambiguity)
        missing = report.missing_parameters
        options: list[DisambiguationOption]

        if ambiguity == AmbiguityType.TOKEN_DIRECTION:
            token = primary.get("token")
            amount = primary.get("amount")
            sell = f"Sell {fmt_amount(amount)} {token} for another token" if amount else f"Sell {token} for another token"
            options = [
                DisambiguationOption("from_token", f"Swap FROM {token}", sell, {"from_token": token, "token": None}),
                DisambiguationOption("to_token", f"Swap TO {token}", f"Buy {token} with another token", {"to_token": token, "token": None}),
            ]
            question = f"Do you want to swap FROM {token} or TO {token}?"
        elif ambiguity == AmbiguityType.MISSING_PARAMETER:
            name = next(n for n in template.required if label_for(n) == missing[0])
            options = self._missing_options(name, primary.get("amount"), primary.get("token"), parsing)
            question = f"Which {missing[0].replace('_', ' ')} would you like to use?"
            if name == "amount":
                question = "How much would you like to use?"
        elif ambiguity in (AmbiguityType.MISSING_PROTOCOL, AmbiguityType.PROTOCOL_CHOICE):
            if ambiguity == AmbiguityType.MISSING_PROTOCOL:
                protocols = list(available_protocols(template.intent))
                prefix, confidence = "protocol", 0.8
                question = "Which protocol would you like to use?"
            else:
                protocols = list(dict.fromkeys(e.normalized_value for e in entities if e.type == EntityType.PROTOCOL))
                prefix, confidence = "choice", 0.85
                question = "Which protocol offers the best value for your needs?"
            options = [
                DisambiguationOption(
                    f"{prefix}_{p}",
                    protocol_display(p),
                    _protocol_description(p, template.intent),
                    {"protocol": p},
                    confidence,
                )
                for p in protocols
            ]
        elif ambiguity == AmbiguityType.PARAMETER_CONFLICT:
            options = self._conflict_options(primary, entities, parsing)
            question = "Did you mean the exact amount or a share of your balance?"
        elif ambiguity == AmbiguityType.MULTIPLE_AMOUNTS:
            amounts = [e for e in entities if e.type == EntityType.AMOUNT]
            options = [
                DisambiguationOption(
                    f"amount_{i}",
                    e.raw_value,
                    f"Use {fmt_amount(e.as_float())} as the amount",
                    {"amount": e.as_float()},
                    e.confidence,
                )
                for i, e in enumerate(amounts)
            ]
            question = "Which amount do you want to use?"
        else:
            raise ProcessingError("Unsupported ambiguity", details={"ambiguity": ambiguity.value})

        return DisambiguationOptions(
            ambiguity=ambiguity,
            question=question,
            options=tuple(options),
            missing_parameters=missing,
            default_option=options[0].id if options else None,
            timeout_ms=timeout,
            blocking=blocking,
        )

    def _missing_options(
        self,
        name: str,
        amount: float | None,
        token: str | None,
        parsing: ParsingContext | None,
    ) -> list[DisambiguationOption]:
        balances = {k.upper(): v for k, v in (parsing.balances if parsing else {}).items() if v > 0}
        if name == "amount":
            balance = balances.get(token or "")
            if not balance:
                return [
                    DisambiguationOption(
                        f"amount_fixed_{value}",
                        f"{fmt_amount(value)} {token or ''}".strip(),
                        f"Use {fmt_amount(value)} {token or ''}".strip(),
                        {"amount": float(value)},
                        0.5,
                    )
                    for value in FALLBACK_AMOUNTS
                ]
            return [
                DisambiguationOption(
                    f"amount_{pct}",
                    f"{pct}% ({fmt_amount(balance * pct / 100)} {token})",
                    f"Use {pct}% of your {token} balance",
                    {"amount": balance * pct / 100, "percentage": float(pct)},
                    0.7,
                )
                for pct in (25, 50, 100)
            ]

        if balances:
            # tokens that can cover the amount come first
            ranked = sorted(balances.items(), key=lambda kv: (amount is not None and kv[1] >= amount, kv[1]), reverse=True)
            return [
                DisambiguationOption(
                    f"{name}_{sym.lower()}",
                    sym,
                    f"Use {sym} (balance {fmt_amount(bal)})",
                    {name: sym},
                    0.9 if i == 0 else 0.7,
                )
                for i, (sym, bal) in enumerate(ranked[:5])
            ]
        return [
            DisambiguationOption(f"{name}_{sym.lower()}", sym, f"Use {sym}", {name: sym}, 0.5)
            for sym in FALLBACK_TOKENS
        ]

    def _conflict_options(
        self,
        primary: Any,
        entities: Sequence[FinancialEntity],
        parsing: ParsingContext | None,
    ) -> list[DisambiguationOption]:
        amount_entity = next(e for e in entities if e.type == EntityType.AMOUNT)
        token = primary.get("token") or primary.get("from_token")
        options = [
            DisambiguationOption(
                "use_amount",
                f"{fmt_amount(amount_entity.as_float())} {token or ''}".strip(),
                "Use the exact amount",
                {"amount": amount_entity.as_float(), "percentage": None, "relative_amount": None},
                0.8,
            )
        ]
        balance = parsing.balance_of(token) if parsing else None
        share = next(e for e in entities if e.type in (EntityType.PERCENTAGE, EntityType.RELATIVE_AMOUNT))
        if balance is not None:
            if share.type == EntityType.PERCENTAGE:
                pct = share.as_float()
            else:
                pct = 50.0 if share.normalized_value == "half" else 100.0
            options.append(
                DisambiguationOption(
                    "use_share",
                    f"{fmt_amount(pct)}% of balance",
                    f"Use {fmt_amount(balance * pct / 100)} {token}",
                    {"amount": balance * pct / 100, "percentage": pct, "relative_amount": None},
                    0.7,
                )
            )
        return options

    def clarify_intent(self, alternatives: Sequence[tuple[DefiIntent, float]]) -> DisambiguationOptions:
        options: list[DisambiguationOption] = []
        for intent, score in alternatives:
            label, description = INTENT_CHOICES.get(
                intent, (intent.value.replace("_", " ").capitalize(), f"Run {intent.value.replace('_', ' ')}")
            )
            options.append(
                DisambiguationOption(f"intent_{intent.value}", label, description, {"intent": intent.value}, min(score, 1.0))
            )
        return DisambiguationOptions(
            ambiguity=AmbiguityType.UNCLEAR_INTENT,
            question="What would you like to do?",
            options=tuple(options),
            default_option=options[0].id if options else None,
            timeout_ms=UNCLEAR_INTENT_TIMEOUT_MS,
        )

    def confirmation_request(self, command: ExecutableCommand) -> DisambiguationOptions:
        reasons = ", ".join(command.confirmation_reasons) or "operation requires confirmation"
        return DisambiguationOptions(
            ambiguity=AmbiguityType.RISK_CONFIRMATION,
            question=f"Please confirm ({reasons}). Do you want to proceed?",
            options=(
                DisambiguationOption("confirm", "Yes, proceed", "I understand the risks and want to proceed", {}, 0.9),
                DisambiguationOption("cancel", "No, cancel", "Cancel this operation for safety", {}, 0.9),
            ),
            default_option="cancel",
            timeout_ms=CONFIRMATION_TIMEOUT_MS,
            blocking=False,
        )

    def resolve(self, disambiguation: DisambiguationOptions, option_id: str) -> DisambiguationOption:
        option = disambiguation.option(option_id)
        if option is None:
            raise ProcessingError(
                f"Unknown option: {option_id}",
                code="INVALID_OPTION",
                details={"option_id": option_id, "valid": [o.id for o in disambiguation.options]},
            )
        logger.info(
            "disambiguation_resolved",
            extra={"event": "disambiguation_resolved", "ambiguity": disambiguation.ambiguity.value, "option": option_id},
        )
        return option
