from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from defi_nlp.adapters.symbols import KNOWN_PROTOCOLS, KNOWN_TOKENS, LIQUID_TOKENS, protocol_display
from defi_nlp.core.fmt import fmt_amount, fmt_usd
from defi_nlp.core.types import DefiIntent, ParsingContext, ValidationError
from defi_nlp.services.parameters import CommandParameters
from defi_nlp.services.templates import FIELD_RULES, CommandTemplate, ParameterRule, available_protocols, label_for

logger = logging.getLogger(__name__)

HIGH_LEVERAGE = 5.0
HIGH_SLIPPAGE = 5.0
HIGH_BALANCE_SHARE = 0.9
MAX_LTV = 0.75
HIGH_UTILIZATION = 0.8
HIGH_PRICE_IMPACT = 5.0

SPENDING_INTENTS = frozenset({DefiIntent.LEND, DefiIntent.REPAY, DefiIntent.SWAP, DefiIntent.ADD_LIQUIDITY})


@dataclass(frozen=True)
class ValidationReport:
    errors: tuple[ValidationError, ...] = ()
    missing_parameters: tuple[str, ...] = ()

    @property
    def blocking(self) -> tuple[ValidationError, ...]:
        return tuple(e for e in self.errors if e.severity == "error")

    @property
    def warnings(self) -> tuple[ValidationError, ...]:
        return tuple(e for e in self.errors if e.severity == "warning")

    @property
    def is_valid(self) -> bool:
        return not self.blocking

    def codes(self) -> list[str]:
        return [e.code for e in self.errors]


class ParameterValidator:
    """Field rules plus business rules. Findings are collected, never raised."""

    def validate(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        parsing: ParsingContext | None = None,
        *,
        amount_usd: float | None = None,
        inferred: tuple[str, ...] = (),
    ) -> ValidationReport:
        primary = params.primary
        errors: list[ValidationError] = []
        missing: list[str] = []

        for name in template.required:
            if primary.get(name) is None:
                label = label_for(name)
                missing.append(label)
                errors.append(
                    ValidationError(
                        field=name,
                        code="REQUIRED_PARAMETER_MISSING",
                        message=f"Missing required parameter: {label}",
                        suggestion=f"Please specify the {label.replace('_', ' ')}",
                    )
                )

        for name, value in primary.filled().items():
            rule = FIELD_RULES.get(name)
            if rule is not None:
                errors.extend(self._check_field(template.intent, name, value, rule))

        errors.extend(self._business_rules(template, params, parsing, amount_usd))

        for name in inferred:
            label = label_for(name)
            errors.append(
                ValidationError(
                    field=name,
                    code="PARAMETER_INFERRED",
                    message=f"{label} was inferred from your balances and positions",
                    severity="info",
                )
            )

        report = ValidationReport(errors=tuple(errors), missing_parameters=tuple(missing))
        if report.blocking:
            logger.info(
                "parameters_invalid",
                extra={"event": "parameters_invalid", "intent": template.intent.value, "codes": report.codes()},
            )
        return report

    def _check_field(self, intent: DefiIntent, name: str, value: object, rule: ParameterRule) -> list[ValidationError]:
        out: list[ValidationError] = []
        if rule.type == "token":
            if value not in KNOWN_TOKENS:
                out.append(
                    ValidationError(
                        field=name,
                        code="UNSUPPORTED_TOKEN",
                        message=f"Unsupported token: {value}",
                        suggestion="Supported tokens: " + ", ".join(KNOWN_TOKENS),
                    )
                )
            return out

        if rule.type == "protocol":
            supported = available_protocols(intent)
            if value not in KNOWN_PROTOCOLS:
                out.append(
                    ValidationError(
                        field=name,
                        code="UNSUPPORTED_PROTOCOL",
                        message=f"Unsupported protocol: {value}",
                        suggestion="Supported protocols: " + ", ".join(protocol_display(p) for p in KNOWN_PROTOCOLS),
                    )
                )
            elif supported and value not in supported:
                out.append(
                    ValidationError(
                        field=name,
                        code="PROTOCOL_MISMATCH",
                        message=f"{protocol_display(str(value))} does not support {intent.value}",
                        severity="warning",
                        suggestion="Try " + ", ".join(protocol_display(p) for p in supported),
                    )
                )
            return out

        v = float(value)  # type: ignore[arg-type]
        if name == "amount":
            if not math.isfinite(v) or v <= 0:
                out.append(ValidationError(field=name, code="INVALID_AMOUNT", message="Amount must be greater than 0"))
            elif rule.max_value is not None and v >= rule.max_value:
                out.append(ValidationError(field=name, code="AMOUNT_TOO_LARGE", message="Amount is too large"))
            return out

        low_ok = v > rule.min_value if rule.exclusive_min else v >= rule.min_value  # type: ignore[operator]
        in_range = math.isfinite(v) and low_ok and v <= rule.max_value  # type: ignore[operator]
        if name == "leverage":
            if not in_range:
                out.append(ValidationError(field=name, code="INVALID_LEVERAGE", message="Leverage must be between 1x and 100x"))
            elif v > HIGH_LEVERAGE:
                out.append(
                    ValidationError(
                        field=name,
                        code="HIGH_LEVERAGE",
                        message=f"High leverage ({fmt_amount(v)}x) increases liquidation risk",
                        severity="warning",
                        suggestion="Consider using 5x leverage or lower",
                    )
                )
        elif name == "slippage":
            if not in_range:
                out.append(ValidationError(field=name, code="INVALID_SLIPPAGE", message="Slippage must be between 0% and 50%"))
            elif v > HIGH_SLIPPAGE:
                out.append(
                    ValidationError(
                        field=name,
                        code="HIGH_SLIPPAGE",
                        message=f"High slippage tolerance ({fmt_amount(v)}%)",
                        severity="warning",
                        suggestion="Consider a slippage of 1% or lower",
                    )
                )
        elif name == "percentage" and not in_range:
            out.append(ValidationError(field=name, code="INVALID_PERCENTAGE", message="Percentage must be between 0 and 100"))
        return out

    def _business_rules(
        self,
        template: CommandTemplate,
        params: CommandParameters,
        parsing: ParsingContext | None,
        amount_usd: float | None,
    ) -> list[ValidationError]:
        out: list[ValidationError] = []
        primary = params.primary
        intent = template.intent
        amount = primary.get("amount")

        if intent == DefiIntent.SWAP:
            src, dst = primary.get("from_token"), primary.get("to_token")
            if src and dst and src == dst:
                out.append(
                    ValidationError(
                        field="to_token",
                        code="SAME_TOKEN_SWAP",
                        message="Cannot swap a token for itself",
                        suggestion="Choose a different output token",
                    )
                )

        if parsing is not None and amount is not None and intent in SPENDING_INTENTS:
            token = primary.get("from_token") or primary.get("token")
            balance = parsing.balance_of(token)
            if balance is not None:
                if amount > balance:
                    out.append(
                        ValidationError(
                            field="amount",
                            code="INSUFFICIENT_BALANCE",
                            message=f"Insufficient balance: have {fmt_amount(balance)} {token}, need {fmt_amount(amount)} {token}",
                            suggestion=f"Try an amount up to {fmt_amount(balance)} {token}",
                        )
                    )
                elif balance > 0 and amount > balance * HIGH_BALANCE_SHARE:
                    out.append(
                        ValidationError(
                            field="amount",
                            code="HIGH_PERCENTAGE_OF_BALANCE",
                            message=f"This uses more than 90% of your {token} balance",
                            severity="warning",
                        )
                    )

        if intent == DefiIntent.BORROW and parsing is not None and parsing.positions and amount is not None:
            collateral = sum(p.value for p in parsing.positions if p.type == "lending")
            debt = sum(p.value for p in parsing.positions if p.type == "borrowing")
            capacity = max(collateral * MAX_LTV - debt, 0.0)
            value = amount_usd if amount_usd is not None else amount
            if value > capacity:
                out.append(
                    ValidationError(
                        field="amount",
                        code="INSUFFICIENT_COLLATERAL",
                        message=f"Borrow exceeds available capacity of {fmt_usd(capacity)}",
                        suggestion="Supply more collateral or borrow less",
                    )
                )
            elif value > capacity * HIGH_UTILIZATION:
                out.append(
                    ValidationError(
                        field="amount",
                        code="HIGH_UTILIZATION",
                        message="Borrow uses more than 80% of your borrowing capacity",
                        severity="warning",
                    )
                )

        impact = params.derived.price_impact
        if impact is not None and impact > HIGH_PRICE_IMPACT:
            out.append(
                ValidationError(
                    field="amount",
                    code="HIGH_PRICE_IMPACT",
                    message=f"Price impact is high ({impact:.2f}%)",
                    severity="warning",
                    suggestion="Consider splitting the trade into smaller amounts",
                )
            )

        if intent == DefiIntent.ADD_LIQUIDITY:
            for name in ("token", "pair_token"):
                token = primary.get(name)
                if token and token in KNOWN_TOKENS and token not in LIQUID_TOKENS:
                    out.append(
                        ValidationError(
                            field=name,
                            code="LOW_LIQUIDITY_TOKEN",
                            message=f"{token} pools have low liquidity",
                            severity="warning",
                        )
                    )
        return out
