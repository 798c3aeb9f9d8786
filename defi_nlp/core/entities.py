from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable

from defi_nlp.adapters.symbols import KNOWN_PROTOCOLS, KNOWN_TOKENS, PROTOCOL_DISPLAY, normalize_protocol, normalize_token
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.errors import EntityExtractionError
from defi_nlp.core.fmt import fmt_number
from defi_nlp.core.types import EntityType, FinancialEntity

logger = logging.getLogger(__name__)

MAX_AMOUNT = 1e15
MAX_SLIPPAGE = 50.0
MIN_LEVERAGE = 1.0
MAX_LEVERAGE = 100.0

COMMA_RE = re.compile(r"(?<=\d),(?=\d{3}(?!\d))")
MAGNITUDE_RE = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)([kmb])(?!\w)", re.IGNORECASE)
CURRENCY_RE = re.compile(r"\$\s?(\d+(?:\.\d+)?)")

_MAGNITUDES = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}
_TIME_UNITS = r"(?:hours?|days?|weeks?|months?|years?)"

AMOUNT_RE = re.compile(
    rf"(?<![\w.])\d+(?:\.\d+)?(?![\w%]|\.\d|\s*(?:%|(?:percent|pct)\b)|\s?x\b|\s+{_TIME_UNITS}\b)",
    re.IGNORECASE,
)
KNOWN_TOKEN_RE = re.compile(
    r"\b(" + "|".join(sorted(KNOWN_TOKENS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
TOKEN_ALIAS_RE = re.compile(r"\b(usd|dollars?|stablecoins?|stables?)\b", re.IGNORECASE)
GENERIC_TOKEN_RE = re.compile(r"\b[A-Z]{3,5}\b")
PROTOCOL_RE = re.compile(
    r"\b(dragon\s?swap|dragon|symphony|citrex|silo|takara|yei\s+finance|yei)\b",
    re.IGNORECASE,
)
PERCENT_RE = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s?(?:%|percent\b|pct\b)", re.IGNORECASE)
LEVERAGE_RE = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s?x(?!\w)", re.IGNORECASE)
SLIPPAGE_RE = re.compile(
    r"\b(?:slippage|slip)\s+(?:of\s+|at\s+)?(\d+(?:\.\d+)?)\s?%"
    r"|(?<![\w.])(\d+(?:\.\d+)?)\s?%\s+slippage\b",
    re.IGNORECASE,
)
RISK_LEVEL_RE = re.compile(r"\b(low|medium|moderate|high|conservative|aggressive)\s+risk\b", re.IGNORECASE)
TIMEFRAME_RE = re.compile(rf"\b(\d+)\s+({_TIME_UNITS})\b|\b(daily|weekly|monthly|yearly|annually)\b", re.IGNORECASE)
RELATIVE_RE = re.compile(r"\b(all|everything|entire|whole|half)\b", re.IGNORECASE)

CANONICAL_FORMATS: dict[EntityType, re.Pattern[str]] = {
    EntityType.TOKEN: re.compile(r"^[A-Z]{3,5}$"),
    EntityType.AMOUNT: re.compile(r"^\d+(\.\d+)?$"),
    EntityType.PERCENTAGE: re.compile(r"^\d+(\.\d+)?\s?%$"),
    EntityType.LEVERAGE: re.compile(r"^\d+(\.\d+)?x$"),
    EntityType.SLIPPAGE: re.compile(r"^(?:(?:slippage|slip) (?:of |at )?\d+(?:\.\d+)?%|\d+(?:\.\d+)?% slippage)$"),
    EntityType.TIMEFRAME: re.compile(r"^\d+ (hours?|days?|weeks?|months?|years?)$"),
}

_RISK_WORDS = {"moderate": "medium", "conservative": "low", "aggressive": "high"}
_PERIOD_WORDS = {"daily": "1 day", "weekly": "1 week", "monthly": "1 month", "yearly": "1 year", "annually": "1 year"}


@dataclass(frozen=True)
class EntityRule:
    type: EntityType
    pattern: re.Pattern[str]
    normalize: Callable[[re.Match[str]], str | None]
    validate: Callable[[str], bool]
    base_confidence: float


def _first_group(m: re.Match[str]) -> str:
    for g in m.groups():
        if g is not None:
            return g
    return m.group(0)


def _number(raw: str) -> str | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return fmt_number(value)


def _in_range(lo: float, hi: float, *, open_low: bool = False) -> Callable[[str], bool]:
    def check(value: str) -> bool:
        v = float(value)
        if not math.isfinite(v):
            return False
        return (lo < v if open_low else lo <= v) and v <= hi

    return check


def _norm_amount(m: re.Match[str]) -> str | None:
    return _number(m.group(0))


def _norm_token(m: re.Match[str]) -> str | None:
    base = normalize_token(m.group(0)).base
    return base or None


def _norm_protocol(m: re.Match[str]) -> str | None:
    name = normalize_protocol(m.group(0))
    return name or None


def _norm_numeric_group(m: re.Match[str]) -> str | None:
    return _number(_first_group(m))


def _norm_risk(m: re.Match[str]) -> str | None:
    word = m.group(1).lower()
    return _RISK_WORDS.get(word, word)


def _norm_timeframe(m: re.Match[str]) -> str | None:
    if m.group(3):
        return _PERIOD_WORDS.get(m.group(3).lower())
    count = int(m.group(1))
    unit = m.group(2).lower().rstrip("s")
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def _norm_relative(m: re.Match[str]) -> str | None:
    return "half" if m.group(1).lower() == "half" else "all"


def _valid_amount(value: str) -> bool:
    v = float(value)
    return math.isfinite(v) and 0 < v < MAX_AMOUNT


def _valid_timeframe(value: str) -> bool:
    return int(value.split(" ", 1)[0]) > 0


RULES: tuple[EntityRule, ...] = (
    EntityRule(EntityType.AMOUNT, AMOUNT_RE, _norm_amount, _valid_amount, 0.9),
    EntityRule(EntityType.TOKEN, KNOWN_TOKEN_RE, _norm_token, lambda v: v in KNOWN_TOKENS, 0.95),
    EntityRule(EntityType.TOKEN, TOKEN_ALIAS_RE, lambda m: "USDC", lambda v: v in KNOWN_TOKENS, 0.8),
    EntityRule(EntityType.TOKEN, GENERIC_TOKEN_RE, _norm_token, lambda v: v in KNOWN_TOKENS, 0.7),
    EntityRule(EntityType.PROTOCOL, PROTOCOL_RE, _norm_protocol, lambda v: v in KNOWN_PROTOCOLS, 0.9),
    EntityRule(EntityType.PERCENTAGE, PERCENT_RE, _norm_numeric_group, _in_range(0.0, 100.0), 0.95),
    EntityRule(EntityType.LEVERAGE, LEVERAGE_RE, _norm_numeric_group, _in_range(MIN_LEVERAGE, MAX_LEVERAGE), 0.9),
    EntityRule(EntityType.SLIPPAGE, SLIPPAGE_RE, _norm_numeric_group, _in_range(0.0, MAX_SLIPPAGE), 0.95),
    EntityRule(EntityType.RISK_LEVEL, RISK_LEVEL_RE, _norm_risk, lambda v: v in {"low", "medium", "high"}, 0.9),
    EntityRule(EntityType.TIMEFRAME, TIMEFRAME_RE, _norm_timeframe, _valid_timeframe, 0.8),
    EntityRule(EntityType.RELATIVE_AMOUNT, RELATIVE_RE, _norm_relative, lambda v: v in {"all", "half"}, 0.85),
)

_VALIDATORS: dict[EntityType, Callable[[str], bool]] = {}
for _rule in RULES:
    _VALIDATORS.setdefault(_rule.type, _rule.validate)


def preprocess(text: str) -> str:
    """Strip thousands separators, expand k/m/b suffixes, then ``$N`` to ``N USD``."""
    out = COMMA_RE.sub("", text)
    out = MAGNITUDE_RE.sub(lambda m: fmt_number(float(m.group(1)) * _MAGNITUDES[m.group(2).lower()]), out)
    out = CURRENCY_RE.sub(r"\1 USD", out)
    return out


def score_confidence(entity_type: EntityType, base: float, raw: str, normalized: str) -> float:
    score = base
    if raw == normalized:
        score *= 1.1
    if len(raw) < 3:
        score *= 0.8
    canonical = CANONICAL_FORMATS.get(entity_type)
    if canonical is not None and canonical.match(raw):
        score *= 1.2
    return min(score, 1.0)


def _rank(entity: FinancialEntity) -> tuple[bool, float]:
    return (entity.is_valid, entity.confidence)


def resolve_overlaps(candidates: list[FinancialEntity]) -> list[FinancialEntity]:
    """Left-to-right, longest first. A challenger must strictly outrank every entity it overlaps."""
    ordered = sorted(candidates, key=lambda e: (e.start, -(e.end - e.start)))
    accepted: list[FinancialEntity] = []
    for cand in ordered:
        clashes = [e for e in accepted if e.overlaps(cand)]
        if not clashes:
            accepted.append(cand)
            continue
        if all(_rank(cand) > _rank(e) for e in clashes):
            accepted = [e for e in accepted if not e.overlaps(cand)]
            accepted.append(cand)
    return sorted(accepted, key=lambda e: e.start)


class EntityExtractor:
    def __init__(self, config: NLPConfig | None = None) -> None:
        self.config = config or NLPConfig()

    def preprocess(self, text: str) -> str:
        return preprocess(text)

    def extract(self, text: str) -> list[FinancialEntity]:
        if not isinstance(text, str):
            raise EntityExtractionError(
                "Input must be a string",
                code="INVALID_INPUT",
                details={"type": type(text).__name__},
            )
        if len(text) > self.config.max_input_length:
            raise EntityExtractionError(
                "Input exceeds maximum length",
                code="INPUT_TOO_LONG",
                details={"length": len(text), "max_length": self.config.max_input_length},
            )

        clean = preprocess(text)
        candidates: list[FinancialEntity] = []
        for rule in RULES:
            for m in rule.pattern.finditer(clean):
                try:
                    normalized = rule.normalize(m)
                    if normalized is None:
                        continue
                    is_valid = bool(rule.validate(normalized))
                except Exception as exc:  # noqa: BLE001
                    raise EntityExtractionError(
                        "Entity rule failed",
                        details={"type": rule.type.value, "raw": m.group(0), "error": str(exc)},
                    ) from exc
                raw = m.group(0)
                candidates.append(
                    FinancialEntity(
                        type=rule.type,
                        raw_value=raw,
                        normalized_value=normalized,
                        confidence=score_confidence(rule.type, rule.base_confidence, raw, normalized),
                        start=m.start(),
                        end=m.end(),
                        is_valid=is_valid,
                    )
                )

        entities = [
            e for e in resolve_overlaps(candidates) if e.is_valid and e.confidence >= self.config.min_confidence
        ]
        if len(entities) > self.config.max_entities:
            entities = sorted(entities, key=lambda e: e.confidence, reverse=True)[: self.config.max_entities]
            entities.sort(key=lambda e: e.start)

        logger.debug(
            "entities_extracted",
            extra={"event": "entities_extracted", "count": len(entities), "candidates": len(candidates)},
        )
        return entities

    def extract_by_type(self, text: str, entity_type: EntityType) -> list[FinancialEntity]:
        return [e for e in self.extract(text) if e.type == entity_type]

    def validate_entity(self, entity: FinancialEntity) -> bool:
        validator = _VALIDATORS.get(entity.type)
        if validator is None:
            return False
        try:
            return bool(validator(entity.normalized_value))
        except ValueError:
            return False

    def get_entity_suggestions(self, partial: str, entity_type: EntityType, limit: int = 5) -> list[str]:
        """Known names starting with ``partial`` first, then ones containing it."""
        if entity_type == EntityType.TOKEN:
            pool = list(KNOWN_TOKENS)
            needle = partial.strip().upper()
        elif entity_type == EntityType.PROTOCOL:
            pool = list(KNOWN_PROTOCOLS)
            needle = partial.strip().lower()
        else:
            return []
        if not needle:
            return []
        prefix = [p for p in pool if p.startswith(needle)]
        inner = [p for p in pool if needle in p and p not in prefix]
        if entity_type == EntityType.PROTOCOL:
            return [PROTOCOL_DISPLAY.get(p, p) for p in (prefix + inner)[:limit]]
        return (prefix + inner)[:limit]
