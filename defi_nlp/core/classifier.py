from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Sequence

from defi_nlp.core.config import NLPConfig
from defi_nlp.core.context import ContextAnalysis
from defi_nlp.core.entities import preprocess
from defi_nlp.core.errors import IntentClassificationError
from defi_nlp.core.registry import (
    INTENT_PATTERNS,
    KEYWORDS,
    REGISTRY_ORDER,
    SUB_INTENT_CUES,
    all_patterns,
    get_intent_confidence,
)
from defi_nlp.core.types import DefiIntent, EntityType, FinancialEntity, IntentClassification

logger = logging.getLogger(__name__)

STRIP_RE = re.compile(r"[^\w\s$.%-]")
SPACE_RE = re.compile(r"\s+")
QUESTION_START_RE = re.compile(r"^\s*(what|how|which|when|where|why|is|are|can|could|do|does|should)\b", re.IGNORECASE)
LEADING_QUERY_RE = re.compile(r"^(show|get|display|check)\b")

AMOUNT_LIKE = frozenset({EntityType.AMOUNT, EntityType.PERCENTAGE, EntityType.RELATIVE_AMOUNT})

# lower number wins when final scores tie
STRATEGY_PRIORITY = {"pattern": 0, "context": 1, "structure": 2, "keyword": 3}

KEYWORD_WEIGHT = 0.8
KEYWORD_CAP = 0.9
RECENT_INTENT_BOOST = 1.1
LENDING_POSITION_BOOST = 1.2
LARGE_PORTFOLIO_BOOST = 1.1
LARGE_PORTFOLIO_VALUE = 10_000


def normalize_for_classification(text: str) -> str:
    out = preprocess(text).lower()
    out = STRIP_RE.sub(" ", out)
    return SPACE_RE.sub(" ", out).strip()


def is_question(raw_text: str) -> bool:
    stripped = raw_text.strip()
    return stripped.endswith("?") or bool(QUESTION_START_RE.match(stripped))


def get_confidence_level(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"


@dataclass(frozen=True)
class ClassifierInput:
    text: str
    raw_text: str
    entities: tuple[FinancialEntity, ...]
    entity_types: frozenset[EntityType]
    is_question: bool
    analysis: ContextAnalysis | None = None

    @classmethod
    def build(
        cls,
        raw_text: str,
        entities: Sequence[FinancialEntity],
        analysis: ContextAnalysis | None = None,
    ) -> ClassifierInput:
        types = {e.type for e in entities}
        if types & AMOUNT_LIKE:
            types.add(EntityType.AMOUNT)
        return cls(
            text=normalize_for_classification(raw_text),
            raw_text=raw_text,
            entities=tuple(entities),
            entity_types=frozenset(types),
            is_question=is_question(raw_text),
            analysis=analysis,
        )

    def has(self, entity_type: EntityType) -> bool:
        return entity_type in self.entity_types


@dataclass(frozen=True)
class Candidate:
    intent: DefiIntent
    confidence: float
    strategy: str
    matched_patterns: tuple[str, ...] = ()


def pattern_strategy(inp: ClassifierInput) -> Candidate | None:
    best: Candidate | None = None
    length = max(len(inp.text), 1)
    for entry in all_patterns():
        required = entry.required_entities
        required_ratio = sum(1 for t in required if inp.has(t)) / len(required) if required else 1.0
        optional_present = sum(1 for t in entry.optional_entities if inp.has(t))
        for pattern in entry.patterns:
            m = pattern.search(inp.text)
            if not m:
                continue
            coverage = (m.end() - m.start()) / length
            score = entry.confidence * required_ratio * (1 + 0.1 * optional_present) * (0.8 + 0.2 * coverage)
            score = min(score, 1.0)
            if best is None or score > best.confidence:
                best = Candidate(entry.intent, score, "pattern", (pattern.pattern,))
    return best


def keyword_strategy(inp: ClassifierInput) -> Candidate | None:
    words = set(inp.text.split())
    best_intent: DefiIntent | None = None
    best_score = 0.0
    for intent, keywords in KEYWORDS.items():
        matched = sum(1 for k in keywords if k in words)
        score = matched / len(keywords) if keywords else 0.0
        if score > best_score:
            best_intent, best_score = intent, score
    if best_intent is None:
        return None
    return Candidate(best_intent, min(best_score * KEYWORD_WEIGHT, KEYWORD_CAP), "keyword")


def context_strategy(inp: ClassifierInput) -> Candidate | None:
    analysis = inp.analysis
    if analysis is None:
        return None
    if analysis.has_lending_positions and inp.has(EntityType.AMOUNT):
        return Candidate(DefiIntent.WITHDRAW, 0.7, "context")
    if DefiIntent.LEND in analysis.recent_intents and inp.has(EntityType.TOKEN):
        return Candidate(DefiIntent.LEND, 0.8, "context")
    return None


def structure_strategy(inp: ClassifierInput) -> Candidate | None:
    if inp.has(EntityType.AMOUNT) and inp.has(EntityType.TOKEN):
        return Candidate(DefiIntent.LEND, 0.6, "structure")
    if inp.is_question and inp.has(EntityType.TOKEN):
        return Candidate(DefiIntent.SHOW_RATES, 0.7, "structure")
    if LEADING_QUERY_RE.match(inp.text):
        return Candidate(DefiIntent.SHOW_POSITIONS, 0.6, "structure")
    return None


Strategy = Callable[[ClassifierInput], "Candidate | None"]

STRATEGIES: dict[str, Strategy] = {
    "pattern": pattern_strategy,
    "keyword": keyword_strategy,
    "context": context_strategy,
    "structure": structure_strategy,
}


def _portfolio_adjustment(intent: DefiIntent, analysis: ContextAnalysis | None) -> float:
    if analysis is None:
        return 1.0
    if intent == DefiIntent.LEND and analysis.has_lending_positions:
        return LENDING_POSITION_BOOST
    if intent == DefiIntent.WITHDRAW and analysis.portfolio_value > LARGE_PORTFOLIO_VALUE:
        return LARGE_PORTFOLIO_BOOST
    return 1.0


def merge_candidates(
    candidates: Sequence[Candidate],
    analysis: ContextAnalysis | None,
) -> list[tuple[Candidate, float]]:
    """Rank candidates by adjusted score, breaking ties deterministically."""
    scored: list[tuple[Candidate, float]] = []
    for cand in candidates:
        final = cand.confidence
        if analysis is not None and cand.intent in analysis.recent_intents:
            final *= RECENT_INTENT_BOOST
        final *= _portfolio_adjustment(cand.intent, analysis)
        scored.append((cand, min(final, 1.0)))

    scored.sort(
        key=lambda pair: (
            -pair[1],
            STRATEGY_PRIORITY[pair[0].strategy],
            -get_intent_confidence(pair[0].intent),
            REGISTRY_ORDER.get(pair[0].intent, len(REGISTRY_ORDER)),
        )
    )
    return scored


class IntentClassifier:
    def __init__(self, config: NLPConfig | None = None) -> None:
        self.config = config or NLPConfig()

    def _plan(self) -> tuple[tuple[str, ...], bool]:
        """Strategies to run up front, and whether keyword is a strict-mode fallback."""
        mode = self.config.mode
        if mode == "strict":
            return ("pattern",), self.config.fallback_to_keywords
        if mode == "experimental":
            return ("pattern", "keyword", "context", "structure"), False
        names = ["pattern", "context", "structure"]
        if self.config.fallback_to_keywords:
            names.append("keyword")
        return tuple(names), False

    def _prepare(
        self,
        text: str,
        entities: Sequence[FinancialEntity],
        analysis: ContextAnalysis | None,
    ) -> ClassifierInput:
        if not isinstance(text, str):
            raise IntentClassificationError("Input must be a string", code="INVALID_INPUT")
        return ClassifierInput.build(text, entities, analysis)

    def classify(
        self,
        text: str,
        entities: Sequence[FinancialEntity] = (),
        analysis: ContextAnalysis | None = None,
    ) -> IntentClassification:
        inp = self._prepare(text, entities, analysis)
        names, keyword_fallback = self._plan()
        results = {name: self._run(name, inp) for name in names}
        if keyword_fallback and results.get("pattern") is None:
            results["keyword"] = self._run("keyword", inp)
        return self._finish(inp, results)

    async def aclassify(
        self,
        text: str,
        entities: Sequence[FinancialEntity] = (),
        analysis: ContextAnalysis | None = None,
    ) -> IntentClassification:
        inp = self._prepare(text, entities, analysis)
        names, keyword_fallback = self._plan()
        outputs = await asyncio.gather(*(asyncio.to_thread(self._run, name, inp) for name in names))
        results = dict(zip(names, outputs))
        if keyword_fallback and results.get("pattern") is None:
            results["keyword"] = self._run("keyword", inp)
        return self._finish(inp, results)

    def _run(self, name: str, inp: ClassifierInput) -> Candidate | None:
        try:
            return STRATEGIES[name](inp)
        except Exception as exc:  # noqa: BLE001
            raise IntentClassificationError(
                "Classification strategy failed",
                details={"strategy": name, "error": str(exc)},
            ) from exc

    def _finish(self, inp: ClassifierInput, results: dict[str, Candidate | None]) -> IntentClassification:
        candidates = [c for c in results.values() if c is not None]
        ranked = merge_candidates(candidates, inp.analysis)

        alternatives: list[tuple[DefiIntent, float]] = []
        for cand, final in ranked:
            if all(cand.intent != i for i, _ in alternatives):
                alternatives.append((cand.intent, final))

        if not ranked:
            raise IntentClassificationError(
                "Could not determine intent",
                code="NO_INTENT",
                details={"text": inp.text, "alternatives": []},
            )

        winner, score = ranked[0]
        if score < self.config.min_confidence:
            raise IntentClassificationError(
                "Intent confidence below threshold",
                code="LOW_CONFIDENCE",
                details={
                    "text": inp.text,
                    "confidence": score,
                    "min_confidence": self.config.min_confidence,
                    "alternatives": [[i.value, s] for i, s in alternatives],
                },
            )

        strategy_scores = {name: 0.0 for name in STRATEGY_PRIORITY}
        for name, cand in results.items():
            if cand is not None:
                strategy_scores[name] = cand.confidence

        classification = IntentClassification(
            intent=winner.intent,
            confidence=score,
            entities=inp.entities,
            sub_intent=self.detect_sub_intent(winner.intent, inp.text),
            strategy_scores=strategy_scores,
            matched_patterns=winner.matched_patterns,
            alternatives=tuple(alternatives[1:]),
        )
        logger.debug(
            "intent_classified",
            extra={
                "event": "intent_classified",
                "intent": winner.intent.value,
                "confidence": round(score, 4),
                "strategy": winner.strategy,
            },
        )
        return classification

    def detect_sub_intent(self, intent: DefiIntent, text: str) -> str | None:
        for pattern, label in SUB_INTENT_CUES.get(intent, ()):
            if pattern.search(text):
                return label
        return None

    def get_confidence_level(self, confidence: float) -> str:
        return get_confidence_level(confidence)

    def validate_classification(self, classification: IntentClassification) -> bool:
        if not 0.0 <= classification.confidence <= 1.0:
            return False
        if len(classification.entities) > self.config.max_entities:
            return False
        return classification.intent in INTENT_PATTERNS or classification.intent == DefiIntent.UNKNOWN
