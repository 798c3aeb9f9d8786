from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from defi_nlp.core.classifier import IntentClassifier
from defi_nlp.core.config import NLPConfig
from defi_nlp.core.context import ContextAnalysis, ContextAnalyzer
from defi_nlp.core.entities import EntityExtractor
from defi_nlp.core.errors import EntityExtractionError, IntentClassificationError, NLPError, ProcessingError
from defi_nlp.core.types import ConversationContext, DefiIntent, FinancialEntity, IntentClassification, ParsingContext
from defi_nlp.services.disambiguation import AmbiguityType, DisambiguationOptions
from defi_nlp.services.parameters import ExecutableCommand
from defi_nlp.services.parser import CommandParser, CommandProcessingResult

logger = logging.getLogger(__name__)

REJECTION_HINT = 'Try commands like "lend 1000 USDC" or "check my portfolio"'
HIGH_RISK_WARNING = "This operation carries high risk - proceed with caution"


class TurnState(str, Enum):
    RECEIVED = "received"
    ENTITIES_EXTRACTED = "entities_extracted"
    CLASSIFIED = "classified"
    REJECTED = "rejected"
    PARAMETERS_EXTRACTED = "parameters_extracted"
    DISAMBIGUATION = "disambiguation"
    VALIDATED = "validated"
    INVALID = "invalid"
    COMMAND_READY = "command_ready"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class TurnResult:
    text: str
    state: TurnState
    transitions: tuple[TurnState, ...]
    entities: tuple[FinancialEntity, ...] = ()
    classification: IntentClassification | None = None
    analysis: ContextAnalysis | None = None
    processing: CommandProcessingResult | None = None
    clarification: DisambiguationOptions | None = None
    error: NLPError | None = None
    warnings: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()
    elapsed_ms: float = 0.0

    @property
    def command(self) -> ExecutableCommand | None:
        return self.processing.command if self.processing else None

    @property
    def disambiguation(self) -> DisambiguationOptions | None:
        if self.clarification is not None:
            return self.clarification
        return self.processing.disambiguation if self.processing else None

    @property
    def confirmation(self) -> DisambiguationOptions | None:
        return self.processing.confirmation if self.processing else None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "text": self.text,
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "entities": [e.to_dict() for e in self.entities],
            "classification": self.classification.to_dict() if self.classification else None,
            "command": self.command.model_dump(mode="json") if self.command else None,
            "errors": [e.to_dict() for e in self.processing.errors] if self.processing else [],
            "disambiguation": self.disambiguation.to_dict() if self.disambiguation else None,
            "confirmation": self.confirmation.to_dict() if self.confirmation else None,
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
            "error": self.error.to_dict() if self.error else None,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        return out


class NLPPipeline:
    """One turn: text in, a command, a question or a rejection out."""

    def __init__(
        self,
        config: NLPConfig | None = None,
        extractor: EntityExtractor | None = None,
        analyzer: ContextAnalyzer | None = None,
        classifier: IntentClassifier | None = None,
        parser: CommandParser | None = None,
    ) -> None:
        self.config = config or NLPConfig()
        self.extractor = extractor or EntityExtractor(self.config)
        self.analyzer = analyzer or ContextAnalyzer()
        self.classifier = classifier or IntentClassifier(self.config)
        self.parser = parser or CommandParser(self.config)
        self._inflight: dict[str, asyncio.Task[TurnResult]] = {}

    async def process(
        self,
        text: str,
        context: ConversationContext | None = None,
        parsing: ParsingContext | None = None,
    ) -> TurnResult:
        started = time.perf_counter()
        transitions = [TurnState.RECEIVED]

        def done(state: TurnState, **kwargs: Any) -> TurnResult:
            transitions.append(state)
            result = TurnResult(
                text=text if isinstance(text, str) else repr(text),
                state=state,
                transitions=tuple(transitions),
                elapsed_ms=(time.perf_counter() - started) * 1000,
                **kwargs,
            )
            logger.info(
                "turn_processed",
                extra={
                    "event": "turn_processed",
                    "state": state.value,
                    "intent": result.classification.intent.value if result.classification else None,
                    "elapsed_ms": round(result.elapsed_ms, 2),
                },
            )
            return result

        try:
            entities = tuple(self.extractor.extract(text))
        except EntityExtractionError as exc:
            logger.warning("entity_extraction_failed", extra={"event": "entity_extraction_failed", "code": exc.code})
            return done(TurnState.REJECTED, error=exc, suggestions=(REJECTION_HINT,))
        transitions.append(TurnState.ENTITIES_EXTRACTED)

        analysis = self.analyzer.analyze(context, entities)
        try:
            classification = await self.classifier.aclassify(text, entities, analysis)
        except IntentClassificationError as exc:
            alternatives = [
                (DefiIntent(value), float(score)) for value, score in exc.details.get("alternatives", [])
            ]
            clarification = None
            if alternatives and self.config.enable_disambiguation:
                clarification = self.parser.disambiguation.clarify_intent(alternatives)
            return done(
                TurnState.REJECTED,
                entities=entities,
                analysis=analysis,
                clarification=clarification,
                error=exc,
                suggestions=(REJECTION_HINT,),
            )
        transitions.append(TurnState.CLASSIFIED)

        return await self._process_classified(text, classification, entities, analysis, parsing, transitions, done)

    async def _process_classified(
        self,
        text: str,
        classification: IntentClassification,
        entities: tuple[FinancialEntity, ...],
        analysis: ContextAnalysis | None,
        parsing: ParsingContext | None,
        transitions: list[TurnState],
        done: Any,
    ) -> TurnResult:
        try:
            processing = await self.parser.parse(classification, text, parsing)
        except ProcessingError as exc:
            logger.warning("command_processing_failed", extra={"event": "command_processing_failed", "code": exc.code})
            return done(TurnState.INVALID, entities=entities, classification=classification, analysis=analysis, error=exc)
        transitions.append(TurnState.PARAMETERS_EXTRACTED)
        return self._settle(processing, entities, analysis, transitions, done)

    def _settle(
        self,
        processing: CommandProcessingResult,
        entities: tuple[FinancialEntity, ...],
        analysis: ContextAnalysis | None,
        transitions: list[TurnState],
        done: Any,
    ) -> TurnResult:
        warnings = [e.message for e in processing.validation.warnings]
        command = processing.command
        if command is not None and command.risk_level == "high":
            warnings.append(HIGH_RISK_WARNING)
        common = {
            "entities": entities,
            "classification": processing.classification,
            "analysis": analysis,
            "processing": processing,
            "warnings": tuple(warnings),
            "suggestions": tuple(s.description for s in processing.suggestions),
        }

        if processing.needs_disambiguation:
            return done(TurnState.DISAMBIGUATION, **common)
        transitions.append(TurnState.VALIDATED)
        if command is None:
            return done(TurnState.INVALID, **common)
        if command.confirmation_required:
            transitions.append(TurnState.COMMAND_READY)
            return done(TurnState.AWAITING_CONFIRMATION, **common)
        return done(TurnState.COMMAND_READY, **common)

    async def resolve(self, turn: TurnResult, option_id: str, parsing: ParsingContext | None = None) -> TurnResult:
        """Answer the pending question of ``turn`` and carry the turn forward."""
        started = time.perf_counter()
        transitions = [TurnState.RECEIVED]

        def done(state: TurnState, **kwargs: Any) -> TurnResult:
            transitions.append(state)
            return TurnResult(
                text=turn.text,
                state=state,
                transitions=tuple(transitions),
                elapsed_ms=(time.perf_counter() - started) * 1000,
                **kwargs,
            )

        pending = turn.disambiguation
        if pending is None:
            raise ProcessingError("Turn has no pending question", code="INVALID_OPTION", details={"option_id": option_id})

        if pending.ambiguity == AmbiguityType.UNCLEAR_INTENT:
            option = self.parser.disambiguation.resolve(pending, option_id)
            classification = IntentClassification(
                intent=DefiIntent(option.parameters["intent"]),
                confidence=option.confidence,
                entities=turn.entities,
            )
            transitions.extend([TurnState.ENTITIES_EXTRACTED, TurnState.CLASSIFIED])
            return await self._process_classified(
                turn.text, classification, turn.entities, turn.analysis, parsing, transitions, done
            )

        if turn.processing is None:
            raise ProcessingError(
                "Turn has no parsed command to update",
                code="NO_PENDING_COMMAND",
                details={"option_id": option_id, "ambiguity": pending.ambiguity.value},
            )
        processing = await self.parser.resolve(turn.processing, option_id, parsing)
        transitions.extend([TurnState.ENTITIES_EXTRACTED, TurnState.CLASSIFIED, TurnState.PARAMETERS_EXTRACTED])
        return self._settle(processing, turn.entities, turn.analysis, transitions, done)

    async def submit(
        self,
        session_id: str,
        text: str,
        context: ConversationContext | None = None,
        parsing: ParsingContext | None = None,
    ) -> TurnResult:
        """Like ``process`` but a newer turn for the same session supersedes this one."""
        previous = self._inflight.get(session_id)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self.process(text, context, parsing))
        self._inflight[session_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._inflight.get(session_id) is not task:
                logger.info("turn_superseded", extra={"event": "turn_superseded", "session_id": session_id})
                return TurnResult(
                    text=text,
                    state=TurnState.SUPERSEDED,
                    transitions=(TurnState.RECEIVED, TurnState.SUPERSEDED),
                )
            raise
        finally:
            if self._inflight.get(session_id) is task:
                del self._inflight[session_id]

