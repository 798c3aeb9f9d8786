from __future__ import annotations

from dataclasses import dataclass

from defi_nlp.adapters.market_data import MarketDataProvider
from defi_nlp.core.classifier import IntentClassifier
from defi_nlp.core.config import NLPConfig, Settings
from defi_nlp.core.context import ContextAnalyzer
from defi_nlp.core.entities import EntityExtractor
from defi_nlp.services.builder import CommandBuilder
from defi_nlp.services.disambiguation import DisambiguationEngine
from defi_nlp.services.parser import CommandParser
from defi_nlp.services.pipeline import NLPPipeline
from defi_nlp.services.validator import ParameterValidator


@dataclass
class ServiceHub:
    settings: Settings
    config: NLPConfig
    market: MarketDataProvider
    extractor: EntityExtractor
    analyzer: ContextAnalyzer
    classifier: IntentClassifier
    validator: ParameterValidator
    disambiguation: DisambiguationEngine
    builder: CommandBuilder
    parser: CommandParser
    pipeline: NLPPipeline

    async def aclose(self) -> None:
        close = getattr(self.market, "aclose", None)
        if close is not None:
            await close()
