"""Per-intent pattern and keyword tables.

Built once at import and shared read-only by the classifier and the
command templates. Patterns run against classification text: preprocessed,
lower-cased, punctuation other than ``$ . % -`` replaced by spaces.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from defi_nlp.core.types import DefiIntent, EntityType

NUM = r"(\d+(?:\.\d+)?)"
NUM_OR_PCT = r"(\d+(?:\.\d+)?(?:\s?%)?)"
WORD = r"([a-z][\w-]*)"
WHAT_IS = r"what(?:\s+is|\s+s|s|\s+are)?"
RELATIVE = r"(?:all|half|everything|entire|whole)"

A = EntityType.AMOUNT
T = EntityType.TOKEN
P = EntityType.PROTOCOL


@dataclass(frozen=True)
class IntentPattern:
    intent: DefiIntent
    patterns: tuple[re.Pattern[str], ...]
    required_entities: tuple[EntityType, ...]
    optional_entities: tuple[EntityType, ...]
    examples: tuple[str, ...]
    category: str
    confidence: float = 0.9


def _p(*raw: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(r) for r in raw)


_PATTERNS: tuple[IntentPattern, ...] = (
    IntentPattern(
        intent=DefiIntent.LEND,
        patterns=_p(
            rf"\b(?:lend|supply|deposit|provide|stake)\s+{NUM_OR_PCT}\s+(?:of\s+)?(?:my\s+)?{WORD}(?:\s+(?:to|on|in|at|into|via)\s+{WORD})?",
            rf"\b(?:lend|supply|deposit)\s+(?:my\s+)?{RELATIVE}\s+(?:of\s+)?(?:my\s+)?{WORD}",
            rf"\b(?:lend|supply|deposit)\s+{NUM_OR_PCT}(?=\s|$)",
        ),
        required_entities=(A, T),
        optional_entities=(P, EntityType.TIMEFRAME, EntityType.LEVERAGE, EntityType.RISK_LEVEL),
        examples=("lend 1000 USDC", "supply 500 USDT to Silo", "deposit 50% of my SEI on Takara"),
        category="lending",
    ),
    IntentPattern(
        intent=DefiIntent.BORROW,
        patterns=_p(
            rf"\b(?:borrow|take\s+(?:out\s+)?(?:a\s+)?loan\s+of)\s+{NUM}\s+{WORD}(?:\s+(?:against|using|with)\s+{WORD})?",
            rf"\btake\s+(?:a\s+)?{NUM}\s+{WORD}\s+loan\b",
            rf"\bborrow\s+{NUM}(?=\s|$)",
        ),
        required_entities=(A, T),
        optional_entities=(P, EntityType.LEVERAGE),
        examples=("borrow 500 USDT", "take 1000 USDC loan", "borrow 200 USDC against SEI"),
        category="lending",
    ),
    IntentPattern(
        intent=DefiIntent.REPAY,
        patterns=_p(
            rf"\b(?:repay|pay\s+back|pay\s+off)\s+{NUM_OR_PCT}\s+(?:of\s+)?(?:my\s+)?{WORD}",
            rf"\b(?:repay|pay\s+back|pay\s+off)\s+(?:my\s+)?(?:{RELATIVE}\s+(?:of\s+)?(?:my\s+)?)?{WORD}\s+(?:loan|debt)\b",
            rf"\brepay\s+{NUM}(?=\s|$)",
        ),
        required_entities=(A, T),
        optional_entities=(P,),
        examples=("repay 500 USDC", "pay back my USDT loan"),
        category="lending",
    ),
    IntentPattern(
        intent=DefiIntent.WITHDRAW,
        patterns=_p(
            rf"\b(?:withdraw|redeem|unstake|take\s+out)\s+{NUM_OR_PCT}\s+(?:of\s+)?(?:my\s+)?{WORD}(?:\s+from\s+{WORD})?",
            rf"\b(?:withdraw|redeem|unstake)\s+(?:my\s+)?{RELATIVE}\s+(?:of\s+)?(?:my\s+)?{WORD}",
            rf"\bwithdraw\s+{NUM}(?=\s|$)",
        ),
        required_entities=(A, T),
        optional_entities=(P,),
        examples=("withdraw 1000 USDC", "withdraw all my SEI from Silo"),
        category="lending",
    ),
    IntentPattern(
        intent=DefiIntent.ADD_LIQUIDITY,
        patterns=_p(
            rf"\badd\s+{NUM}\s+{WORD}(?:\s+and\s+{WORD})?\s+(?:to\s+(?:the\s+)?)?(?:liquidity|pool|lp)\b",
            rf"\b(?:add|provide)\s+liquidity\s+(?:of\s+|with\s+)?{NUM}\s+{WORD}(?:\s+(?:and\s+)?{WORD})?",
            r"\b(?:add|provide)\s+liquidity\b",
        ),
        required_entities=(A, T),
        optional_entities=(P,),
        examples=("add liquidity 1000 SEI/USDC", "add 500 USDC to the pool"),
        category="liquidity",
    ),
    IntentPattern(
        intent=DefiIntent.REMOVE_LIQUIDITY,
        patterns=_p(
            r"\b(?:remove|withdraw|pull)\s+(?:[\w.%-]+\s+){0,4}?liquidity\b",
            rf"\bexit\s+(?:the\s+)?{WORD}(?:\s+{WORD})?\s+pool\b",
        ),
        required_entities=(T,),
        optional_entities=(A, EntityType.PERCENTAGE, P),
        examples=("remove liquidity from SEI/USDC", "remove 50% of my USDC liquidity"),
        category="liquidity",
    ),
    IntentPattern(
        intent=DefiIntent.SWAP,
        patterns=_p(
            rf"\b(?:swap|trade|exchange|convert)\s+{NUM_OR_PCT}\s*(?:of\s+)?(?:my\s+)?{WORD}\s+(?:to|for|into)\s+{WORD}",
            rf"\bbuy\s+{WORD}\s+with\s+{NUM}\s+{WORD}",
            rf"\b(?:swap|trade|exchange|convert)\s+{NUM}(?:\s+{WORD})?",
        ),
        required_entities=(A, T),
        optional_entities=(P, EntityType.SLIPPAGE),
        examples=("swap 1000 USDC to SEI", "trade 500 USDT for ETH"),
        category="trading",
    ),
    IntentPattern(
        intent=DefiIntent.OPEN_POSITION,
        patterns=_p(
            rf"\b(?:open|go|take)\s+(?:a\s+)?(?:\d+(?:\.\d+)?x\s+)?(long|short)\b(?:\s+(?:position\s+)?(?:on\s+)?{WORD})?",
            rf"^(long|short)\s+{WORD}",
            r"\bopen\s+(?:a\s+)?(?:\d+(?:\.\d+)?x\s+)?(?:leveraged\s+)?position\b",
        ),
        required_entities=(T,),
        optional_entities=(A, EntityType.LEVERAGE, P),
        examples=("open long ETH with 5x", "go short BTC", "long SEI with 3x leverage"),
        category="trading",
    ),
    IntentPattern(
        intent=DefiIntent.CLOSE_POSITION,
        patterns=_p(
            rf"\bclose\s+(?:my\s+)?(?:{WORD}\s+)?(?:long\s+|short\s+)?position\b",
            rf"\b(?:exit|close)\s+(?:my\s+)?{WORD}\s+(long|short)\b",
        ),
        required_entities=(T,),
        optional_entities=(P,),
        examples=("close my ETH position", "exit my BTC long"),
        category="trading",
    ),
    IntentPattern(
        intent=DefiIntent.ARBITRAGE,
        patterns=_p(
            rf"\b(?:arbitrage|arb)\s+{WORD}",
            r"\bfind\s+(?:an?\s+|me\s+)?(?:arbitrage|arb)(?:\s+opportunit(?:y|ies))?\b",
        ),
        required_entities=(T,),
        optional_entities=(A, P),
        examples=("arbitrage SEI", "find arbitrage opportunities"),
        category="arbitrage",
    ),
    IntentPattern(
        intent=DefiIntent.CROSS_PROTOCOL_ARBITRAGE,
        patterns=_p(
            rf"\b(?:arbitrage|arb)\s+(?:{NUM}\s+)?{WORD}\s+between\s+{WORD}\s+and\s+{WORD}",
            r"\bcross[\s-]protocol\s+(?:arbitrage|arb)\b",
        ),
        required_entities=(T,),
        optional_entities=(A, P),
        examples=("arbitrage USDC between DragonSwap and Symphony", "cross-protocol arbitrage"),
        category="arbitrage",
    ),
    IntentPattern(
        intent=DefiIntent.PORTFOLIO_STATUS,
        patterns=_p(
            rf"\b(?:show|check|view|display|{WHAT_IS})\s+(?:me\s+)?(?:my\s+)?portfolio\b",
            r"\bportfolio\s+(?:status|summary|overview|balance|value)\b",
            r"\bmy\s+(?:balance|balances|net\s+worth)\b",
        ),
        required_entities=(),
        optional_entities=(),
        examples=("show my portfolio", "portfolio status", "what is my balance"),
        category="portfolio",
    ),
    IntentPattern(
        intent=DefiIntent.RISK_ASSESSMENT,
        patterns=_p(
            rf"\b(?:check|assess|analy[sz]e|evaluate|{WHAT_IS})\s+(?:my\s+)?(?:portfolio\s+|position\s+)?risks?\b",
            r"\b(?:my\s+)?(?:health\s+factors?|liquidation\s+risk)\b",
            r"\bhow\s+(?:safe|risky)\s+(?:is|are)\b",
        ),
        required_entities=(),
        optional_entities=(P, T),
        examples=("check my risk", "what is my health factor", "how risky are my positions"),
        category="portfolio",
    ),
    IntentPattern(
        intent=DefiIntent.YIELD_OPTIMIZATION,
        patterns=_p(
            r"\b(?:optimi[sz]e|maximi[sz]e|improve)\s+(?:my\s+)?(?:yields?|returns?|apy|earnings)\b",
            r"\b(?:best|highest|top)\s+(?:yields?|apy|returns?)\b",
            rf"\bearn\s+(?:yield|interest)\s+on\s+(?:my\s+)?{WORD}",
        ),
        required_entities=(),
        optional_entities=(T, A),
        examples=("optimize my yield", "best yield for USDC", "earn yield on my USDC"),
        category="portfolio",
    ),
    IntentPattern(
        intent=DefiIntent.REBALANCE,
        patterns=_p(
            r"\brebalance\b(?:\s+(?:my\s+)?(?:portfolio|positions|holdings))?",
        ),
        required_entities=(),
        optional_entities=(EntityType.RISK_LEVEL,),
        examples=("rebalance my portfolio",),
        category="portfolio",
    ),
    IntentPattern(
        intent=DefiIntent.SHOW_RATES,
        patterns=_p(
            rf"\b(?:show|get|check|list|{WHAT_IS})\s+(?:me\s+)?(?:the\s+)?(?:current\s+)?(?:lending\s+|borrowing\s+|borrow\s+|supply\s+)?(?:rates?|apys?|aprs?|yields?)\b(?:\s+(?:for|on)\s+{WORD})?",
            rf"\b{WORD}\s+(?:lending\s+|borrowing\s+|borrow\s+|supply\s+)?(?:rates?|apy|apr)\b",
        ),
        required_entities=(T,),
        optional_entities=(P,),
        examples=("show rates for USDC", "what are the lending rates", "USDC apy"),
        category="information",
    ),
    IntentPattern(
        intent=DefiIntent.SHOW_POSITIONS,
        patterns=_p(
            r"\b(?:show|list|display|view|get|check)\s+(?:me\s+)?(?:all\s+)?(?:of\s+)?(?:my\s+)?(?:open\s+|active\s+|current\s+)?(?:positions|investments|holdings|assets)\b",
        ),
        required_entities=(),
        optional_entities=(P,),
        examples=("show my positions", "list my open positions", "display my assets"),
        category="information",
    ),
    IntentPattern(
        intent=DefiIntent.COMPARE_PROTOCOLS,
        patterns=_p(
            rf"\bcompare\s+{WORD}\s+(?:and|vs|versus|with|to)\s+{WORD}",
            rf"\b{WORD}\s+(?:vs|versus)\s+{WORD}",
            r"\bwhich\s+protocol\b",
        ),
        required_entities=(),
        optional_entities=(P, T),
        examples=("compare Silo and Takara", "dragonswap vs symphony"),
        category="information",
    ),
    IntentPattern(
        intent=DefiIntent.MARKET_ANALYSIS,
        patterns=_p(
            rf"\b(?:analy[sz]e|analysis\s+(?:of|for)|outlook\s+(?:for|on))\s+(?:the\s+)?{WORD}(?:\s+market)?",
            rf"\bhow\s+is\s+{WORD}\s+(?:doing|performing|trending)\b",
            r"\bmarket\s+(?:analysis|overview|conditions|outlook)\b",
        ),
        required_entities=(T,),
        optional_entities=(EntityType.TIMEFRAME,),
        examples=("analyze the SEI market", "how is ETH doing", "market overview"),
        category="information",
    ),
    IntentPattern(
        intent=DefiIntent.HELP,
        patterns=_p(
            r"^help\b",
            r"\bhow\s+(?:do|can)\s+i\b",
            r"\bwhat\s+can\s+you\s+do\b",
            r"\bi\s+need\s+help\b",
        ),
        required_entities=(),
        optional_entities=(),
        examples=("help", "how do I lend", "what can you do"),
        category="information",
    ),
    IntentPattern(
        intent=DefiIntent.EXPLAIN,
        patterns=_p(
            r"\b(?:explain|define)\s+(?:what\s+)?(?:an?\s+)?[a-z][\w-]*(?:\s+[a-z][\w-]*)?",
            rf"\b{WHAT_IS}\s+(?:an?\s+)?(?:impermanent\s+loss|liquidation|health\s+factor|slippage|leverage|apy|apr|yield\s+farming)\b",
        ),
        required_entities=(),
        optional_entities=(),
        examples=("explain impermanent loss", "what is slippage"),
        category="information",
    ),
)

INTENT_PATTERNS: Mapping[DefiIntent, IntentPattern] = MappingProxyType({p.intent: p for p in _PATTERNS})
REGISTRY_ORDER: Mapping[DefiIntent, int] = MappingProxyType({p.intent: i for i, p in enumerate(_PATTERNS)})

KEYWORDS: Mapping[DefiIntent, tuple[str, ...]] = MappingProxyType(
    {
        DefiIntent.LEND: ("lend", "deposit", "supply", "provide", "stake"),
        DefiIntent.BORROW: ("borrow", "loan", "take", "leverage"),
        DefiIntent.REPAY: ("repay", "pay", "return", "close"),
        DefiIntent.WITHDRAW: ("withdraw", "remove", "unstake", "redeem"),
        DefiIntent.SWAP: ("swap", "trade", "exchange", "convert"),
        DefiIntent.ADD_LIQUIDITY: ("add", "provide", "liquidity", "pool"),
        DefiIntent.REMOVE_LIQUIDITY: ("remove", "withdraw", "liquidity"),
        DefiIntent.OPEN_POSITION: ("open", "long", "short", "position"),
        DefiIntent.CLOSE_POSITION: ("close", "exit", "position"),
        DefiIntent.ARBITRAGE: ("arbitrage", "profit", "opportunity"),
        DefiIntent.CROSS_PROTOCOL_ARBITRAGE: ("arbitrage", "cross", "between", "protocols"),
        DefiIntent.PORTFOLIO_STATUS: ("portfolio", "status", "balance", "holdings"),
        DefiIntent.RISK_ASSESSMENT: ("risk", "health", "safe", "danger"),
        DefiIntent.YIELD_OPTIMIZATION: ("optimize", "yield", "best", "maximize"),
        DefiIntent.REBALANCE: ("rebalance", "reallocate", "adjust"),
        DefiIntent.SHOW_RATES: ("rates", "apy", "apr", "yield"),
        DefiIntent.SHOW_POSITIONS: ("positions", "holdings", "investments"),
        DefiIntent.COMPARE_PROTOCOLS: ("compare", "versus", "vs", "better"),
        DefiIntent.MARKET_ANALYSIS: ("market", "analysis", "trend", "outlook"),
        DefiIntent.HELP: ("help", "how", "what", "explain"),
        DefiIntent.EXPLAIN: ("explain", "define", "meaning"),
    }
)

SUB_INTENT_CUES: Mapping[DefiIntent, tuple[tuple[re.Pattern[str], str], ...]] = MappingProxyType(
    {
        DefiIntent.LEND: ((re.compile(r"\b(?:optimi[sz]e|best)\b"), "optimize"),),
        DefiIntent.SWAP: ((re.compile(r"\b(?:minimal|low\s+slippage)\b"), "low_slippage"),),
        DefiIntent.ARBITRAGE: ((re.compile(r"\b(?:cross|between)\b"), "cross_protocol"),),
    }
)


def all_patterns() -> tuple[IntentPattern, ...]:
    return _PATTERNS


def get_pattern(intent: DefiIntent) -> IntentPattern | None:
    return INTENT_PATTERNS.get(intent)


def get_examples(intent: DefiIntent) -> tuple[str, ...]:
    pattern = INTENT_PATTERNS.get(intent)
    return pattern.examples if pattern else ()


def get_required_entities(intent: DefiIntent) -> tuple[EntityType, ...]:
    pattern = INTENT_PATTERNS.get(intent)
    return pattern.required_entities if pattern else ()


def get_optional_entities(intent: DefiIntent) -> tuple[EntityType, ...]:
    pattern = INTENT_PATTERNS.get(intent)
    return pattern.optional_entities if pattern else ()


def intent_requires_entities(intent: DefiIntent) -> bool:
    return bool(get_required_entities(intent))


def get_intent_confidence(intent: DefiIntent) -> float:
    pattern = INTENT_PATTERNS.get(intent)
    return pattern.confidence if pattern else 0.0


def get_patterns_by_category(category: str) -> tuple[IntentPattern, ...]:
    return tuple(p for p in _PATTERNS if p.category == category)
