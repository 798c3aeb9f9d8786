from __future__ import annotations

import argparse
import asyncio
import json
import sys

from defi_nlp.adapters.market_data import build_market_data
from defi_nlp.core.classifier import IntentClassifier
from defi_nlp.core.config import Settings, get_settings
from defi_nlp.core.container import ServiceHub
from defi_nlp.core.context import ContextAnalyzer
from defi_nlp.core.entities import EntityExtractor
from defi_nlp.core.logging import setup_logging
from defi_nlp.core.types import ParsingContext
from defi_nlp.services.builder import CommandBuilder
from defi_nlp.services.disambiguation import DisambiguationEngine
from defi_nlp.services.parser import CommandParser
from defi_nlp.services.pipeline import NLPPipeline
from defi_nlp.services.validator import ParameterValidator


def build_hub(settings: Settings) -> ServiceHub:
    config = settings.nlp_config()
    market = build_market_data(settings)
    extractor = EntityExtractor(config)
    analyzer = ContextAnalyzer()
    classifier = IntentClassifier(config)
    validator = ParameterValidator()
    disambiguation = DisambiguationEngine(config)
    builder = CommandBuilder()
    parser = CommandParser(
        config,
        market=market,
        validator=validator,
        disambiguation=disambiguation,
        builder=builder,
    )
    pipeline = NLPPipeline(
        config,
        extractor=extractor,
        analyzer=analyzer,
        classifier=classifier,
        parser=parser,
    )
    return ServiceHub(
        settings=settings,
        config=config,
        market=market,
        extractor=extractor,
        analyzer=analyzer,
        classifier=classifier,
        validator=validator,
        disambiguation=disambiguation,
        builder=builder,
        parser=parser,
        pipeline=pipeline,
    )


def _balances(items: list[str]) -> dict[str, float]:
    out: dict[str, float] = {}
    for item in items:
        symbol, sep, amount = item.partition(":")
        if not sep:
            raise argparse.ArgumentTypeError(f"balance must look like SYMBOL:AMOUNT, got {item!r}")
        try:
            out[symbol.strip().upper()] = float(amount)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"bad balance amount in {item!r}") from exc
    return out


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn a DeFi request into an executable command.")
    parser.add_argument("text", nargs="+", help='Request text, e.g. "lend 1000 USDC on silo".')
    parser.add_argument("--balance", action="append", default=[], metavar="SYM:AMOUNT", help="Wallet balance.")
    parser.add_argument("--gas-price", type=float, default=None, help="Gas price in gwei.")
    parser.add_argument("--mode", choices=["strict", "flexible", "experimental"], default=None)
    return parser.parse_args(argv)


async def run(text: str, parsing: ParsingContext, settings: Settings) -> dict:
    hub = build_hub(settings)
    try:
        result = await hub.pipeline.process(text, parsing=parsing)
        return result.to_dict()
    finally:
        await hub.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    if args.mode:
        settings = settings.model_copy(update={"nlp_mode": args.mode})
    setup_logging(settings.log_level, settings.log_json)

    try:
        parsing = ParsingContext(balances=_balances(args.balance), gas_price_gwei=args.gas_price)
    except argparse.ArgumentTypeError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}, ensure_ascii=False))
        return 2

    payload = asyncio.run(run(" ".join(args.text), parsing, settings))
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0 if payload["error"] is None else 1


if __name__ == "__main__":
    sys.exit(main())
