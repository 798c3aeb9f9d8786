from __future__ import annotations

import json
import logging

import pydantic
import pytest

from defi_nlp.adapters.market_data import CoinGeckoMarketData, StaticMarketData, build_market_data
from defi_nlp.core.config import NLPConfig, Settings
from defi_nlp.core.errors import NLPError, ParameterExtractionError, ProcessingError
from defi_nlp.core.logging import JsonFormatter


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NLP_MODE", "strict")
    monkeypatch.setenv("NLP_MIN_CONFIDENCE", "0.6")
    monkeypatch.setenv("NLP_ENABLE_DISAMBIGUATION", "false")
    monkeypatch.setenv("NLP_TIMEOUT_MS", "500")

    config = Settings(_env_file=None).nlp_config()
    assert config.mode == "strict"
    assert config.min_confidence == pytest.approx(0.6)
    assert config.enable_disambiguation is False
    assert config.timeout_ms == 500
    assert config.max_entities == 20


def test_config_defaults_and_bounds() -> None:
    config = NLPConfig()
    assert (config.mode, config.min_confidence, config.timeout_ms) == ("flexible", 0.4, 2000)
    with pytest.raises(pydantic.ValidationError):
        NLPConfig(min_confidence=1.5)
    with pytest.raises(pydantic.ValidationError):
        NLPConfig(mode="loose")


def test_mock_prices_skip_bad_items() -> None:
    settings = Settings(_env_file=None, test_mode=True, mock_prices="sei:0.75, bad ,ETH:x,BTC:65000")
    assert settings.mock_prices_map() == {"SEI": 0.75, "BTC": 65000.0}


@pytest.mark.asyncio
async def test_test_mode_forces_static_prices(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKET_DATA_PROVIDER", "coingecko")
    market = build_market_data(Settings(_env_file=None, test_mode=True, mock_prices="SEI:0.75"))
    assert isinstance(market, StaticMarketData)
    assert await market.get_price("sei") == pytest.approx(0.75)
    assert await market.get_price("USDC") == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_coingecko_selected_outside_test_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKET_DATA_PROVIDER", "coingecko")
    monkeypatch.setenv("PRICE_CACHE_TTL_SEC", "30")
    market = build_market_data(Settings(_env_file=None))
    try:
        assert isinstance(market, CoinGeckoMarketData)
        assert market.ttl_sec == 30
    finally:
        await market.aclose()


def test_error_to_dict_drops_unserializable_details() -> None:
    err = ParameterExtractionError("bad", code="TOO_MANY_TOKENS", details={"tokens": ["USDC", "ETH"], "obj": object()})
    assert isinstance(err, ProcessingError)
    assert err.to_dict() == {
        "error": "ParameterExtractionError",
        "code": "TOO_MANY_TOKENS",
        "message": "bad",
        "details": {"tokens": ["USDC", "ETH"]},
    }
    assert NLPError("x").code == "NLP_ERROR"
    assert ProcessingError("x").code == "PROCESSING_ERROR"


def test_json_formatter_merges_extra_fields() -> None:
    record = logging.LogRecord("defi_nlp.test", logging.INFO, __file__, 1, "command_built", None, None)
    record.event = "command_built"
    record.risk_level = "low"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "command_built"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "defi_nlp.test"
    assert payload["event"] == "command_built"
    assert payload["risk_level"] == "low"
    assert "msg" not in payload
