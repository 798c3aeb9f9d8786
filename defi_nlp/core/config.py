from functools import lru_cache
from typing import Dict, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class NLPConfig(BaseModel):
    """Knobs consumed by the extractor, classifier and parser."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["strict", "flexible", "experimental"] = "flexible"
    min_confidence: float = Field(default=0.4, ge=0.0, le=1.0)
    enable_disambiguation: bool = True
    max_entities: int = Field(default=20, ge=1)
    timeout_ms: int = Field(default=2000, ge=1)
    fallback_to_keywords: bool = True
    max_input_length: int = Field(default=10_000, ge=1)
    disambiguation_timeout_ms: int = Field(default=30_000, ge=1)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "defi-nlp"
    env: str = "dev"
    log_level: str = "INFO"
    log_json: bool = Field(default=True, alias="LOG_JSON")

    nlp_mode: Literal["strict", "flexible", "experimental"] = Field(default="flexible", alias="NLP_MODE")
    nlp_min_confidence: float = Field(default=0.4, alias="NLP_MIN_CONFIDENCE")
    nlp_enable_disambiguation: bool = Field(default=True, alias="NLP_ENABLE_DISAMBIGUATION")
    nlp_max_entities: int = Field(default=20, alias="NLP_MAX_ENTITIES")
    nlp_timeout_ms: int = Field(default=2000, alias="NLP_TIMEOUT_MS")
    nlp_fallback_to_keywords: bool = Field(default=True, alias="NLP_FALLBACK_TO_KEYWORDS")
    nlp_max_input_length: int = Field(default=10_000, alias="NLP_MAX_INPUT_LENGTH")
    disambiguation_timeout_ms: int = Field(default=30_000, alias="DISAMBIGUATION_TIMEOUT_MS")

    # "static" serves in-memory tables, "coingecko" queries the public price API
    market_data_provider: Literal["static", "coingecko"] = Field(default="static", alias="MARKET_DATA_PROVIDER")
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3", alias="COINGECKO_BASE_URL")
    coingecko_api_key: str = Field(default="", alias="COINGECKO_API_KEY")
    price_cache_ttl_sec: int = Field(default=15, alias="PRICE_CACHE_TTL_SEC")

    test_mode: bool = False
    mock_prices: str = ""

    def nlp_config(self) -> NLPConfig:
        return NLPConfig(
            mode=self.nlp_mode,
            min_confidence=self.nlp_min_confidence,
            enable_disambiguation=self.nlp_enable_disambiguation,
            max_entities=self.nlp_max_entities,
            timeout_ms=self.nlp_timeout_ms,
            fallback_to_keywords=self.nlp_fallback_to_keywords,
            max_input_length=self.nlp_max_input_length,
            disambiguation_timeout_ms=self.disambiguation_timeout_ms,
        )

    def mock_prices_map(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for item in self.mock_prices.split(","):
            if ":" not in item:
                continue
            k, v = item.split(":", 1)
            try:
                out[k.strip().upper()] = float(v)
            except ValueError:
                continue
        return out


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
