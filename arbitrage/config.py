from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from pydantic import BaseModel, Field

PEER_COUNTRIES = [
    "Singapore",
    "Denmark",
    "Israel",
    "Estonia",
    "Finland",
    "Netherlands",
    "New Zealand",
    "South Korea",
    "United Kingdom",
]

IRISH_DOMAINS = [
    "gov.ie",
    "oireachtas.ie",
    "enterprise.gov.ie",
    "dbei.gov.ie",
    "irishtimes.com",
    "independent.ie",
    "rte.ie",
    "siliconrepublic.com",
    "businesspost.ie",
    "thejournal.ie",
]

IRISH_INSTITUTIONS = ["Enterprise Ireland", "IDA Ireland", "Science Foundation Ireland"]


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("ARBITRAGE_DB_PATH", "").strip()
            or Path(__file__).parent / "data" / "arbitrage.db"
        )
    )

    perplexity_api_key: str = Field(default_factory=lambda: os.getenv("PERPLEXITY_API_KEY", ""))
    perplexity_model: str = Field(default_factory=lambda: os.getenv("PERPLEXITY_MODEL", "sonar-pro"))
    perplexity_url: str = "https://api.perplexity.ai/chat/completions"
    request_timeout_seconds: float = 60.0

    redis_url: str = Field(default_factory=lambda: os.getenv("REDIS_URL", ""))
    cron_secret: str = Field(default_factory=lambda: os.getenv("CRON_SECRET", ""))

    cache_ttl_seconds: int = 86400
    rate_limit_delay_seconds: float = 0.2
    max_retries: int = 3
    retry_base_delay_seconds: float = 0.2
    rate_limit_cooldown_seconds: float = 5.0

    batch_size: int = 3
    batch_delay_seconds: float = 0.2

    domestic_country: str = Field(default_factory=lambda: os.getenv("DOMESTIC_COUNTRY", "Ireland"))
    domestic_domains: list[str] = Field(default_factory=lambda: _env_list("DOMESTIC_DOMAINS", IRISH_DOMAINS))
    domestic_institutions: list[str] = Field(
        default_factory=lambda: _env_list("DOMESTIC_INSTITUTIONS", IRISH_INSTITUTIONS)
    )
    peer_countries: list[str] = Field(default_factory=lambda: list(PEER_COUNTRIES))

    @property
    def searchable_countries(self) -> list[str]:
        return [self.domestic_country, *self.peer_countries]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
