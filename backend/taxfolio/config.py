"""
Application configuration.

Values come from environment variables, optionally loaded from a local
``.env`` file. A ``Settings`` instance is built once by ``get_settings``
and passed explicitly to the components that need it.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DATA_DIR = Path(__file__).parent.parent.parent / "data"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the tax engine and its API."""
    database_url: str = f"sqlite:///{DATA_DIR / 'taxfolio.db'}"
    exchange_rates_path: Optional[Path] = None
    country_data_path: Optional[Path] = None
    reporting_currency: str = "EUR"

    # Resource bounds
    max_upload_size_bytes: int = 10 * 1024 * 1024  # 10MB
    parse_timeout_seconds: float = 30.0
    storage_timeout_seconds: float = 15.0
    parse_workers: int = 4

    # Short selling policy per product type: "reject" or "allow"
    stock_short_policy: str = "reject"
    option_short_policy: str = "allow"

    log_level: str = "INFO"


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


def _env_number(name: str, default, cast):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {value!r}")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build settings from the environment (and an optional .env file)."""
    load_dotenv(env_file)

    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        exchange_rates_path=_env_path("EXCHANGE_RATES_PATH"),
        country_data_path=_env_path("COUNTRY_DATA_PATH"),
        reporting_currency=os.getenv("REPORTING_CURRENCY", defaults.reporting_currency).upper(),
        max_upload_size_bytes=_env_number("MAX_UPLOAD_SIZE_BYTES", defaults.max_upload_size_bytes, int),
        parse_timeout_seconds=_env_number("PARSE_TIMEOUT_SECONDS", defaults.parse_timeout_seconds, float),
        storage_timeout_seconds=_env_number("STORAGE_TIMEOUT_SECONDS", defaults.storage_timeout_seconds, float),
        parse_workers=_env_number("PARSE_WORKERS", defaults.parse_workers, int),
        stock_short_policy=os.getenv("STOCK_SHORT_POLICY", defaults.stock_short_policy).lower(),
        option_short_policy=os.getenv("OPTION_SHORT_POLICY", defaults.option_short_policy).lower(),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )


@lru_cache
def get_settings() -> Settings:
    """Settings for the running application."""
    return load_settings()
