"""
Configuration settings for backtest runs.

**Conceptual**: Strongly-typed configuration objects loaded from environment
variables (via .env files). Every section validates itself on construction, so
a bad value fails at startup instead of halfway through a universe run.

**Sections**:
  - PriceApiSettings: where price histories come from (optional; CSV runs
    don't need it).
  - StorageSettings: local directories for price CSVs and result documents.
  - BacktestSettings: concurrency caps, regime instrument, portfolio budget,
    fee model and open-position policy.
  - LoggingSettings: level and optional log file.

Library code never reads the environment itself; entry points load Settings
and pass the relevant values down.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Load .env from project root (dev/local environments)
load_dotenv(dotenv_path=Path(__file__).parent.parent.parent / ".env")


OPEN_POSITION_POLICIES = ('optimistic', 'conservative', 'exclude')
SELECTION_METHODS = ('random', 'best', 'worst')


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw}")


@dataclass(frozen=True)
class PriceApiSettings:
    """
    Configuration for the price-history GraphQL API.

    Attributes:
        api_url: Base URL of the API (REQUIRED).
        api_endpoint: Path of the GraphQL endpoint (default "/graphql").
        auth_token: Optional bearer token.
        timeout_seconds: HTTP request timeout (default 30).
    """
    api_url: str
    api_endpoint: str = "/graphql"
    auth_token: Optional[str] = None
    timeout_seconds: int = 30

    def __post_init__(self):
        if not self.api_url:
            raise ValueError(
                "PRICE_API_URL is required but not set. "
                "Please set it in your .env file or environment variables."
            )
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")

    @classmethod
    def from_env(cls) -> "PriceApiSettings":
        """
        Environment variables:
          - PRICE_API_URL (required)
          - PRICE_API_ENDPOINT (default "/graphql")
          - PRICE_API_TOKEN (optional)
          - PRICE_API_TIMEOUT_SECONDS (default 30)
        """
        return cls(
            api_url=os.getenv("PRICE_API_URL", ""),
            api_endpoint=os.getenv("PRICE_API_ENDPOINT", "/graphql"),
            auth_token=os.getenv("PRICE_API_TOKEN") or None,
            timeout_seconds=_env_int("PRICE_API_TIMEOUT_SECONDS", 30),
        )


@dataclass(frozen=True)
class StorageSettings:
    """
    Local directories.

    Attributes:
        price_data_dir: Price CSVs for the CSV provider (PRICE_DATA_DIR).
        document_dir: Root of the JSON document store (DOCUMENT_STORE_DIR).
    """
    price_data_dir: Path = Path("data/prices")
    document_dir: Path = Path("data/documents")

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            price_data_dir=Path(os.getenv("PRICE_DATA_DIR", "data/prices")),
            document_dir=Path(os.getenv("DOCUMENT_STORE_DIR", "data/documents")),
        )


@dataclass(frozen=True)
class BacktestSettings:
    """
    Parameters of a universe backtest and its portfolio replay.

    Attributes:
        concurrent_tests: Instruments tested in parallel (CONCURRENT_TESTS, 8).
        timeline_concurrency: Parallel fetches during timeline generation
            (TIMELINE_CONCURRENCY, 10).
        regime_instrument_id: Reference instrument for the regime filter and
            the timeline calendar (REGIME_INSTRUMENT_ID, 19002).
        start_capital: Portfolio starting cash (START_CAPITAL, 100000).
        max_number_of_stocks: Position slots (MAX_NUMBER_OF_STOCKS, 20).
        selection_method: random | best | worst (SELECTION_METHOD, random).
        fee_percentage: Fee as a fraction of amount (FEE_PERCENTAGE, 0.0025).
        fee_minimum: Minimum fee per transaction (FEE_MINIMUM, 1).
        open_position_policy: optimistic | conservative | exclude
            (OPEN_POSITION_POLICY, optimistic).
        seed: Optional seed for random selection (SELECTION_SEED).
    """
    concurrent_tests: int = 8
    timeline_concurrency: int = 10
    regime_instrument_id: str = "19002"
    start_capital: float = 100_000.0
    max_number_of_stocks: int = 20
    selection_method: str = "random"
    fee_percentage: float = 0.0025
    fee_minimum: float = 1.0
    open_position_policy: str = "optimistic"
    seed: Optional[int] = None

    def __post_init__(self):
        if self.concurrent_tests < 1 or self.timeline_concurrency < 1:
            raise ValueError("Concurrency settings must be >= 1")
        if self.start_capital <= 0:
            raise ValueError(f"START_CAPITAL must be > 0, got {self.start_capital}")
        if self.max_number_of_stocks < 1:
            raise ValueError(f"MAX_NUMBER_OF_STOCKS must be >= 1, got {self.max_number_of_stocks}")
        if self.selection_method not in SELECTION_METHODS:
            raise ValueError(
                f"SELECTION_METHOD must be one of {SELECTION_METHODS}, got: {self.selection_method}"
            )
        if self.open_position_policy not in OPEN_POSITION_POLICIES:
            raise ValueError(
                f"OPEN_POSITION_POLICY must be one of {OPEN_POSITION_POLICIES}, got: {self.open_position_policy}"
            )
        if self.fee_percentage < 0 or self.fee_minimum < 0:
            raise ValueError("Fee settings must be >= 0")

    @classmethod
    def from_env(cls) -> "BacktestSettings":
        seed_raw = os.getenv("SELECTION_SEED")
        return cls(
            concurrent_tests=_env_int("CONCURRENT_TESTS", 8),
            timeline_concurrency=_env_int("TIMELINE_CONCURRENCY", 10),
            regime_instrument_id=os.getenv("REGIME_INSTRUMENT_ID", "19002"),
            start_capital=_env_float("START_CAPITAL", 100_000.0),
            max_number_of_stocks=_env_int("MAX_NUMBER_OF_STOCKS", 20),
            selection_method=os.getenv("SELECTION_METHOD", "random").lower(),
            fee_percentage=_env_float("FEE_PERCENTAGE", 0.0025),
            fee_minimum=_env_float("FEE_MINIMUM", 1.0),
            open_position_policy=os.getenv("OPEN_POSITION_POLICY", "optimistic").lower(),
            seed=_env_int("SELECTION_SEED", 0) if seed_raw else None,
        )


@dataclass(frozen=True)
class LoggingSettings:
    """LOG_LEVEL (default INFO) and optional LOG_FILE."""
    level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )


@dataclass(frozen=True)
class Settings:
    """
    Global settings aggregating all sections.

    Attributes:
        price_api: Price API settings, or None when not configured.
        storage: Local directories.
        backtest: Backtest and portfolio parameters.
        logging: Logging configuration.
    """
    price_api: Optional[PriceApiSettings] = None
    storage: StorageSettings = field(default_factory=StorageSettings)
    backtest: BacktestSettings = field(default_factory=BacktestSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, require_price_api: bool = False) -> "Settings":
        """
        Load all sections from the environment.

        Args:
            require_price_api: Raise if PRICE_API_URL is missing instead of
                leaving `price_api` as None.

        Raises:
            ValueError: On invalid values, or a missing required price API.
        """
        price_api = None
        try:
            price_api = PriceApiSettings.from_env()
        except ValueError as e:
            if require_price_api:
                raise ValueError(f"Price API settings are required but could not be loaded: {e}")

        return cls(
            price_api=price_api,
            storage=StorageSettings.from_env(),
            backtest=BacktestSettings.from_env(),
            logging=LoggingSettings.from_env(),
        )


_default_settings: Optional[Settings] = None


def get_settings(require_price_api: bool = False) -> Settings:
    """
    Get the lazily loaded global settings.

    Raises:
        ValueError: If require_price_api=True and the price API is not configured.
    """
    global _default_settings

    if _default_settings is None:
        _default_settings = Settings.from_env(require_price_api=require_price_api)

    if require_price_api and _default_settings.price_api is None:
        raise ValueError(
            "Price API settings are required but not configured. "
            "Please set PRICE_API_URL in your .env file."
        )

    return _default_settings


def reset_settings():
    """Clear the cached settings (for tests)."""
    global _default_settings
    _default_settings = None
