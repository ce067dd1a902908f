import logging
import os
from pathlib import Path
from typing import Dict, List, Tuple


class Config:
    """Centralized configuration management"""
    # Stream identity
    EXCHANGE: str = "binance"
    SYMBOL: str = "BTCUSDT"
    INTERVAL: str = "1m"
    PIVOT_LEN: int = 3

    # Derived timeframes (only those coarser than INTERVAL are built)
    DERIVED_INTERVALS: List[str] = ["3m", "5m", "7m", "15m", "1h", "4h", "1d"]

    # REST API settings
    REST_BASE_URLS: Dict[str, str] = {
        "binance": "https://data-api.binance.vision",
        "binance_us": "https://api.binance.us",
    }
    REST_ENDPOINT: str = "/api/v3/klines"
    MAX_CANDLES_PER_REQUEST: int = 1000
    REQUEST_TIMEOUT: float = 15.0

    # Monthly archive settings
    ARCHIVE_BASE_URLS: Dict[str, str] = {
        "binance": "https://data.binance.vision/data/spot",
        "binance_us": "https://data.binance.us/public_data/spot",
    }
    DOWNLOAD_TIMEOUT: float = 60.0
    USER_AGENT: str = "candle-pipeline/1.0"

    # Backfill settings
    BACKFILL_MAX_MONTHS: int = 600
    BACKFILL_DEFAULT_START: Tuple[int, int] = (2024, 12)
    BACKFILL_MIN_YEAR: int = 2017
    BACKFILL_MAX_YEAR: int = 2030
    NOT_FOUND_LIMIT_AFTER_DATA: int = 3
    NOT_FOUND_LIMIT_NO_DATA: int = 12
    REBUILD_AFTER_BACKFILL: bool = True

    # Gap repair
    GAP_REPAIR_MAX_CANDLES: int = 120

    # Memory bounds
    MAX_SERIES_POINTS: int = 5000
    REBUILD_TRIM_THRESHOLD: int = 500
    REBUILD_TRIM_TO: int = 300
    SEED_CANDLES: int = 900

    # Data persistence
    DATA_DIR: Path = Path("data")

    # Logging
    LOG_LEVEL: int = logging.INFO
    LOG_FORMAT: str = "%(asctime)s | %(name)-20s | %(levelname)-8s | %(message)s"
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_DIR: Path = Path("logs")

    @property
    def rest_url(self) -> str:
        base: str = self.REST_BASE_URLS.get(self.EXCHANGE, self.REST_BASE_URLS["binance"])
        return f"{base}{self.REST_ENDPOINT}"

    @property
    def archive_base_url(self) -> str:
        return self.ARCHIVE_BASE_URLS.get(
            self.EXCHANGE, self.ARCHIVE_BASE_URLS["binance"]
        )

    @classmethod
    def from_env(cls) -> "Config":
        """Build a config with CANDLES_* environment overrides applied"""
        config = cls()
        env = os.environ

        if "CANDLES_EXCHANGE" in env:
            raw: str = env["CANDLES_EXCHANGE"].lower()
            config.EXCHANGE = (
                "binance_us" if raw in ("binance_us", "binanceus", "us") else "binance"
            )
        if "CANDLES_SYMBOL" in env:
            config.SYMBOL = env["CANDLES_SYMBOL"].upper()
        if "CANDLES_INTERVAL" in env:
            config.INTERVAL = env["CANDLES_INTERVAL"]
        if "CANDLES_PIVOT_LEN" in env:
            config.PIVOT_LEN = max(1, int(env["CANDLES_PIVOT_LEN"]))
        if "CANDLES_DATA_DIR" in env:
            config.DATA_DIR = Path(env["CANDLES_DATA_DIR"])
        if "CANDLES_GAP_REPAIR_MAX_CANDLES" in env:
            config.GAP_REPAIR_MAX_CANDLES = max(
                0, int(env["CANDLES_GAP_REPAIR_MAX_CANDLES"])
            )
        if "CANDLES_BACKFILL_MAX_MONTHS" in env:
            config.BACKFILL_MAX_MONTHS = max(1, int(env["CANDLES_BACKFILL_MAX_MONTHS"]))
        if "CANDLES_SEED_CANDLES" in env:
            config.SEED_CANDLES = max(300, int(env["CANDLES_SEED_CANDLES"]))

        return config
