import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from .config import Config

_INTERVAL_RE = re.compile(r"^(\d+)([smhdw])$", re.IGNORECASE)

_UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def setup_logging(
    level: int, log_dir: Optional[Path] = None, to_file: bool = True
) -> logging.Logger:
    """Configure the `candles` logger with a console and an optional per-run file handler"""
    formatter = logging.Formatter(Config.LOG_FORMAT, Config.LOG_DATE_FORMAT)

    logger: logging.Logger = logging.getLogger("candles")
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        target: Path = log_dir or Config.LOG_DIR
        target.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(
                target / f"candles_{datetime.now():%Y%m%d_%H%M%S}.log", encoding="utf-8"
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Connection pool chatter from requests
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

    return logger


def timeframe_to_ms(interval: str) -> int:
    """Convert an interval string such as '1m' or '4h' to milliseconds"""
    match = _INTERVAL_RE.match(interval)
    if not match:
        raise ValueError(f"Unsupported interval: {interval}")
    return int(match.group(1)) * _UNIT_MS[match.group(2).lower()]


def date_key(timestamp_ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) of a millisecond timestamp"""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime(
        "%Y-%m-%d"
    )


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def month_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def add_months(year: int, month: int, delta: int) -> Tuple[int, int]:
    """Shift a (year, month) pair by delta calendar months"""
    idx: int = year * 12 + (month - 1) + delta
    return idx // 12, idx % 12 + 1
