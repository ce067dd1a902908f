import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Config
from .models import Candle
from .utils import month_key, timeframe_to_ms

log = logging.getLogger("candles.sources")


class NetworkError(Exception):
    """Network-related errors"""

    pass


class HttpStatusError(Exception):
    """Non-success HTTP response"""

    def __init__(self, status_code: int, url: str, reason: str = "") -> None:
        self.status_code: int = status_code
        self.url: str = url
        super().__init__(f"HTTP {status_code} {reason}".strip())


def _new_session(config: Config) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": config.USER_AGENT, "Accept": "*/*"})
    return session


def parse_kline_row(
    row: List[Any], exchange: str, symbol: str, interval: str
) -> Candle:
    """Build a candle from a Binance kline array (REST row or archive CSV row)"""
    open_time: int = int(float(row[0]))
    close_time: int = int(float(row[6]))
    if open_time < 10**12:
        # Seconds resolution
        open_time *= 1000
        close_time *= 1000
    elif open_time >= 10**14:
        # Microseconds resolution
        open_time //= 1000
        close_time //= 1000

    return Candle(
        exchange=exchange,
        symbol=symbol,
        interval=interval,
        open_time=open_time,
        close_time=close_time,
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
        quote_volume=float(row[7]),
        trades=int(float(row[8])),
        taker_buy_base=float(row[9]),
        taker_buy_quote=float(row[10]),
    )


class ArchiveSource:
    """Downloads monthly kline archives from the public data mirror"""

    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        self.config: Config = config
        self.session: requests.Session = session or _new_session(config)

    def month_url(self, year: int, month: int) -> str:
        symbol: str = self.config.SYMBOL.upper()
        interval: str = self.config.INTERVAL
        ym: str = month_key(year, month)
        return (
            f"{self.config.archive_base_url}/monthly/klines/{symbol}/{interval}/"
            f"{symbol}-{interval}-{ym}.zip"
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(NetworkError),
        reraise=True,
    )
    def download_month(self, year: int, month: int, dest: Path) -> Path:
        """Stream one month's archive to dest, following redirects"""
        url: str = self.month_url(year, month)
        dest.parent.mkdir(parents=True, exist_ok=True)

        try:
            log.debug(f"Requesting {url}")
            with self.session.get(
                url,
                stream=True,
                allow_redirects=True,
                timeout=self.config.DOWNLOAD_TIMEOUT,
            ) as response:
                if response.status_code != 200:
                    raise HttpStatusError(response.status_code, url, response.reason or "")

                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=1 << 20):
                        if chunk:
                            f.write(chunk)

            log.info(f"Saved archive to {dest}")
            return dest

        except requests.exceptions.RequestException as e:
            if dest.exists():
                dest.unlink()
            raise NetworkError(f"Network error: {e}") from e


class KlineRestClient:
    """Bounded historical range queries against the klines endpoint"""

    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        self.config: Config = config
        self.session: requests.Session = session or _new_session(config)
        self.interval_ms: int = timeframe_to_ms(config.INTERVAL)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(NetworkError),
        reraise=True,
    )
    def fetch_range(self, start_time: int, end_time: int) -> List[Candle]:
        """Fetch candles whose open time lies in [start_time, end_time], at most 1000"""
        if end_time < start_time:
            return []

        limit: int = min(
            self.config.MAX_CANDLES_PER_REQUEST,
            (end_time - start_time) // self.interval_ms + 1,
        )
        params: Dict[str, Any] = {
            "symbol": self.config.SYMBOL.upper(),
            "interval": self.config.INTERVAL,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }

        try:
            log.debug(f"Fetching {params['symbol']} klines {start_time} -> {end_time}")
            response: requests.Response = self.session.get(
                self.config.rest_url, params=params, timeout=self.config.REQUEST_TIMEOUT
            )
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Network error: {e}") from e

        if response.status_code != 200:
            raise HttpStatusError(response.status_code, response.url, response.reason or "")

        raw: Any = response.json()
        if not isinstance(raw, list):
            return []

        candles: List[Candle] = []
        for row in raw:
            if not isinstance(row, list) or len(row) < 11:
                continue
            try:
                candle: Candle = parse_kline_row(
                    row, self.config.EXCHANGE, params["symbol"], self.config.INTERVAL
                )
            except (TypeError, ValueError):
                continue
            if start_time <= candle.open_time <= end_time:
                candles.append(candle)

        candles.sort(key=lambda c: c.open_time)
        log.info(f"Fetched {len(candles)} candles for {params['symbol']}")
        return candles
