"""Shared fixtures for the candle pipeline test suite."""

import io
import zipfile
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from candle_pipeline.config import Config
from candle_pipeline.models import Candle
from candle_pipeline.sources import HttpStatusError

# 2024-01-01T00:00:00Z
BASE_TIME = 1704067200000
MINUTE = 60_000


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config writing into a throwaway data directory"""
    cfg = Config()
    cfg.DATA_DIR = tmp_path / "data"
    cfg.LOG_DIR = tmp_path / "logs"
    return cfg


def build_candle(
    open_time: int,
    close: float = 100.0,
    high: Optional[float] = None,
    low: Optional[float] = None,
    open_: Optional[float] = None,
    interval: str = "1m",
    volume: float = 1.0,
) -> Candle:
    return Candle(
        exchange="binance",
        symbol="BTCUSDT",
        interval=interval,
        open_time=open_time,
        close_time=open_time + MINUTE - 1,
        open=close if open_ is None else open_,
        high=close + 1 if high is None else high,
        low=close - 1 if low is None else low,
        close=close,
        volume=volume,
        quote_volume=volume * close,
        trades=1,
        taker_buy_base=volume / 2,
        taker_buy_quote=volume * close / 2,
    )


@pytest.fixture
def make_candle() -> Callable[..., Candle]:
    return build_candle


def kline_row(open_time: int, close: float = 100.0) -> List[str]:
    """One archive CSV row in exchange column order"""
    return [
        str(open_time), f"{close}", f"{close + 1}", f"{close - 1}", f"{close}",
        "1.5", str(open_time + MINUTE - 1), f"{1.5 * close}", "10", "0.75",
        f"{0.75 * close}", "0",
    ]


def build_zip(rows: List[List[str]], member: str = "BTCUSDT-1m-2024-12.csv") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(member, "\n".join(",".join(r) for r in rows) + "\n")
    return buf.getvalue()


class FakeArchiveSource:
    """Archive source serving canned zips by month, 404 for everything else"""

    def __init__(self, archives=None, status_code: int = 404, gate=None) -> None:
        self.archives = archives or {}
        self.status_code = status_code
        self.gate = gate
        self.calls: List[str] = []

    def month_url(self, year: int, month: int) -> str:
        return f"https://archive.test/{year}-{month:02d}.zip"

    def download_month(self, year: int, month: int, dest: Path) -> Path:
        ym = f"{year}-{month:02d}"
        self.calls.append(ym)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if ym not in self.archives:
            raise HttpStatusError(self.status_code, self.month_url(year, month))
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.archives[ym])
        return dest


class FakeRestClient:
    """Range client answering from a generator of candles"""

    def __init__(self, skip=(), fail: bool = False) -> None:
        self.skip = set(skip)
        self.fail = fail
        self.calls: List[tuple] = []

    def fetch_range(self, start_time: int, end_time: int) -> List[Candle]:
        self.calls.append((start_time, end_time))
        if self.fail:
            raise ConnectionError("exchange unreachable")
        return [
            build_candle(t, close=200.0)
            for t in range(start_time, end_time + 1, MINUTE)
            if t not in self.skip
        ]
