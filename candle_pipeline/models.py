from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Record(BaseModel):
    """Base for models persisted as camelCase JSON lines"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Candle(_Record):
    """Individual kline/candle data"""
    exchange: str
    symbol: str
    interval: str
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    quote_volume: float = 0.0
    trades: int = 0
    taker_buy_base: float = 0.0
    taker_buy_quote: float = 0.0

    @property
    def timestamp_utc(self) -> datetime:
        """Get open timestamp as UTC datetime"""
        return datetime.fromtimestamp(self.open_time / 1000, tz=timezone.utc)

    def __str__(self) -> str:
        ts: datetime = self.timestamp_utc
        return (f"{ts:%Y-%m-%d %H:%M:%S} | "
                f"O: {self.open:.2f} | H: {self.high:.2f} | "
                f"L: {self.low:.2f} | C: {self.close:.2f} | "
                f"V: {self.volume:.2f}")


class IndicatorPoint(_Record):
    """A candle together with the indicator values computed when it arrived"""
    candle: Candle
    ema6: Optional[float] = None
    ema50: Optional[float] = None
    sma200: Optional[float] = None
    rsi14: Optional[float] = None
    atr14: Optional[float] = None
    bb_pct_b: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_lower: Optional[float] = None
    macd_hist: Optional[float] = None
    macd_signal: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    roc10: Optional[float] = None
    adx14: Optional[float] = None


class SwingType(str, Enum):
    HIGH = "high"
    LOW = "low"


class SwingDetection(BaseModel):
    swing_type: SwingType
    price: float


class SwingEvent(_Record):
    """Confirmed pivot, identified deterministically"""
    id: str
    exchange: str
    symbol: str
    base_interval: str
    pivot_len: int
    swing_type: SwingType
    open_time: int
    close_time: int
    price: float
    features: Dict[str, Any] = Field(default_factory=dict)


class GapRecord(_Record):
    """Discontinuity between two consecutive stored candles"""
    expected_open_time: int
    actual_open_time: int
    missing_candles: int


class BollingerData(BaseModel):
    upper: float
    middle: float
    lower: float
    pct_b: float


class MACDData(BaseModel):
    macd: float
    signal: float
    histogram: float


class StochasticData(BaseModel):
    k: float
    d: float


class JobState(str, Enum):
    """Maintenance job lifecycle"""
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.ERROR, JobState.STOPPED)


class JobProgress(BaseModel):
    state: JobState = JobState.IDLE
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    message: Optional[str] = None
    last_error: Optional[str] = None


class BackfillProgress(JobProgress):
    current_month: Optional[str] = None
    current_url: Optional[str] = None
    months_processed: int = 0
    days_written: int = 0
    candles_ingested: int = 0


class ReconcileProgress(JobProgress):
    current_file: Optional[str] = None
    days_scanned: int = 0
    gaps_found: int = 0
    gaps_repaired: int = 0
    gaps_skipped: int = 0
    candles_repaired: int = 0
    gaps: List[GapRecord] = Field(default_factory=list)


class RebuildProgress(JobProgress):
    current_file: Optional[str] = None
    days_processed: int = 0
    base_candles_processed: int = 0
    agg_candles_written: int = 0
    swing_events_written: int = 0


class LiveStats(BaseModel):
    """Live ingestion counters"""
    candles_written: int = 0
    candles_ignored: int = 0
    gaps_found: int = 0
    gaps_repaired: int = 0
    swings_found: int = 0
    agg_candles_written: int = 0
    last_final_open_time: Optional[int] = None

    def __str__(self) -> str:
        return (f"Candles: {self.candles_written} (Ignored: {self.candles_ignored}) | "
                f"Gaps: {self.gaps_found} (Repaired: {self.gaps_repaired}) | "
                f"Swings: {self.swings_found} | Aggregates: {self.agg_candles_written}")


class DataStatus(BaseModel):
    """Inventory of one stored timeframe"""
    symbol: str
    timeframe: str
    candle_files: int = 0
    swing_files: int = 0
    total_candles: int = 0
    total_swings: int = 0
    oldest_day: Optional[str] = None
    newest_day: Optional[str] = None
    size_bytes: int = 0
    insufficient_data: bool = False
