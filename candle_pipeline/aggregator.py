import logging
from typing import Optional

from .models import Candle
from .utils import timeframe_to_ms

log = logging.getLogger("candles.aggregator")


class TimeframeBuilder:
    """Rolls a base-interval candle stream up into a coarser interval"""

    def __init__(self, interval: str) -> None:
        self.interval: str = interval
        self.ms: int = timeframe_to_ms(interval)
        self.current: Optional[Candle] = None

    def bucket_open_time(self, open_time: int) -> int:
        return (open_time // self.ms) * self.ms

    def update(self, base: Candle) -> Optional[Candle]:
        """
        Add a base candle to the in-progress bucket.
        Returns the previous bucket once a candle from a new bucket arrives,
        None while the bucket is still open.
        """
        bucket_open: int = self.bucket_open_time(base.open_time)

        if self.current is None or self.current.open_time != bucket_open:
            closed: Optional[Candle] = self.current
            self.current = Candle(
                exchange=base.exchange,
                symbol=base.symbol,
                interval=self.interval,
                open_time=bucket_open,
                close_time=bucket_open + self.ms - 1,
                open=base.open,
                high=base.high,
                low=base.low,
                close=base.close,
                volume=base.volume,
                quote_volume=base.quote_volume,
                trades=base.trades,
                taker_buy_base=base.taker_buy_base,
                taker_buy_quote=base.taker_buy_quote,
            )
            if closed is not None:
                log.debug(f"{self.interval} bucket closed: {closed}")
            return closed

        cur: Candle = self.current
        self.current = cur.model_copy(
            update={
                "high": max(cur.high, base.high),
                "low": min(cur.low, base.low),
                "close": base.close,
                "volume": cur.volume + base.volume,
                "quote_volume": cur.quote_volume + base.quote_volume,
                "trades": cur.trades + base.trades,
                "taker_buy_base": cur.taker_buy_base + base.taker_buy_base,
                "taker_buy_quote": cur.taker_buy_quote + base.taker_buy_quote,
            }
        )
        return None

    def clear(self) -> None:
        self.current = None
