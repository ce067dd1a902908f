from typing import List, Optional

from .indicators import ADX, ATR, EMA, MACD, ROC, RSI, SMA, BollingerBands, Stochastic
from .models import BollingerData, Candle, IndicatorPoint, MACDData, StochasticData


class CandleSeries:
    """
    Bounded, indicator-annotated window over a candle stream.

    Points are stored in a list with a moving head offset so that dropping the
    oldest entries is amortised O(1); the backing list is compacted once the
    dead prefix outgrows the live part.
    """

    def __init__(self, max_points: int = 5000) -> None:
        if max_points <= 0:
            raise ValueError("max_points must be positive")
        self.max_points: int = max_points
        self._points: List[IndicatorPoint] = []
        self._head: int = 0

        self.ema6: EMA = EMA(6)
        self.ema50: EMA = EMA(50)
        self.sma200: SMA = SMA(200)
        self.rsi14: RSI = RSI(14)
        self.atr14: ATR = ATR(14)
        self.bb20: BollingerBands = BollingerBands(20, 2)
        self.macd: MACD = MACD()
        self.stoch: Stochastic = Stochastic(14, 3)
        self.roc10: ROC = ROC(10)
        self.adx14: ADX = ADX(14)

    def push(self, candle: Candle) -> IndicatorPoint:
        """Run a candle through every indicator and append the result"""
        bb: Optional[BollingerData] = self.bb20.update(candle.close)
        macd: Optional[MACDData] = self.macd.update(candle.close)
        stoch: Optional[StochasticData] = self.stoch.update(candle.high, candle.low, candle.close)

        point: IndicatorPoint = IndicatorPoint(
            candle=candle,
            ema6=self.ema6.update(candle.close),
            ema50=self.ema50.update(candle.close),
            sma200=self.sma200.update(candle.close),
            rsi14=self.rsi14.update(candle.close),
            atr14=self.atr14.update(candle.high, candle.low, candle.close),
            bb_pct_b=bb.pct_b if bb else None,
            bb_upper=bb.upper if bb else None,
            bb_lower=bb.lower if bb else None,
            macd_hist=macd.histogram if macd else None,
            macd_signal=macd.signal if macd else None,
            stoch_k=stoch.k if stoch else None,
            stoch_d=stoch.d if stoch else None,
            roc10=self.roc10.update(candle.close),
            adx14=self.adx14.update(candle.high, candle.low, candle.close),
        )

        self._points.append(point)
        if len(self) > self.max_points:
            self._drop_front(len(self) - self.max_points)

        return point

    def __len__(self) -> int:
        return len(self._points) - self._head

    @property
    def length(self) -> int:
        return len(self)

    def at(self, index: int) -> IndicatorPoint:
        if index < 0 or index >= len(self):
            raise IndexError(f"Series index out of range: {index}")
        return self._points[self._head + index]

    def last_index_before(self, close_time: int) -> int:
        """Index of the last point whose close time is <= close_time, or -1"""
        lo: int = 0
        hi: int = len(self) - 1
        ans: int = -1

        while lo <= hi:
            mid: int = (lo + hi) // 2
            if self.at(mid).candle.close_time <= close_time:
                ans = mid
                lo = mid + 1
            else:
                hi = mid - 1

        return ans

    def trim_to_last(self, max_points: int) -> None:
        """Keep only the newest max_points entries (<= 0 clears the series)"""
        if max_points <= 0:
            self._points = []
            self._head = 0
            return

        if len(self) > max_points:
            self._drop_front(len(self) - max_points)

    def to_list(self) -> List[IndicatorPoint]:
        return self._points[self._head:]

    def _drop_front(self, count: int) -> None:
        self._head += count
        if self._head >= len(self._points) - self._head:
            del self._points[:self._head]
            self._head = 0
