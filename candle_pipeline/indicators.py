from collections import deque
from math import sqrt
from typing import Deque, List, Optional

from .models import BollingerData, MACDData, StochasticData


class EMA:
    """Exponential moving average seeded with the first sample"""

    def __init__(self, period: int) -> None:
        self.period: int = period
        self.multiplier: float = 2 / (period + 1)
        self.value: Optional[float] = None
        self.count: int = 0

    def update(self, close: float) -> Optional[float]:
        self.count += 1

        if self.value is None:
            self.value = close
        else:
            self.value = (close - self.value) * self.multiplier + self.value

        if self.count < self.period:
            return None
        return self.value


class SMA:
    """Simple moving average over a fixed window with a running sum"""

    def __init__(self, period: int) -> None:
        self.period: int = period
        self.window: Deque[float] = deque()
        self.total: float = 0.0

    def update(self, close: float) -> Optional[float]:
        self.window.append(close)
        self.total += close

        if len(self.window) > self.period:
            self.total -= self.window.popleft()

        if len(self.window) < self.period:
            return None
        return self.total / self.period


class RSI:
    """
    Relative Strength Index with Wilder's smoothing.

    The first sample only primes the previous close. The first `period`
    changes are averaged simply; after that each average is updated as
    (avg * (period - 1) + sample) / period.
    """

    def __init__(self, period: int) -> None:
        self.period: int = period
        self.prev: Optional[float] = None
        self.gains: List[float] = []
        self.losses: List[float] = []
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None

    def update(self, close: float) -> Optional[float]:
        if self.prev is None:
            self.prev = close
            return None

        change: float = close - self.prev
        self.prev = close

        gain: float = max(change, 0.0)
        loss: float = max(-change, 0.0)

        if self.avg_gain is None or self.avg_loss is None:
            self.gains.append(gain)
            self.losses.append(loss)

            if len(self.gains) < self.period:
                return None

            self.avg_gain = sum(self.gains) / self.period
            self.avg_loss = sum(self.losses) / self.period
            self.gains.clear()
            self.losses.clear()
        else:
            self.avg_gain = (self.avg_gain * (self.period - 1) + gain) / self.period
            self.avg_loss = (self.avg_loss * (self.period - 1) + loss) / self.period

        return self._value()

    def _value(self) -> float:
        if self.avg_loss == 0:
            return 100.0
        rs: float = self.avg_gain / self.avg_loss
        return 100 - 100 / (1 + rs)


class ATR:
    """
    Average True Range as the simple mean of the last `period` true ranges.

    The first candle has no previous close, so its true range is high - low.
    """

    def __init__(self, period: int = 14) -> None:
        self.period: int = period
        self.prev_close: Optional[float] = None
        self.tr_values: Deque[float] = deque(maxlen=period)

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        tr: float
        if self.prev_close is None:
            tr = high - low
        else:
            tr = max(
                high - low,
                abs(high - self.prev_close),
                abs(low - self.prev_close),
            )
        self.prev_close = close
        self.tr_values.append(tr)

        if len(self.tr_values) < self.period:
            return None
        return sum(self.tr_values) / self.period


class BollingerBands:
    """Bollinger Bands using the population standard deviation"""

    def __init__(self, period: int = 20, std_dev: float = 2.0) -> None:
        self.period: int = period
        self.std_dev: float = std_dev
        self.window: Deque[float] = deque(maxlen=period)

    def update(self, close: float) -> Optional[BollingerData]:
        self.window.append(close)
        if len(self.window) < self.period:
            return None

        mean: float = sum(self.window) / self.period
        variance: float = sum((x - mean) ** 2 for x in self.window) / self.period
        std: float = sqrt(variance)

        upper: float = mean + self.std_dev * std
        lower: float = mean - self.std_dev * std
        pct_b: float = 0.5 if std == 0 else (close - lower) / (upper - lower)

        return BollingerData(upper=upper, middle=mean, lower=lower, pct_b=pct_b)


class MACD:
    """MACD(12, 26, 9): null until both EMAs and the signal EMA are warm"""

    def __init__(self, fast: int = 12, slow: int = 26, signal: int = 9) -> None:
        self.fast_ema: EMA = EMA(fast)
        self.slow_ema: EMA = EMA(slow)
        self.signal_ema: EMA = EMA(signal)

    def update(self, close: float) -> Optional[MACDData]:
        fast: Optional[float] = self.fast_ema.update(close)
        slow: Optional[float] = self.slow_ema.update(close)
        if fast is None or slow is None:
            return None

        macd_line: float = fast - slow
        signal: Optional[float] = self.signal_ema.update(macd_line)
        if signal is None:
            return None

        return MACDData(macd=macd_line, signal=signal, histogram=macd_line - signal)


class Stochastic:
    """Stochastic oscillator: %K over k_period highs/lows, %D as mean of %K"""

    def __init__(self, k_period: int = 14, d_period: int = 3) -> None:
        self.k_period: int = k_period
        self.d_period: int = d_period
        self.highs: Deque[float] = deque(maxlen=k_period)
        self.lows: Deque[float] = deque(maxlen=k_period)
        self.k_values: Deque[float] = deque(maxlen=d_period)

    def update(self, high: float, low: float, close: float) -> Optional[StochasticData]:
        self.highs.append(high)
        self.lows.append(low)
        if len(self.highs) < self.k_period:
            return None

        highest_high: float = max(self.highs)
        lowest_low: float = min(self.lows)
        k: float
        if highest_high == lowest_low:
            k = 50.0
        else:
            k = (close - lowest_low) / (highest_high - lowest_low) * 100

        self.k_values.append(k)
        d: float = sum(self.k_values) / len(self.k_values)
        return StochasticData(k=k, d=d)


class ROC:
    """Rate of change in percent versus the close `period` samples back"""

    def __init__(self, period: int = 10) -> None:
        self.period: int = period
        self.window: Deque[float] = deque(maxlen=period + 1)

    def update(self, close: float) -> Optional[float]:
        self.window.append(close)
        if len(self.window) <= self.period:
            return None

        prev: float = self.window[0]
        return 0.0 if prev == 0 else (close - prev) / prev * 100


class ADX:
    """
    Average Directional Index from Wilder's directional movement.

    The first candle only primes the previous high/low/close. Each later
    candle contributes +DM/-DM (only the larger survives) and a true range to
    period-window sums; DX is averaged over the last `period` values.
    """

    def __init__(self, period: int = 14) -> None:
        self.period: int = period
        self.prev_high: Optional[float] = None
        self.prev_low: Optional[float] = None
        self.prev_close: Optional[float] = None
        self.dm_plus_values: Deque[float] = deque(maxlen=period)
        self.dm_minus_values: Deque[float] = deque(maxlen=period)
        self.tr_values: Deque[float] = deque(maxlen=period)
        self.dx_values: Deque[float] = deque(maxlen=period)

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        if self.prev_high is None or self.prev_low is None or self.prev_close is None:
            self.prev_high = high
            self.prev_low = low
            self.prev_close = close
            return None

        dm_plus: float = max(high - self.prev_high, 0.0)
        dm_minus: float = max(self.prev_low - low, 0.0)
        tr: float = max(
            high - low,
            abs(high - self.prev_close),
            abs(low - self.prev_close),
        )

        self.dm_plus_values.append(dm_plus if dm_plus > dm_minus else 0.0)
        self.dm_minus_values.append(dm_minus if dm_minus > dm_plus else 0.0)
        self.tr_values.append(tr)

        self.prev_high = high
        self.prev_low = low
        self.prev_close = close

        if len(self.tr_values) < self.period:
            return None

        sum_tr: float = sum(self.tr_values)
        di_plus: float = 0.0 if sum_tr == 0 else sum(self.dm_plus_values) / sum_tr * 100
        di_minus: float = 0.0 if sum_tr == 0 else sum(self.dm_minus_values) / sum_tr * 100
        di_sum: float = di_plus + di_minus
        dx: float = 0.0 if di_sum == 0 else abs(di_plus - di_minus) / di_sum * 100

        self.dx_values.append(dx)
        return sum(self.dx_values) / len(self.dx_values)
