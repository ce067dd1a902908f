from typing import Any, Callable, Dict, Optional

from .models import Candle, IndicatorPoint, SwingDetection, SwingEvent, SwingType
from .series import CandleSeries

FeatureExtractor = Callable[[IndicatorPoint], Dict[str, Any]]


def detect_swing_at(
    series: CandleSeries, pivot_len: int, index: int
) -> Optional[SwingDetection]:
    """
    Classify the candle at `index` as a pivot high, pivot low, or neither.

    Needs `pivot_len` neighbours on both sides. The pivot must be strictly
    above (high) or strictly below (low) every neighbour; ties disqualify and
    a candle that is both or neither yields no swing.
    """
    if index < pivot_len:
        return None
    if index + pivot_len >= len(series):
        return None

    pivot: Candle = series.at(index).candle

    is_high: bool = True
    is_low: bool = True

    for i in range(index - pivot_len, index + pivot_len + 1):
        if i == index:
            continue

        c: Candle = series.at(i).candle
        if c.high >= pivot.high:
            is_high = False
        if c.low <= pivot.low:
            is_low = False

        if not is_high and not is_low:
            break

    if is_high == is_low:
        return None
    if is_high:
        return SwingDetection(swing_type=SwingType.HIGH, price=pivot.high)
    return SwingDetection(swing_type=SwingType.LOW, price=pivot.low)


def swing_id(
    exchange: str, symbol: str, interval: str, pivot_len: int,
    swing_type: SwingType, open_time: int,
) -> str:
    return f"{exchange}:{symbol.lower()}:{interval}:p{pivot_len}:{swing_type.value}:{open_time}"


INDICATOR_FLAG_RULES = {
    "bb_overbought": ("bb_pct_b", lambda v: v > 1),
    "bb_oversold": ("bb_pct_b", lambda v: v < 0),
    "macd_bullish": ("macd_hist", lambda v: v > 0),
    "stoch_overbought": ("stoch_k", lambda v: v > 80),
    "stoch_oversold": ("stoch_k", lambda v: v < 20),
    "strong_trend": ("adx14", lambda v: v > 25),
    "momentum_positive": ("roc10", lambda v: v > 0),
}


def indicator_features(point: IndicatorPoint) -> Dict[str, Any]:
    """
    Default feature map: the indicator snapshot at the pivot, boolean signals
    derived from it, and the shape of the pivot candle.

    A signal whose source indicator is still warming up is None.
    """
    c: Candle = point.candle
    features: Dict[str, Any] = point.model_dump(exclude={"candle"})

    for name, (source, rule) in INDICATOR_FLAG_RULES.items():
        value: Optional[float] = getattr(point, source)
        features[name] = rule(value) if value is not None else None

    features["high_volatility"] = (
        point.atr14 / c.close * 100 > 1
        if point.atr14 is not None and c.close != 0
        else None
    )
    features["ema6_gt_ema50"] = (
        point.ema6 > point.ema50
        if point.ema6 is not None and point.ema50 is not None
        else None
    )
    features["close_gt_sma200"] = c.close > point.sma200 if point.sma200 is not None else None
    features["close_sma200_pct"] = (
        (c.close - point.sma200) / point.sma200 * 100 if point.sma200 else None
    )

    candle_range: float = c.high - c.low
    features["range_pct"] = candle_range / c.close * 100 if c.close != 0 else None
    features["body_pct"] = abs(c.close - c.open) / c.close * 100 if c.close != 0 else None
    # Zero-range candles count as doji against a unit range
    features["is_doji"] = (
        abs(c.close - c.open) / (candle_range or 1) < 0.1 if c.close != 0 else None
    )
    features["is_hammer"] = (
        (min(c.open, c.close) - c.low) / candle_range > 0.6
        if c.close != 0 and candle_range > 0
        else None
    )
    return features


def build_swing_event(
    point: IndicatorPoint,
    detection: SwingDetection,
    exchange: str,
    interval: str,
    pivot_len: int,
    extract_features: Optional[FeatureExtractor] = None,
) -> SwingEvent:
    """Create the immutable event for a confirmed pivot"""
    c: Candle = point.candle
    extract = extract_features or indicator_features
    return SwingEvent(
        id=swing_id(exchange, c.symbol, interval, pivot_len, detection.swing_type, c.open_time),
        exchange=exchange,
        symbol=c.symbol,
        base_interval=interval,
        pivot_len=pivot_len,
        swing_type=detection.swing_type,
        open_time=c.open_time,
        close_time=c.close_time,
        price=detection.price,
        features=extract(point),
    )
