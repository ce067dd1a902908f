import logging
from typing import List, NamedTuple, Optional

from .aggregator import TimeframeBuilder
from .config import Config
from .models import Candle, IndicatorPoint, SwingDetection, SwingEvent
from .series import CandleSeries
from .swings import FeatureExtractor, build_swing_event, detect_swing_at
from .utils import timeframe_to_ms

log = logging.getLogger("candles.pipeline")


class DerivedOutput(NamedTuple):
    swing: Optional[SwingEvent]
    closed: List[Candle]


def derived_intervals(config: Config) -> List[str]:
    """Configured derived intervals coarser than the base interval"""
    base_ms: int = timeframe_to_ms(config.INTERVAL)
    return [tf for tf in config.DERIVED_INTERVALS if timeframe_to_ms(tf) > base_ms]


class DerivationPipeline:
    """
    Candle series, timeframe builders and swing detection for one stream.

    The live path and the rebuild job each own a separate instance, so both
    produce the same swings and aggregates for the same base sequence.
    """

    def __init__(
        self,
        config: Config,
        extract_features: Optional[FeatureExtractor] = None,
        max_points: Optional[int] = None,
    ) -> None:
        self.exchange: str = config.EXCHANGE
        self.interval: str = config.INTERVAL
        self.pivot_len: int = config.PIVOT_LEN
        self.extract_features: Optional[FeatureExtractor] = extract_features

        cap: int = max_points or config.MAX_SERIES_POINTS
        if cap < 2 * self.pivot_len + 1:
            raise ValueError(
                f"Series cap {cap} cannot hold a pivot window of {2 * self.pivot_len + 1}"
            )
        self.series: CandleSeries = CandleSeries(max_points=cap)
        self.builders: List[TimeframeBuilder] = [
            TimeframeBuilder(tf) for tf in derived_intervals(config)
        ]

    @property
    def min_points(self) -> int:
        return 2 * self.pivot_len + 1

    def seed(self, candle: Candle) -> None:
        """Prime series and builders without emitting anything"""
        self.series.push(candle)
        for builder in self.builders:
            builder.update(candle)

    def process(self, candle: Candle) -> DerivedOutput:
        self.series.push(candle)

        swing: Optional[SwingEvent] = None
        candidate: int = len(self.series) - 1 - self.pivot_len
        if candidate >= 0:
            detection: Optional[SwingDetection] = detect_swing_at(
                self.series, self.pivot_len, candidate
            )
            if detection:
                point: IndicatorPoint = self.series.at(candidate)
                swing = build_swing_event(
                    point,
                    detection,
                    self.exchange,
                    self.interval,
                    self.pivot_len,
                    self.extract_features,
                )
                log.debug(
                    f"Swing {detection.swing_type.value} at {point.candle.timestamp_utc:%Y-%m-%d %H:%M} "
                    f"price {detection.price:.2f}"
                )

        closed: List[Candle] = []
        for builder in self.builders:
            bucket: Optional[Candle] = builder.update(candle)
            if bucket is not None:
                closed.append(bucket)

        return DerivedOutput(swing=swing, closed=closed)

    def trim(self, threshold: int, keep: int) -> None:
        """Shrink the series once it exceeds threshold, never below the pivot window"""
        if len(self.series) > threshold:
            self.series.trim_to_last(max(keep, self.min_points))
