import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional

from .config import Config
from .models import Candle, GapRecord, LiveStats, SwingEvent
from .persistence import (
    PartitionWriter,
    StoreLayout,
    gap_key,
    list_day_files,
    open_time_key,
    read_candles,
    swing_id_key,
)
from .pipeline import DerivationPipeline, DerivedOutput
from .sources import KlineRestClient
from .swings import FeatureExtractor
from .utils import timeframe_to_ms

log = logging.getLogger("candles.processor")


class LiveProcessor:
    """Handles final candles from the live feed, one at a time in arrival order"""

    def __init__(
        self,
        config: Config,
        client: Optional[KlineRestClient] = None,
        extract_features: Optional[FeatureExtractor] = None,
        on_candle: Optional[Callable[[Candle], None]] = None,
        on_swing: Optional[Callable[[SwingEvent], None]] = None,
        on_gap: Optional[Callable[[GapRecord], None]] = None,
    ) -> None:
        self.config: Config = config
        self.client: Optional[KlineRestClient] = client
        self.on_candle: Optional[Callable[[Candle], None]] = on_candle
        self.on_swing: Optional[Callable[[SwingEvent], None]] = on_swing
        self.on_gap: Optional[Callable[[GapRecord], None]] = on_gap

        self.interval: str = config.INTERVAL
        self.interval_ms: int = timeframe_to_ms(config.INTERVAL)
        self.layout: StoreLayout = StoreLayout(config.DATA_DIR, config.EXCHANGE, config.SYMBOL)
        self.stats: LiveStats = LiveStats()
        self.pipeline: DerivationPipeline = DerivationPipeline(config, extract_features)
        self._lock: asyncio.Lock = asyncio.Lock()

        self.candle_writer: PartitionWriter = PartitionWriter(
            lambda day: self.layout.candle_path(self.interval, day), open_time_key
        )
        self.swing_writer: PartitionWriter = PartitionWriter(
            lambda day: self.layout.swing_path(self.interval, config.PIVOT_LEN, day),
            swing_id_key,
        )
        self.gap_writer: PartitionWriter = PartitionWriter(
            lambda day: self.layout.gap_path(self.interval, day), gap_key
        )
        self.agg_writers: Dict[str, PartitionWriter] = {
            b.interval: PartitionWriter(
                lambda day, tf=b.interval: self.layout.candle_path(tf, day), open_time_key
            )
            for b in self.pipeline.builders
        }

    @property
    def last_final_open_time(self) -> Optional[int]:
        return self.stats.last_final_open_time

    def seed_from_disk(self, max_candles: Optional[int] = None) -> int:
        """Prime the series and builders with the newest stored base candles"""
        limit: int = max_candles or self.config.SEED_CANDLES
        files: List[Path] = list_day_files(self.layout.candle_dir(self.interval))

        by_open_time: Dict[int, Candle] = {}
        for path in reversed(files):
            if len(by_open_time) >= limit:
                break
            for candle in read_candles(path):
                by_open_time[candle.open_time] = candle

        seed: List[Candle] = [by_open_time[t] for t in sorted(by_open_time)][-limit:]
        for candle in seed:
            self.pipeline.seed(candle)
        if seed:
            self.stats.last_final_open_time = seed[-1].open_time
            log.info(f"Seeded {len(seed)} candles, last at {seed[-1].timestamp_utc:%Y-%m-%d %H:%M}")
        return len(seed)

    async def handle_candle(self, candle: Candle) -> None:
        """Process one final candle; concurrent callers are served in arrival order"""
        async with self._lock:
            await self._handle(candle)

    async def _handle(self, candle: Candle) -> None:
        if self._is_stale(candle):
            self.stats.candles_ignored += 1
            return

        gap: Optional[GapRecord] = self._check_gap(candle)
        if gap is not None and self._repairable(gap):
            # Repair candles are queued and drained ahead of the trigger; they
            # record residual gaps but never start another repair.
            pending: Deque[Candle] = deque(await self._fetch_repair(gap))
            repaired_times = {c.open_time for c in pending}
            while pending:
                repair: Candle = pending.popleft()
                if self._is_stale(repair) or repair.open_time >= candle.open_time:
                    continue
                self._check_gap(repair)
                self._ingest(repair)

            if all(
                gap.expected_open_time + k * self.interval_ms in repaired_times
                for k in range(gap.missing_candles)
            ):
                self.stats.gaps_repaired += 1

        self._ingest(candle)

    def _is_stale(self, candle: Candle) -> bool:
        last: Optional[int] = self.stats.last_final_open_time
        return last is not None and candle.open_time <= last

    def _check_gap(self, candle: Candle) -> Optional[GapRecord]:
        last: Optional[int] = self.stats.last_final_open_time
        if last is None:
            return None

        expected: int = last + self.interval_ms
        if candle.open_time <= expected:
            return None

        gap = GapRecord(
            expected_open_time=expected,
            actual_open_time=candle.open_time,
            missing_candles=(candle.open_time - expected) // self.interval_ms,
        )
        self.stats.gaps_found += 1
        self.gap_writer.write(gap.to_record(), candle.open_time)
        log.warning(
            f"Gap detected: {gap.missing_candles} candles missing before "
            f"{candle.timestamp_utc:%Y-%m-%d %H:%M:%S}"
        )
        if self.on_gap:
            self.on_gap(gap)
        return gap

    def _repairable(self, gap: GapRecord) -> bool:
        limit: int = self.config.GAP_REPAIR_MAX_CANDLES
        return self.client is not None and limit > 0 and 0 < gap.missing_candles <= limit

    async def _fetch_repair(self, gap: GapRecord) -> List[Candle]:
        if self.client is None:
            raise RuntimeError("Gap repair needs a REST client")
        try:
            return await asyncio.to_thread(
                self.client.fetch_range,
                gap.expected_open_time,
                gap.actual_open_time - self.interval_ms,
            )
        except Exception as e:
            log.error(f"Gap repair failed: {e}")
            return []

    def _ingest(self, candle: Candle) -> None:
        self.stats.last_final_open_time = candle.open_time

        if self.candle_writer.write(candle.to_record(), candle.open_time):
            self.stats.candles_written += 1
            log.debug(f"Closed candle: {candle}")
            if self.on_candle:
                self.on_candle(candle)

        output: DerivedOutput = self.pipeline.process(candle)

        if output.swing is not None:
            swing: SwingEvent = output.swing
            if self.swing_writer.write(swing.to_record(), swing.open_time):
                self.stats.swings_found += 1
                log.info(f"Swing {swing.swing_type.value} @ {swing.price:.2f} ({swing.id})")
                if self.on_swing:
                    self.on_swing(swing)

        for closed in output.closed:
            if self.agg_writers[closed.interval].write(closed.to_record(), closed.open_time):
                self.stats.agg_candles_written += 1
                if self.on_candle:
                    self.on_candle(closed)

    def close(self) -> None:
        """Flush and release every open partition"""
        self.candle_writer.close()
        self.swing_writer.close()
        self.gap_writer.close()
        for writer in self.agg_writers.values():
            writer.close()
        log.info(f"Live processor closed | {self.stats}")
