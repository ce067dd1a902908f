import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .config import Config
from .jobs import BaseJob, ProgressCallback
from .models import Candle, GapRecord, ReconcileProgress
from .persistence import (
    PartitionWriter,
    gap_key,
    list_day_files,
    open_time_key,
    read_open_times,
    upsert_partition,
)
from .sources import KlineRestClient
from .utils import date_key, now_ms, timeframe_to_ms

log = logging.getLogger("candles.reconciler")


class ReconcileJob(BaseJob):
    """Scans stored base candles for discontinuities and repairs small gaps"""

    name = "Reconcile"
    progress_cls = ReconcileProgress

    def __init__(
        self,
        config: Config,
        client: KlineRestClient,
        max_days: Optional[int] = None,
        active_open_time: Optional[Callable[[], Optional[int]]] = None,
        stop_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        super().__init__(config, stop_event, on_progress)
        self.client: KlineRestClient = client
        self.max_days: Optional[int] = max_days
        self.active_open_time: Callable[[], Optional[int]] = active_open_time or (lambda: None)
        self.interval_ms: int = timeframe_to_ms(config.INTERVAL)

    def files_to_scan(self) -> List[Path]:
        """Day files oldest first, minus today and the day the live path is writing"""
        skip: Set[str] = {f"{date_key(now_ms())}.jsonl"}
        active: Optional[int] = self.active_open_time()
        if active is not None:
            skip.add(f"{date_key(active)}.jsonl")

        files: List[Path] = [
            p for p in list_day_files(self.layout.candle_dir(self.config.INTERVAL))
            if p.name not in skip
        ]
        if self.max_days and self.max_days > 0 and len(files) > self.max_days:
            files = files[-int(self.max_days):]
        return files

    def _execute(self) -> str:
        candle_dir: Path = self.layout.candle_dir(self.config.INTERVAL)
        if not candle_dir.is_dir():
            return "No local candles directory"

        gap_writer = PartitionWriter(
            lambda day: self.layout.gap_path(self.config.INTERVAL, day), gap_key
        )
        try:
            self._scan(self.files_to_scan(), gap_writer)
        finally:
            gap_writer.close()

        return "Reconciliation complete"

    def _scan(self, files: List[Path], gap_writer: PartitionWriter) -> None:
        prev_open_time: Optional[int] = None

        for path in files:
            self.check_stop()
            self.emit(current_file=path.name, message=f"Scanning {path.name}")

            open_times: List[int] = read_open_times(path)
            self.emit(days_scanned=self.progress.days_scanned + 1)

            for t in open_times:
                self.check_stop()

                if prev_open_time is None:
                    prev_open_time = t
                    continue
                if t <= prev_open_time:
                    continue

                expected: int = prev_open_time + self.interval_ms
                if t > expected:
                    gap = GapRecord(
                        expected_open_time=expected,
                        actual_open_time=t,
                        missing_candles=(t - expected) // self.interval_ms,
                    )
                    gap_writer.write(gap.to_record(), t)
                    self.emit(
                        gaps_found=self.progress.gaps_found + 1,
                        gaps=self.progress.gaps + [gap],
                    )
                    self._handle_gap(gap)

                prev_open_time = t

    def _handle_gap(self, gap: GapRecord) -> None:
        missing: int = gap.missing_candles
        limit: int = self.config.GAP_REPAIR_MAX_CANDLES

        if not (limit > 0 and 0 < missing <= limit):
            log.info(f"Skipping gap of {missing} candles at {gap.expected_open_time} (limit {limit})")
            self.emit(gaps_skipped=self.progress.gaps_skipped + 1)
            return

        self.check_stop()
        try:
            repaired: List[Candle] = self.client.fetch_range(
                gap.expected_open_time, gap.actual_open_time - self.interval_ms
            )
        except Exception as e:
            log.warning(f"Gap repair fetch failed at {gap.expected_open_time}: {e}")
            self.emit(gaps_skipped=self.progress.gaps_skipped + 1)
            return

        by_day: Dict[str, List[Candle]] = defaultdict(list)
        for candle in repaired:
            by_day[date_key(candle.open_time)].append(candle)
        for day, candles in sorted(by_day.items()):
            upsert_partition(
                self.layout.candle_path(self.config.INTERVAL, day),
                [c.to_record() for c in candles],
                open_time_key,
            )
        self.emit(candles_repaired=self.progress.candles_repaired + len(repaired))

        if self.covers_gap(gap, repaired):
            log.info(f"Repaired gap of {missing} candles at {gap.expected_open_time}")
            self.emit(gaps_repaired=self.progress.gaps_repaired + 1)
        else:
            log.warning(f"Gap at {gap.expected_open_time} still open after repair")
            self.emit(gaps_skipped=self.progress.gaps_skipped + 1)

    def covers_gap(self, gap: GapRecord, candles: List[Candle]) -> bool:
        """True if every missing open time of the gap is present"""
        got: Set[int] = {c.open_time for c in candles}
        return all(
            gap.expected_open_time + k * self.interval_ms in got
            for k in range(gap.missing_candles)
        )
