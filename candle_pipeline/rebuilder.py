import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

from .config import Config
from .jobs import BaseJob, ProgressCallback
from .models import Candle, RebuildProgress, SwingEvent
from .persistence import (
    list_day_files,
    open_time_key,
    read_candles,
    swing_id_key,
    upsert_partition,
)
from .pipeline import DerivationPipeline, DerivedOutput
from .swings import FeatureExtractor
from .utils import date_key, now_ms

log = logging.getLogger("candles.rebuilder")


class DerivedRebuildJob(BaseJob):
    """
    Regenerates aggregate candles and swing events from the stored base series.

    Every base day file (oldest first, today excluded) is replayed through a
    fresh DerivationPipeline. Outputs are collected per UTC day and upserted
    once the replay is complete.
    """

    name = "Derived rebuild"
    progress_cls = RebuildProgress

    def __init__(
        self,
        config: Config,
        max_days: Optional[int] = None,
        extract_features: Optional[FeatureExtractor] = None,
        stop_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        super().__init__(config, stop_event, on_progress)
        self.max_days: Optional[int] = max_days
        self.extract_features: Optional[FeatureExtractor] = extract_features

    def files_to_replay(self) -> List[Path]:
        today: str = f"{date_key(now_ms())}.jsonl"
        files: List[Path] = [
            p for p in list_day_files(self.layout.candle_dir(self.config.INTERVAL))
            if p.name != today
        ]
        if self.max_days and self.max_days > 0 and len(files) > self.max_days:
            files = files[-int(self.max_days):]
        return files

    def _execute(self) -> str:
        if not self.layout.candle_dir(self.config.INTERVAL).is_dir():
            return "No local candles"

        pipeline = DerivationPipeline(self.config, self.extract_features)
        aggregates: Dict[str, Dict[str, List[Candle]]] = {
            b.interval: defaultdict(list) for b in pipeline.builders
        }
        swings_by_day: Dict[str, List[SwingEvent]] = defaultdict(list)

        for path in self.files_to_replay():
            self.check_stop()
            self.emit(current_file=path.name, message=f"Processing {path.name}")

            for candle in read_candles(path):
                self.check_stop()

                output: DerivedOutput = pipeline.process(candle)
                self.progress.base_candles_processed += 1

                if output.swing is not None:
                    swings_by_day[date_key(output.swing.open_time)].append(output.swing)

                for closed in output.closed:
                    aggregates[closed.interval][date_key(closed.open_time)].append(closed)

            pipeline.trim(self.config.REBUILD_TRIM_THRESHOLD, self.config.REBUILD_TRIM_TO)
            self.emit(days_processed=self.progress.days_processed + 1)

        self.emit(message="Writing aggregated candles…")
        for interval, by_day in aggregates.items():
            for day, candles in sorted(by_day.items()):
                self.check_stop()
                upsert_partition(
                    self.layout.candle_path(interval, day),
                    [c.to_record() for c in candles],
                    open_time_key,
                )
                self.emit(agg_candles_written=self.progress.agg_candles_written + len(candles))

        self.emit(message="Writing swing events…")
        for day, swings in sorted(swings_by_day.items()):
            self.check_stop()
            upsert_partition(
                self.layout.swing_path(self.config.INTERVAL, self.config.PIVOT_LEN, day),
                [s.to_record() for s in swings],
                swing_id_key,
                sort_key=open_time_key,
            )
            self.emit(swing_events_written=self.progress.swing_events_written + len(swings))

        log.info(
            f"Rebuilt {self.progress.agg_candles_written} aggregate candles and "
            f"{self.progress.swing_events_written} swings from "
            f"{self.progress.base_candles_processed} base candles"
        )
        return "Derived rebuild complete"
