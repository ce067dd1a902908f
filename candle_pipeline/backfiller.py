import csv
import io
import logging
import threading
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from .config import Config
from .jobs import BaseJob, ProgressCallback
from .models import BackfillProgress, Candle
from .persistence import list_day_files, open_time_key, read_open_times, upsert_partition
from .sources import ArchiveSource, HttpStatusError, parse_kline_row
from .utils import add_months, date_key, month_key

log = logging.getLogger("candles.backfiller")


class BackfillJob(BaseJob):
    """
    Walks monthly kline archives backwards in time and merges them into the
    base candle store.

    Resumes one month before the earliest stored candle (or from a fixed
    recent month on an empty store). Missing months (404) drive termination:
    3 in a row once any month was found, 12 in a row if none has been.
    """

    name = "Backfill"
    progress_cls = BackfillProgress

    def __init__(
        self,
        config: Config,
        source: ArchiveSource,
        max_months: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        super().__init__(config, stop_event, on_progress)
        self.source: ArchiveSource = source
        self.max_months: int = max(1, max_months or config.BACKFILL_MAX_MONTHS)

    def earliest_local_open_time(self) -> Optional[int]:
        """Open time of the first record in the earliest day file, if any"""
        files: List[Path] = list_day_files(self.layout.candle_dir(self.config.INTERVAL))
        for path in files:
            open_times: List[int] = read_open_times(path)
            if open_times:
                return open_times[0]
        return None

    def start_month(self) -> Tuple[int, int]:
        earliest: Optional[int] = self.earliest_local_open_time()
        if earliest is None:
            year, month = self.config.BACKFILL_DEFAULT_START
            log.info(f"No existing data, starting from {month_key(year, month)}")
            return year, month

        dt: datetime = datetime.fromtimestamp(earliest / 1000, tz=timezone.utc)
        year = max(self.config.BACKFILL_MIN_YEAR, min(self.config.BACKFILL_MAX_YEAR, dt.year))
        year, month = add_months(year, dt.month, -1)
        log.info(f"Found existing data from {dt:%Y-%m-%d}, starting from {month_key(year, month)}")
        return year, month

    def _execute(self) -> str:
        self.emit(message="Scanning local candle store…")
        year, month = self.start_month()

        tmp_dir: Path = self.layout.backfill_tmp_dir()
        tmp_dir.mkdir(parents=True, exist_ok=True)
        symbol: str = self.config.SYMBOL.upper()
        interval: str = self.config.INTERVAL

        consecutive_not_found: int = 0
        found_any: bool = False

        for _ in range(self.max_months):
            self.check_stop()

            ym: str = month_key(year, month)
            url: str = self.source.month_url(year, month)
            zip_path: Path = tmp_dir / f"{symbol}-{interval}-{ym}.zip"
            self.emit(current_month=ym, current_url=url, message=f"Downloading {ym}…")

            try:
                self.source.download_month(year, month, zip_path)
            except HttpStatusError as e:
                if e.status_code != 404:
                    raise
                consecutive_not_found += 1
                log.info(f"No archive for {ym} (404), {consecutive_not_found} in a row")
                self.emit(message=f"No data for {ym} (404)")

                limit: int = (
                    self.config.NOT_FOUND_LIMIT_AFTER_DATA
                    if found_any
                    else self.config.NOT_FOUND_LIMIT_NO_DATA
                )
                if consecutive_not_found >= limit:
                    return (
                        "Backfill complete"
                        if found_any
                        else "No historical data found for this symbol/timeframe"
                    )

                year, month = add_months(year, month, -1)
                continue

            found_any = True
            consecutive_not_found = 0

            self.emit(message=f"Ingesting {ym}…")
            try:
                self.ingest_archive(zip_path)
            finally:
                zip_path.unlink(missing_ok=True)

            self.emit(
                months_processed=self.progress.months_processed + 1,
                message=f"Finished {ym}",
            )
            year, month = add_months(year, month, -1)

        return "Backfill complete (max months reached)"

    def ingest_archive(self, zip_path: Path) -> None:
        """Stream every CSV member of an archive into day partitions"""
        with zipfile.ZipFile(zip_path) as archive:
            members: List[str] = [
                name for name in archive.namelist() if name.lower().endswith(".csv")
            ]
            if not members:
                raise ValueError("ZIP contained no CSV files")

            for name in members:
                log.debug(f"Parsing {name}")
                with archive.open(name) as raw:
                    reader = csv.reader(io.TextIOWrapper(raw, encoding="utf-8", newline=""))
                    self._ingest_rows(reader)

    def _ingest_rows(self, reader) -> None:
        symbol: str = self.config.SYMBOL.upper()
        current_day: Optional[str] = None
        day_candles: List[Candle] = []

        for row in reader:
            self.check_stop()

            if len(row) < 11:
                continue
            try:
                candle: Candle = parse_kline_row(
                    row, self.config.EXCHANGE, symbol, self.config.INTERVAL
                )
            except ValueError:
                # Header or otherwise unparseable row
                continue

            day: str = date_key(candle.open_time)
            if current_day is not None and day != current_day:
                self._flush_day(current_day, day_candles)
                day_candles = []
            current_day = day
            day_candles.append(candle)

        if current_day is not None and day_candles:
            self._flush_day(current_day, day_candles)

    def _flush_day(self, day: str, candles: List[Candle]) -> None:
        path: Path = self.layout.candle_path(self.config.INTERVAL, day)
        upsert_partition(path, [c.to_record() for c in candles], open_time_key)
        self.emit(
            days_written=self.progress.days_written + 1,
            candles_ingested=self.progress.candles_ingested + len(candles),
        )
        log.debug(f"Wrote {len(candles)} candles to {path.name}")
