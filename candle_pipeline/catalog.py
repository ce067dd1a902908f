import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from pydantic import ValidationError

from .config import Config
from .models import DataStatus, SwingEvent
from .persistence import StoreLayout, iter_records, list_day_files
from .pipeline import derived_intervals

log = logging.getLogger("candles.catalog")

MAX_SWINGS_LOADED = 10000
MAX_FILES_PER_TIMEFRAME = 3

BASE_COLUMNS = [
    "id", "exchange", "symbol", "baseInterval", "pivotLen", "swingType",
    "openTime", "closeTime", "price", "openTimeISO",
]


def list_symbols(data_dir: Path, exchange: str) -> List[str]:
    """Symbols with a candle or swing store under data_dir, lowercase, sorted"""
    found = set()
    for kind in ("candles", "swings"):
        base: Path = Path(data_dir) / kind / exchange
        if base.is_dir():
            found.update(p.name for p in base.iterdir() if p.is_dir())
    return sorted(found)


def _dir_size(path: Path) -> int:
    if not path.is_dir():
        return 0
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def _count_lines(path: Path) -> int:
    with open(path, "rb") as f:
        return sum(1 for line in f if line.strip())


def scan_data_status(config: Config, symbol: Optional[str] = None) -> List[DataStatus]:
    """Inventory of the base and derived timeframes of one symbol"""
    layout = StoreLayout(config.DATA_DIR, config.EXCHANGE, symbol or config.SYMBOL)
    min_candles: int = 2 * config.PIVOT_LEN + 1

    statuses: List[DataStatus] = []
    for tf in [config.INTERVAL] + derived_intervals(config):
        candle_files: List[Path] = list_day_files(layout.candle_dir(tf))
        swing_files: List[Path] = list_day_files(layout.swing_dir(tf, config.PIVOT_LEN))

        total_candles: int = sum(_count_lines(p) for p in candle_files)
        total_swings: int = sum(_count_lines(p) for p in swing_files)

        statuses.append(
            DataStatus(
                symbol=layout.symbol,
                timeframe=tf,
                candle_files=len(candle_files),
                swing_files=len(swing_files),
                total_candles=total_candles,
                total_swings=total_swings,
                oldest_day=candle_files[0].stem if candle_files else None,
                newest_day=candle_files[-1].stem if candle_files else None,
                size_bytes=(
                    _dir_size(layout.candle_dir(tf))
                    + _dir_size(layout.swing_dir(tf, config.PIVOT_LEN))
                ),
                insufficient_data=(
                    bool(candle_files) and not swing_files and total_candles < min_candles * 10
                ),
            )
        )
    return statuses


def load_swings(
    config: Config,
    symbol: Optional[str] = None,
    max_swings: int = MAX_SWINGS_LOADED,
    max_files: int = MAX_FILES_PER_TIMEFRAME,
) -> List[SwingEvent]:
    """Swings from the newest day files of every timeframe, oldest first"""
    layout = StoreLayout(config.DATA_DIR, config.EXCHANGE, symbol or config.SYMBOL)

    swings: List[SwingEvent] = []
    for tf in [config.INTERVAL] + derived_intervals(config):
        files: List[Path] = list_day_files(layout.swing_dir(tf, config.PIVOT_LEN))
        for path in files[-max_files:]:
            for record in iter_records(path):
                if len(swings) >= max_swings:
                    log.warning(f"Swing load capped at {max_swings}")
                    return swings
                try:
                    swings.append(SwingEvent.model_validate(record))
                except ValidationError:
                    continue

    swings.sort(key=lambda s: (s.open_time, s.id))
    return swings


def swings_frame(swings: List[SwingEvent]) -> pd.DataFrame:
    """Flatten swings into one row each, feature columns sorted after the base columns"""
    feature_keys: List[str] = sorted({k for s in swings for k in s.features})

    rows: List[Dict[str, Any]] = []
    for s in swings:
        row: Dict[str, Any] = {
            "id": s.id,
            "exchange": s.exchange,
            "symbol": s.symbol,
            "baseInterval": s.base_interval,
            "pivotLen": s.pivot_len,
            "swingType": s.swing_type.value,
            "openTime": s.open_time,
            "closeTime": s.close_time,
            "price": s.price,
            "openTimeISO": datetime.fromtimestamp(s.open_time / 1000, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
        }
        for k in feature_keys:
            v: Any = s.features.get(k)
            row[k] = int(v) if isinstance(v, bool) else v
        rows.append(row)

    return pd.DataFrame(rows, columns=BASE_COLUMNS + feature_keys)


def export_swings(
    config: Config,
    fmt: str = "csv",
    dest: Optional[Path] = None,
    symbol: Optional[str] = None,
) -> Optional[Path]:
    """Write loaded swings to CSV or Parquet; returns None when there is nothing to export"""
    if fmt not in ("csv", "parquet"):
        raise ValueError(f"Unsupported export format: {fmt}")

    swings: List[SwingEvent] = load_swings(config, symbol)
    if not swings:
        log.info("No swings to export")
        return None

    sym: str = (symbol or config.SYMBOL).lower()
    if dest is None:
        dest = (
            Path(config.DATA_DIR)
            / "exports"
            / f"swings_{config.EXCHANGE}_{sym}_{config.INTERVAL}_p{config.PIVOT_LEN}.{fmt}"
        )
    dest.parent.mkdir(parents=True, exist_ok=True)

    df: pd.DataFrame = swings_frame(swings)
    if fmt == "csv":
        df.to_csv(dest, index=False)
    else:
        table: pa.Table = pa.Table.from_pandas(df, preserve_index=False)
        pq.write_table(table, dest)

    log.info(f"Exported {len(df)} swings to {dest}")
    return dest
