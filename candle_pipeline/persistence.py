import json
import logging
import os
import time
from pathlib import Path
from typing import IO, Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Set

from pydantic import ValidationError

from .models import Candle
from .utils import date_key

log = logging.getLogger("candles.persistence")

Record = Dict[str, Any]
KeyFunc = Callable[[Record], Hashable]


def dump_record(record: Record) -> str:
    return json.dumps(record, separators=(",", ":"))


def open_time_key(record: Record) -> int:
    """Dedup/sort key for candles; rejects records without a numeric openTime"""
    value: Any = record["openTime"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"openTime is not numeric: {value!r}")
    return int(value)


def swing_id_key(record: Record) -> str:
    value: Any = record["id"]
    if not isinstance(value, str) or not value:
        raise TypeError(f"swing id is not a string: {value!r}")
    return value


def gap_key(record: Record) -> str:
    return f"{record['expectedOpenTime']}:{record['actualOpenTime']}"


class StoreLayout:
    """On-disk layout of the candle, swing and gap stores"""

    def __init__(self, data_dir: Path, exchange: str, symbol: str) -> None:
        self.data_dir: Path = Path(data_dir)
        self.exchange: str = exchange
        self.symbol: str = symbol.lower()

    def candle_dir(self, interval: str) -> Path:
        return self.data_dir / "candles" / self.exchange / self.symbol / interval

    def candle_path(self, interval: str, day: str) -> Path:
        return self.candle_dir(interval) / f"{day}.jsonl"

    def swing_dir(self, interval: str, pivot_len: int) -> Path:
        return self.data_dir / "swings" / self.exchange / self.symbol / interval / f"p{pivot_len}"

    def swing_path(self, interval: str, pivot_len: int, day: str) -> Path:
        return self.swing_dir(interval, pivot_len) / f"{day}.jsonl"

    def gap_dir(self, interval: str) -> Path:
        return self.data_dir / "gaps" / self.exchange / self.symbol / interval

    def gap_path(self, interval: str, day: str) -> Path:
        return self.gap_dir(interval) / f"{day}.jsonl"

    def backfill_tmp_dir(self) -> Path:
        return self.data_dir / "tmp" / "backfill"


def list_day_files(directory: Path) -> List[Path]:
    """Day partition files in a store directory, oldest first"""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.name.endswith(".jsonl"))


def iter_records(path: Path) -> Iterator[Record]:
    """Yield every parseable JSON object in a partition file, skipping bad lines"""
    if not path.exists():
        return
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            text: str = line.strip()
            if not text:
                continue
            try:
                obj: Any = json.loads(text)
            except ValueError:
                log.debug(f"Skipping malformed line {line_no} in {path}")
                continue
            if isinstance(obj, dict):
                yield obj


def read_keyed(path: Path, key: KeyFunc) -> Dict[Hashable, Record]:
    """Valid records of a file by key, last occurrence wins"""
    records: Dict[Hashable, Record] = {}
    for record in iter_records(path):
        try:
            records[key(record)] = record
        except (KeyError, TypeError, ValueError):
            continue
    return records


def read_open_times(path: Path) -> List[int]:
    return sorted(read_keyed(path, open_time_key))


def read_candles(path: Path) -> List[Candle]:
    """Candles of one partition, sorted by open time, invalid records skipped"""
    candles: List[Candle] = []
    for open_time, record in sorted(read_keyed(path, open_time_key).items()):
        try:
            candles.append(Candle.model_validate(record))
        except ValidationError:
            log.warning(f"Skipping invalid candle {open_time} in {path}")
    return candles


def upsert_partition(
    path: Path,
    records: Iterable[Record],
    key: KeyFunc,
    sort_key: Optional[KeyFunc] = None,
) -> int:
    """
    Merge records into a partition file and atomically replace it.

    Existing valid records are loaded, new records override them per key, and
    the result is written sorted (by sort_key, then key) to a temporary file
    that is renamed over the original. Returns the number of records stored.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    merged: Dict[Hashable, Record] = read_keyed(path, key)
    for record in records:
        merged[key(record)] = record

    ordered: List[Record]
    if sort_key is None:
        ordered = [merged[k] for k in sorted(merged)]
    else:
        ordered = sorted(merged.values(), key=lambda r: (sort_key(r), key(r)))

    tmp_path: Path = path.with_name(f"{path.name}.tmp-{time.time_ns()}")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            for record in ordered:
                f.write(dump_record(record))
                f.write("\n")
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise

    log.debug(f"Upserted {path} ({len(ordered)} records)")
    return len(ordered)


class PartitionWriter:
    """
    Append-only writer that routes records to one file per UTC day.

    With a dedup extractor, opening a partition loads the keys already on disk
    so a record is written at most once per key, across restarts included.
    """

    def __init__(
        self,
        make_path: Callable[[str], Path],
        dedup_key: Optional[KeyFunc] = None,
    ) -> None:
        self.make_path: Callable[[str], Path] = make_path
        self.dedup_key: Optional[KeyFunc] = dedup_key
        self.current_key: Optional[str] = None
        self.dedup_keys: Optional[Set[str]] = None
        self._stream: Optional[IO[str]] = None

    def write(self, record: Record, timestamp_ms: int) -> bool:
        """Append a record; returns False if its dedup key is already stored"""
        key: str = date_key(timestamp_ms)
        if self.current_key != key:
            self._rotate(key)

        if self.dedup_key is not None and self.dedup_keys is not None:
            k: str = str(self.dedup_key(record))
            if k in self.dedup_keys:
                return False
            self.dedup_keys.add(k)

        if self._stream is None:
            raise RuntimeError(f"No open partition for {key}")
        self._stream.write(dump_record(record) + "\n")
        self._stream.flush()
        return True

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
        self._stream = None
        self.current_key = None
        self.dedup_keys = None

    def __enter__(self) -> "PartitionWriter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _rotate(self, key: str) -> None:
        self.close()

        path: Path = self.make_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        if self.dedup_key is not None:
            keys: Set[str] = set()
            for record in iter_records(path):
                try:
                    keys.add(str(self.dedup_key(record)))
                except (KeyError, TypeError, ValueError):
                    continue
            self.dedup_keys = keys
            log.debug(f"Opened {path} with {len(keys)} existing keys")

        needs_newline: bool = False
        if path.exists() and path.stat().st_size > 0:
            with open(path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                needs_newline = f.read(1) != b"\n"

        self._stream = open(path, "a", encoding="utf-8")
        if needs_newline:
            # Terminate a partially written trailing line before appending
            self._stream.write("\n")
        self.current_key = key
