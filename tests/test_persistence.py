import json

import pytest

from candle_pipeline.persistence import (
    PartitionWriter,
    StoreLayout,
    dump_record,
    gap_key,
    iter_records,
    list_day_files,
    open_time_key,
    read_candles,
    read_open_times,
    swing_id_key,
    upsert_partition,
)
from conftest import BASE_TIME, MINUTE, build_candle

DAY = 24 * 60 * MINUTE


def records(*offsets):
    return [build_candle(BASE_TIME + o * MINUTE).to_record() for o in offsets]


def test_records_use_camel_case_compact_json():
    line = dump_record(build_candle(BASE_TIME).to_record())
    assert " " not in line
    data = json.loads(line)
    assert data["openTime"] == BASE_TIME
    assert "takerBuyQuote" in data
    assert "open_time" not in data


def test_layout_paths(tmp_path):
    layout = StoreLayout(tmp_path, "binance", "BTCUSDT")
    assert layout.candle_path("1m", "2024-01-01") == (
        tmp_path / "candles" / "binance" / "btcusdt" / "1m" / "2024-01-01.jsonl"
    )
    assert layout.swing_path("1m", 3, "2024-01-01") == (
        tmp_path / "swings" / "binance" / "btcusdt" / "1m" / "p3" / "2024-01-01.jsonl"
    )
    assert layout.gap_dir("1m") == tmp_path / "gaps" / "binance" / "btcusdt" / "1m"


def test_upsert_is_idempotent(tmp_path):
    path = tmp_path / "2024-01-01.jsonl"
    upsert_partition(path, records(0, 1, 2), open_time_key)
    first = path.read_bytes()

    upsert_partition(path, records(0, 1, 2), open_time_key)
    assert path.read_bytes() == first


def test_upsert_sorts_and_overrides(tmp_path):
    path = tmp_path / "2024-01-01.jsonl"
    upsert_partition(path, records(5, 1, 3), open_time_key)

    newer = build_candle(BASE_TIME + 3 * MINUTE, close=999.0).to_record()
    count = upsert_partition(path, [newer] + records(2), open_time_key)

    assert count == 4
    assert read_open_times(path) == [BASE_TIME + o * MINUTE for o in (1, 2, 3, 5)]
    lines = path.read_text().splitlines()
    assert [json.loads(l)["openTime"] for l in lines] == sorted(
        json.loads(l)["openTime"] for l in lines
    )
    assert json.loads(lines[2])["close"] == 999.0
    assert not list(tmp_path.glob("*.tmp-*"))


def test_upsert_with_sort_key(tmp_path):
    path = tmp_path / "swings.jsonl"
    swings = [
        {"id": "b", "openTime": 2},
        {"id": "a", "openTime": 3},
        {"id": "c", "openTime": 1},
    ]
    upsert_partition(path, swings, swing_id_key, sort_key=open_time_key)
    assert [r["id"] for r in iter_records(path)] == ["c", "b", "a"]


def test_corrupt_lines_are_skipped(tmp_path):
    path = tmp_path / "2024-01-01.jsonl"
    good = records(0, 1)
    path.write_text(
        dump_record(good[0]) + "\n"
        + "{not json\n"
        + "\n"
        + json.dumps({"openTime": "soon"}) + "\n"
        + json.dumps({"openTime": True}) + "\n"
        + dump_record(good[1]) + "\n"
    )

    assert [c.open_time for c in read_candles(path)] == [BASE_TIME, BASE_TIME + MINUTE]

    upsert_partition(path, [], open_time_key)
    assert len(path.read_text().splitlines()) == 2


def test_key_functions_reject_bad_values():
    with pytest.raises(TypeError):
        open_time_key({"openTime": True})
    with pytest.raises(TypeError):
        open_time_key({"openTime": "1"})
    with pytest.raises(KeyError):
        open_time_key({})
    with pytest.raises(TypeError):
        swing_id_key({"id": ""})
    assert gap_key({"expectedOpenTime": 1, "actualOpenTime": 3}) == "1:3"


def test_writer_rotates_by_day(tmp_path):
    writer = PartitionWriter(lambda day: tmp_path / f"{day}.jsonl", open_time_key)
    with writer:
        for t in (BASE_TIME, BASE_TIME + MINUTE, BASE_TIME + DAY):
            assert writer.write({"openTime": t}, t)

    assert [p.name for p in list_day_files(tmp_path)] == ["2024-01-01.jsonl", "2024-01-02.jsonl"]


def test_writer_dedups_across_restarts(tmp_path):
    def make_path(day):
        return tmp_path / f"{day}.jsonl"

    with PartitionWriter(make_path, open_time_key) as writer:
        assert writer.write({"openTime": BASE_TIME}, BASE_TIME)
        assert writer.write({"openTime": BASE_TIME + MINUTE}, BASE_TIME + MINUTE)
        assert not writer.write({"openTime": BASE_TIME}, BASE_TIME)

    with PartitionWriter(make_path, open_time_key) as writer:
        assert not writer.write({"openTime": BASE_TIME + MINUTE}, BASE_TIME + MINUTE)
        assert writer.write({"openTime": BASE_TIME + 2 * MINUTE}, BASE_TIME + 2 * MINUTE)

    assert read_open_times(tmp_path / "2024-01-01.jsonl") == [
        BASE_TIME, BASE_TIME + MINUTE, BASE_TIME + 2 * MINUTE
    ]


def test_writer_terminates_partial_trailing_line(tmp_path):
    path = tmp_path / "2024-01-01.jsonl"
    path.write_text(dump_record({"openTime": BASE_TIME}))

    with PartitionWriter(lambda day: path, open_time_key) as writer:
        writer.write({"openTime": BASE_TIME + MINUTE}, BASE_TIME + MINUTE)

    lines = path.read_text().splitlines()
    assert [json.loads(l)["openTime"] for l in lines] == [BASE_TIME, BASE_TIME + MINUTE]


def test_list_day_files_ignores_other_files(tmp_path):
    (tmp_path / "2024-01-02.jsonl").write_text("")
    (tmp_path / "2024-01-01.jsonl").write_text("")
    (tmp_path / "2024-01-01.jsonl.tmp-1").write_text("")
    assert [p.name for p in list_day_files(tmp_path)] == ["2024-01-01.jsonl", "2024-01-02.jsonl"]
    assert list_day_files(tmp_path / "missing") == []


def test_writer_reopens_after_close(tmp_path):
    writer = PartitionWriter(lambda day: tmp_path / f"{day}.jsonl", open_time_key)
    assert writer.write({"openTime": BASE_TIME}, BASE_TIME)
    writer.close()

    assert writer.write({"openTime": BASE_TIME + MINUTE}, BASE_TIME + MINUTE)
    assert not writer.write({"openTime": BASE_TIME}, BASE_TIME)
    writer.close()

    assert read_open_times(tmp_path / "2024-01-01.jsonl") == [BASE_TIME, BASE_TIME + MINUTE]
