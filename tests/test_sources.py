import pytest
import requests
from tenacity import stop_after_attempt, wait_none

from candle_pipeline.sources import (
    ArchiveSource,
    HttpStatusError,
    KlineRestClient,
    NetworkError,
    parse_kline_row,
)
from conftest import BASE_TIME, MINUTE, kline_row


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b"", url="https://api.test"):
        self.status_code = status_code
        self.payload = payload
        self.content = content
        self.url = url
        self.reason = "OK" if status_code == 200 else "Error"

    def json(self):
        return self.payload

    def iter_content(self, chunk_size=1):
        yield self.content

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def rest_row(open_time, close=100.0):
    return [open_time, str(close), str(close + 1), str(close - 1), str(close), "1",
            open_time + MINUTE - 1, "100", 5, "0.5", "50", "0"]


def test_parse_kline_row_normalises_timestamp_units():
    ms = parse_kline_row(kline_row(BASE_TIME), "binance", "BTCUSDT", "1m")
    seconds = parse_kline_row(kline_row(BASE_TIME // 1000), "binance", "BTCUSDT", "1m")
    micros = parse_kline_row(kline_row(BASE_TIME * 1000), "binance", "BTCUSDT", "1m")

    assert ms.open_time == seconds.open_time == micros.open_time == BASE_TIME
    assert ms.trades == 10
    assert ms.taker_buy_base == 0.75


def test_parse_kline_row_rejects_header():
    with pytest.raises(ValueError):
        parse_kline_row(
            ["open_time", "open", "high", "low", "close", "volume", "close_time",
             "quote_volume", "count", "taker_buy_volume", "taker_buy_quote_volume"],
            "binance", "BTCUSDT", "1m",
        )


def test_month_url(config):
    source = ArchiveSource(config, session=FakeSession([]))
    assert source.month_url(2024, 3) == (
        "https://data.binance.vision/data/spot/monthly/klines/BTCUSDT/1m/BTCUSDT-1m-2024-03.zip"
    )
    config.EXCHANGE = "binance_us"
    assert source.month_url(2024, 3).startswith("https://data.binance.us/public_data/spot/")


def test_download_month_writes_file(config, tmp_path):
    session = FakeSession([FakeResponse(content=b"zipbytes")])
    dest = tmp_path / "out" / "a.zip"
    ArchiveSource(config, session=session).download_month(2024, 3, dest)

    assert dest.read_bytes() == b"zipbytes"
    assert session.calls[0][1]["allow_redirects"] is True


def test_download_month_404(config, tmp_path):
    session = FakeSession([FakeResponse(status_code=404)])
    with pytest.raises(HttpStatusError) as exc:
        ArchiveSource(config, session=session).download_month(2024, 3, tmp_path / "a.zip")
    assert exc.value.status_code == 404
    assert len(session.calls) == 1


def test_fetch_range_filters_and_sorts(config):
    rows = [
        rest_row(BASE_TIME + 2 * MINUTE),
        rest_row(BASE_TIME),
        rest_row(BASE_TIME + 10 * MINUTE),
        ["garbage"],
        rest_row(BASE_TIME + MINUTE),
    ]
    session = FakeSession([FakeResponse(payload=rows)])
    client = KlineRestClient(config, session=session)

    candles = client.fetch_range(BASE_TIME, BASE_TIME + 2 * MINUTE)

    assert [c.open_time for c in candles] == [BASE_TIME, BASE_TIME + MINUTE, BASE_TIME + 2 * MINUTE]
    params = session.calls[0][1]["params"]
    assert params["limit"] == 3
    assert params["symbol"] == "BTCUSDT"
    assert session.calls[0][0] == "https://data-api.binance.vision/api/v3/klines"


def test_fetch_range_limit_is_capped(config):
    session = FakeSession([FakeResponse(payload=[])])
    KlineRestClient(config, session=session).fetch_range(BASE_TIME, BASE_TIME + 5000 * MINUTE)
    assert session.calls[0][1]["params"]["limit"] == 1000


def test_fetch_range_empty_window(config):
    session = FakeSession([])
    assert KlineRestClient(config, session=session).fetch_range(BASE_TIME, BASE_TIME - 1) == []
    assert session.calls == []


def test_fetch_range_http_error_not_retried(config):
    session = FakeSession([FakeResponse(status_code=429)])
    with pytest.raises(HttpStatusError):
        KlineRestClient(config, session=session).fetch_range(BASE_TIME, BASE_TIME)
    assert len(session.calls) == 1


def test_fetch_range_network_errors_are_retried(config):
    session = FakeSession([
        requests.exceptions.ConnectionError("reset"),
        FakeResponse(payload=[rest_row(BASE_TIME)]),
    ])
    client = KlineRestClient(config, session=session)
    fetch = KlineRestClient.fetch_range.retry_with(wait=wait_none())

    candles = fetch(client, BASE_TIME, BASE_TIME)
    assert len(candles) == 1
    assert len(session.calls) == 2


def test_fetch_range_gives_up_with_network_error(config):
    session = FakeSession([requests.exceptions.Timeout("slow")] * 3)
    client = KlineRestClient(config, session=session)
    fetch = KlineRestClient.fetch_range.retry_with(wait=wait_none(), stop=stop_after_attempt(3))

    with pytest.raises(NetworkError):
        fetch(client, BASE_TIME, BASE_TIME)
    assert len(session.calls) == 3
