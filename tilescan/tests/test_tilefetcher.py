#!/usr/bin/env python3

import threading
from datetime import datetime, timezone

import pytest
import requests

from conftest import FakeResponse, FakeSession, make_png

from tilescan.tilefetcher import (
    DuplicateTileRequest,
    FetcherStopped,
    TileDecodeError,
    TileFetcher,
    TileHTTPError,
    TileTransportError,
    parse_http_time,
)
from tilescan.utils.tilemath import TileCoordinate

TEMPLATE = "https://tiles.example.org/{z}/{x}/{y}.png"


@pytest.fixture
def make_fetcher():
    fetchers = []

    def _make(session, max_concurrent=4, **kwargs):
        f = TileFetcher(TEMPLATE, "tilescan-test/1.0", max_concurrent, session=session, **kwargs)
        f.start()
        fetchers.append(f)
        return f

    yield _make
    for f in fetchers:
        f.stop()


def submit_all(fetcher, coords_list):
    results = {}
    errors = []

    def _one(c):
        try:
            results[c.key] = fetcher.submit(c)
        except Exception as err:
            errors.append(err)

    threads = [threading.Thread(target=_one, args=(c,)) for c in coords_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert not errors
    return results


def test_make_tile_url():
    f = TileFetcher(TEMPLATE, "ua", 1, session=FakeSession(lambda url: None))
    assert f.make_tile_url(TileCoordinate(3, 7, 11)) == "https://tiles.example.org/11/3/7.png"


def test_make_tile_url_without_zoom():
    f = TileFetcher("https://t.example.org/{x}/{y}.png", "ua", 1, session=FakeSession(lambda url: None))
    assert f.make_tile_url(TileCoordinate(3, 7, 11)) == "https://t.example.org/3/7.png"


def test_max_concurrent_must_be_positive():
    with pytest.raises(ValueError):
        TileFetcher(TEMPLATE, "ua", 0, session=FakeSession(lambda url: None))


def test_fetch_ok(make_fetcher, ok_session):
    f = make_fetcher(ok_session, timeout=(2, 7))
    tile = f.submit(TileCoordinate(3, 7, 11))

    assert tile.ok
    assert tile.error is None
    assert tile.status_code == 200
    assert tile.url == "https://tiles.example.org/11/3/7.png"
    assert tile.image.size == (4, 4)
    assert tile.image.getpixel((0, 0)) == (255, 0, 0, 255)
    assert tile.last_modified == datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)
    assert tile.request_time <= tile.received_time
    assert tile.duration >= 0

    call = ok_session.calls[0]
    assert call["headers"]["user-agent"] == "tilescan-test/1.0"
    assert call["timeout"] == (2, 7)


def test_fetch_http_error(make_fetcher):
    session = FakeSession(lambda url: FakeResponse(404, b"", reason="Not Found"))
    f = make_fetcher(session)
    tile = f.submit(TileCoordinate(1, 2, 3))

    assert not tile.ok
    assert isinstance(tile.error, TileHTTPError)
    assert tile.error.status_code == 404
    assert tile.status_code == 404
    assert tile.image is None
    assert tile.url == "https://tiles.example.org/3/1/2.png"
    assert tile.last_modified is None
    assert tile.received_time is not None


def test_fetch_transport_error(make_fetcher):
    session = FakeSession(lambda url: requests.exceptions.ConnectionError("connection refused"))
    f = make_fetcher(session)
    tile = f.submit(TileCoordinate(1, 2, 3))

    assert isinstance(tile.error, TileTransportError)
    assert tile.status_code is None
    assert tile.image is None
    assert tile.url


def test_fetch_timeout_is_transport_error(make_fetcher):
    session = FakeSession(lambda url: requests.exceptions.ReadTimeout("read timed out"))
    f = make_fetcher(session)
    tile = f.submit(TileCoordinate(1, 2, 3))
    assert isinstance(tile.error, TileTransportError)


def test_fetch_decode_error(make_fetcher):
    session = FakeSession(lambda url: FakeResponse(200, b"this is not a png"))
    f = make_fetcher(session)
    tile = f.submit(TileCoordinate(1, 2, 3))

    assert isinstance(tile.error, TileDecodeError)
    assert tile.status_code == 200
    assert tile.image is None


def test_unexpected_error_still_replies(make_fetcher):
    session = FakeSession(lambda url: RuntimeError("boom"))
    f = make_fetcher(session)
    tile = f.submit(TileCoordinate(1, 2, 3))
    assert tile.error is not None
    assert f.outstanding() == []


def test_max_concurrency_one(make_fetcher):
    body = make_png()
    session = FakeSession(lambda url: FakeResponse(200, body), delay=0.02)
    f = make_fetcher(session, max_concurrent=1)

    coords = [TileCoordinate(x, 0, 5) for x in range(10)]
    results = submit_all(f, coords)

    assert len(results) == 10
    assert all(t.ok for t in results.values())
    assert session.max_active == 1
    assert len(session.calls) == 10
    assert f.outstanding() == []


def test_concurrency_cap_under_burst(make_fetcher):
    body = make_png()
    session = FakeSession(lambda url: FakeResponse(200, body), delay=0.02)
    f = make_fetcher(session, max_concurrent=3)

    coords = [TileCoordinate(x, y, 6) for x in range(5) for y in range(4)]
    results = submit_all(f, coords)

    assert len(results) == 20
    assert 1 <= session.max_active <= 3
    assert f.in_flight == 0
    assert f.outstanding() == []


def test_each_caller_gets_its_own_tile(make_fetcher):
    session = FakeSession(lambda url: FakeResponse(200, make_png()), delay=0.01)
    f = make_fetcher(session, max_concurrent=2)

    coords = [TileCoordinate(x, x + 1, 4) for x in range(8)]
    results = submit_all(f, coords)

    for c in coords:
        assert results[c.key].coords == c
        assert results[c.key].url == f.make_tile_url(c)


def test_duplicate_request_rejected(make_fetcher):
    release = threading.Event()
    entered = threading.Event()
    body = make_png()

    def handler(url):
        entered.set()
        release.wait(5)
        return FakeResponse(200, body)

    f = make_fetcher(FakeSession(handler))
    coords = TileCoordinate(1, 1, 1)
    first = {}
    t = threading.Thread(target=lambda: first.setdefault("tile", f.submit(coords)))
    t.start()
    assert entered.wait(5)
    assert f.outstanding() == [coords.key]

    with pytest.raises(DuplicateTileRequest):
        f.submit(coords)

    release.set()
    t.join(5)
    assert first["tile"].ok
    assert f.outstanding() == []


def test_submit_requires_running_fetcher(ok_session):
    f = TileFetcher(TEMPLATE, "ua", 1, session=ok_session)
    with pytest.raises(FetcherStopped):
        f.submit(TileCoordinate(0, 0, 0))

    f.start()
    f.start()
    assert f.submit(TileCoordinate(0, 0, 0)).ok
    f.stop()
    f.stop()

    with pytest.raises(FetcherStopped):
        f.submit(TileCoordinate(0, 0, 0))


@pytest.mark.parametrize("value,expected", [
    ("Wed, 01 May 2024 10:00:00 GMT", datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)),
    ("", None),
    (None, None),
    ("yesterday", None),
])
def test_parse_http_time(value, expected):
    assert parse_http_time(value) == expected


def test_stop_releases_queued_callers():
    release = threading.Event()
    entered = threading.Event()
    body = make_png()

    def handler(url):
        entered.set()
        release.wait(5)
        return FakeResponse(200, body)

    session = FakeSession(handler)
    f = TileFetcher(TEMPLATE, "ua", 1, session=session)
    f.start()

    coords = [TileCoordinate(x, 0, 5) for x in range(4)]
    results = {}
    callers = [threading.Thread(target=lambda c=c: results.setdefault(c.key, f.submit(c)))
               for c in coords]
    for t in callers:
        t.start()
    assert entered.wait(5)
    for _ in range(500):
        if len(f.outstanding()) == 4:
            break
        threading.Event().wait(0.01)
    assert len(f.outstanding()) == 4

    stopper = threading.Thread(target=f.stop)
    stopper.start()
    for _ in range(500):
        if not f.WORKING.is_set():
            break
        threading.Event().wait(0.01)
    release.set()
    stopper.join(10)
    for t in callers:
        t.join(10)

    assert not stopper.is_alive()
    assert all(not t.is_alive() for t in callers)
    assert len(results) == 4

    stopped = [t for t in results.values() if isinstance(t.error, FetcherStopped)]
    fetched = [t for t in results.values() if t.ok]
    assert len(stopped) + len(fetched) == 4
    assert len(stopped) >= 1
    assert len(session.calls) == len(fetched)
    for t in stopped:
        assert t.url == f.make_tile_url(t.coords)
        assert t.image is None
    assert f.outstanding() == []
    assert f.queue.empty()
