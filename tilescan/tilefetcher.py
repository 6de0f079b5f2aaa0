#!/usr/bin/env python3
"""
Bounded-concurrency tile fetcher.

Any number of threads may call ``TileFetcher.submit()`` at once.  Requests go
through one queue to a dispatcher thread which admits at most
``max_concurrent`` of them onto the worker pool at a time.  Each caller waits
on its own reply slot, registered in the correlation table under the tile's
canonical key, until the worker hands back the finished ``FetchedTile``.

Usage:
    fetcher = TileFetcher("https://tiles.example.org/{z}/{x}/{y}.png",
                          user_agent="tilescan/0.3", max_concurrent=4)
    fetcher.start()
    tile = fetcher.submit(TileCoordinate(1, 2, 3))
    if tile.error:
        ...
    fetcher.stop()
"""
import logging
import threading
import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from queue import Queue, Empty
from typing import Optional

import requests

from tilescan.tsimage import TsImage
from tilescan.tsstats import StatTracker, inc_many, inc_stat
from tilescan.utils.constants import TRACE
from tilescan.utils.tilemath import TileCoordinate

log = logging.getLogger(__name__)

# Rolling fetch durations (seconds) per zoom level
fetch_stats = StatTracker(maxlen=50)


class TileFetchError(Exception):
    """A single tile could not be fetched.  Never fatal for a batch."""


class TileHTTPError(TileFetchError):
    def __init__(self, status_code, reason=""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"failed to fetch tile: {status_code} {reason}".rstrip())


class TileDecodeError(TileFetchError):
    pass


class TileTransportError(TileFetchError):
    pass


class FetcherStopped(TileFetchError):
    pass


class DuplicateTileRequest(Exception):
    """A request for the same tile key is already outstanding."""


def _utcnow():
    return datetime.now(timezone.utc)


def parse_http_time(value):
    """Parse an HTTP date header (RFC 7231).  Returns None if absent or invalid."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class FetchedTile:
    """
    Outcome of one fetch attempt.

    On failure ``error`` is set and ``image`` is None until the caller
    substitutes a placeholder (and sets ``placeholder``).
    """

    coords: TileCoordinate
    image: Optional[TsImage.TsImage] = None
    url: str = ""
    status_code: Optional[int] = None
    headers: dict = field(default_factory=dict, repr=False)
    last_modified: Optional[datetime] = None
    request_time: Optional[datetime] = None
    received_time: Optional[datetime] = None
    error: Optional[TileFetchError] = None
    placeholder: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.image is not None

    @property
    def duration(self) -> Optional[float]:
        if self.request_time is None or self.received_time is None:
            return None
        return (self.received_time - self.request_time).total_seconds()


def create_http_session(pool_size=10):
    """
    requests session whose connection pool matches the fetch concurrency.

    pool_block=False: the admission gate already bounds concurrency, the pool
    must never be the thing that blocks.
    """
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=0,
        pool_block=False,
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    log.debug(f"Created requests session (pool_size={pool_size})")
    return session


class _Reply(object):
    """Single-use mailbox for one submitted request."""
    __slots__ = ("coords", "ready", "tile")

    def __init__(self, coords):
        self.coords = coords
        self.ready = threading.Event()
        self.tile = None


class TileFetcher(object):

    def __init__(self, url_template, user_agent, max_concurrent,
                 session=None, timeout=(5, 30), log=None):
        max_concurrent = int(max_concurrent)
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        self.url_template = url_template
        self.user_agent = user_agent
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.session = session if session is not None else create_http_session(pool_size=max_concurrent)
        self.log = log if log is not None else logging.getLogger(__name__)

        self.queue = Queue()
        self.WORKING = threading.Event()

        # Correlation table: tile key -> _Reply
        self._replies = {}
        self._replies_lock = threading.Lock()

        # Admission gate
        self._gate = threading.BoundedSemaphore(max_concurrent)
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

        self._pool = None
        self._dispatcher = None
        self._lifecycle_lock = threading.Lock()

    def __repr__(self):
        return f"TileFetcher({self.url_template!r}, max_concurrent={self.max_concurrent})"

    @property
    def in_flight(self) -> int:
        with self._in_flight_lock:
            return self._in_flight

    def outstanding(self):
        """Keys currently registered in the correlation table."""
        with self._replies_lock:
            return sorted(self._replies.keys())

    def make_tile_url(self, coords: TileCoordinate) -> str:
        return (self.url_template
                .replace("{x}", str(coords.x))
                .replace("{y}", str(coords.y))
                .replace("{z}", str(coords.z)))

    def start(self):
        with self._lifecycle_lock:
            if self._dispatcher is not None:
                return
            self._pool = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_concurrent,
                thread_name_prefix="tile_fetch",
            )
            self.WORKING.set()
            self._dispatcher = threading.Thread(
                target=self._dispatch, name="tile_dispatch", daemon=True
            )
            self._dispatcher.start()
            self.log.debug(f"Started {self}")

    def stop(self):
        with self._lifecycle_lock:
            if self._dispatcher is None:
                return
            with self._replies_lock:
                self.WORKING.clear()
            self.queue.put(None)
            self._dispatcher.join()
            self._pool.shutdown(wait=True)
            self._dispatcher = None
            self._pool = None

            # Whatever is still registered never reached a worker
            with self._replies_lock:
                stranded, self._replies = self._replies, {}
            while True:
                try:
                    self.queue.get_nowait()
                except Empty:
                    break

        for reply in stranded.values():
            reply.tile = FetchedTile(
                coords=reply.coords,
                url=self.make_tile_url(reply.coords),
                error=FetcherStopped("fetcher stopped before the request was sent"),
            )
            reply.ready.set()
        self.log.debug(f"Stopped {self}, {len(stranded)} requests abandoned")

    def submit(self, coords: TileCoordinate) -> FetchedTile:
        """
        Fetch one tile, blocking until it has succeeded or failed.

        Per-tile failures are returned in FetchedTile.error, not raised.

        Raises:
            DuplicateTileRequest: a request for coords is already outstanding
            FetcherStopped: the fetcher is not running
        """
        key = coords.key
        reply = _Reply(coords)
        with self._replies_lock:
            if not self.WORKING.is_set():
                raise FetcherStopped("fetcher is not running")
            if key in self._replies:
                raise DuplicateTileRequest(f"request for tile {key} is already outstanding")
            self._replies[key] = reply
            # Enqueue under the lock so stop() never drains before this lands
            self.queue.put(coords)

        reply.ready.wait()
        return reply.tile

    def _dispatch(self):
        while self.WORKING.is_set():
            try:
                coords = self.queue.get(timeout=5)
            except Empty:
                continue
            if coords is None:
                continue

            self._gate.acquire()
            try:
                self._pool.submit(self._worker, coords)
            except RuntimeError:
                # Pool shut down underneath us
                self._gate.release()
                self._deliver(FetchedTile(coords=coords, error=FetcherStopped("fetcher stopped")))

    def _worker(self, coords):
        with self._in_flight_lock:
            self._in_flight += 1
        try:
            tile = self.fetch(coords)
        except Exception as err:
            # A caller must never be left waiting on a reply
            self.log.exception(f"Unexpected error fetching tile {coords}: {err}")
            tile = FetchedTile(coords=coords, url=self.make_tile_url(coords),
                               error=TileFetchError(str(err)))
        finally:
            with self._in_flight_lock:
                self._in_flight -= 1
            self._gate.release()
        self._deliver(tile)

    def _deliver(self, tile):
        key = tile.coords.key
        with self._replies_lock:
            reply = self._replies.pop(key, None)
            if reply is None:
                self.log.warning(f"No reply slot registered for tile key={key}, dropping result")
                return
            reply.tile = tile
            reply.ready.set()

    def fetch(self, coords: TileCoordinate) -> FetchedTile:
        """
        Perform one HTTP GET for coords in the calling thread.
        """
        url = self.make_tile_url(coords)
        tile = FetchedTile(coords=coords, url=url)
        self.log.info(f"Fetching tile url={url} x={coords.x} y={coords.y} z={coords.z}")

        resp = None
        tile.request_time = _utcnow()
        try:
            resp = self.session.get(url, headers={"user-agent": self.user_agent}, timeout=self.timeout)
            tile.status_code = resp.status_code
            tile.last_modified = parse_http_time(resp.headers.get("last-modified"))
            tile.headers = dict(resp.headers)

            if resp.status_code != 200:
                raise TileHTTPError(resp.status_code, getattr(resp, "reason", "") or "")

            data = resp.content
            inc_stat('bytes_dl', len(data))
            try:
                tile.image = TsImage.load_from_memory(data)
            except TsImage.TsImageException as err:
                raise TileDecodeError(f"failed to decode image: {err}") from err

            self.log.log(TRACE, f"Fetched tile url={url} headers={tile.headers}")
        except requests.exceptions.RequestException as err:
            tile.error = TileTransportError(str(err))
        except TileFetchError as err:
            tile.error = err
        finally:
            tile.received_time = _utcnow()
            if resp is not None:
                resp.close()

        duration_ms = int(tile.duration * 1000)
        if tile.error is None:
            inc_stat('req_ok')
            fetch_stats.set(coords.z, tile.duration)
            self.log.debug(f"Fetched tile url={url} status={tile.status_code} duration_ms={duration_ms}")
        else:
            counters = {'req_err': 1}
            if tile.status_code is not None:
                counters[f'http_{tile.status_code}'] = 1
            inc_many(counters)
            self.log.warning(f"Failed to download tile url={url} status={tile.status_code} "
                             f"duration_ms={duration_ms} err={tile.error}")
        return tile
