#!/usr/bin/env python3
"""
Batch orchestrator.

Every ``frequency`` seconds the configured bounding box is turned into a tile
grid, one fetch per cell is fanned out, and the results are fanned back in to
per-tile PNG files, a TileMap and a Manifest:

    <output>/<batch timestamp>/<x>/<y>.png
    <output>/<batch timestamp>/manifest.json
    <output>/<batch timestamp>/stitched.png   (stitching enabled)

A single tile or a single write failing never ends a batch.
"""
import os
import time
import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from tilescan.manifest import GeneratorInfo, Manifest
from tilescan.tilefetcher import DuplicateTileRequest, FetchedTile, TileFetchError, TileFetcher, fetch_stats
from tilescan.tilemap import StitchError, TileMap
from tilescan.tsimage import TsImage
from tilescan.tsstats import inc_many, snapshot, update_process_memory_stat
from tilescan.utils.constants import (
    BATCH_TIME_FORMAT,
    MANIFEST_FILENAME,
    PLACEHOLDER_COLOR,
    PROGRAM_NAME,
    STITCHED_FILENAME,
    TILE_SIZE,
)
from tilescan.utils.tilemath import GeoBoundingBox, TileBoundingBox, tile_bounding_box
from tilescan.version import __version__

log = logging.getLogger(__name__)


@dataclass
class ScannerSettings:
    """Everything the scanner core needs, already parsed and validated."""

    bbox: GeoBoundingBox
    output_directory: str
    tile_server_url: str
    user_agent: str
    max_concurrent_requests: int = 4
    zoom_level: int = 11
    frequency: float = 3600.0
    generate_stitches: bool = False
    tile_size: int = TILE_SIZE
    request_timeout: float = 30.0
    connect_timeout: float = 5.0

    def __post_init__(self):
        if int(self.max_concurrent_requests) < 1:
            raise ValueError(f"max_concurrent_requests must be >= 1, got {self.max_concurrent_requests}")
        if not 0 <= int(self.zoom_level) <= 30:
            raise ValueError(f"zoom_level must be between 0 and 30, got {self.zoom_level}")
        if self.frequency <= 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")
        if int(self.tile_size) < 1:
            raise ValueError(f"tile_size must be positive, got {self.tile_size}")
        if self.request_timeout <= 0 or self.connect_timeout <= 0:
            raise ValueError("timeouts must be positive")


@dataclass
class BatchResult:
    directory: str
    timestamp: datetime
    tile_bbox: TileBoundingBox
    tile_count: int
    fetch_count: int
    failed_count: int
    manifest: Manifest
    tile_map: TileMap
    manifest_path: Optional[str] = None
    stitched_path: Optional[str] = None
    # Process-wide counters as of the end of the batch
    stats: Optional[dict] = None


class Scanner(object):

    def __init__(self, settings, session=None, fetcher=None, log=None, clock=None):
        self.settings = settings
        self.log = log if log is not None else logging.getLogger(__name__)

        if fetcher is None:
            fetcher = TileFetcher(
                settings.tile_server_url,
                settings.user_agent,
                settings.max_concurrent_requests,
                session=session,
                timeout=(settings.connect_timeout, settings.request_timeout),
                log=log,
            )
        self.fetcher = fetcher
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()

    def check_output_directory(self):
        """Create the output directory.  OSError is fatal and propagates."""
        self.log.info(f"Making sure the output directory exists outputDirectory={self.settings.output_directory}")
        os.makedirs(self.settings.output_directory, exist_ok=True)

    def run(self, once=False):
        self.log.info("Starting.")
        self.log.debug(f"Our settings: {self.settings}")

        self.check_output_directory()
        self._stop.clear()
        self.fetcher.start()

        frequency = self.settings.frequency
        try:
            # First batch right away, then on a fixed schedule
            next_tick = time.monotonic()
            while not self._stop.is_set():
                self.download()
                if once:
                    break

                next_tick += frequency
                now = time.monotonic()
                if now > next_tick:
                    missed = int((now - next_tick) // frequency) + 1
                    self.log.warning(f"Batch overran the scan interval, skipping {missed} tick(s)")
                    next_tick += missed * frequency
                if self._stop.wait(next_tick - now):
                    break
        finally:
            self.fetcher.stop()
        self.log.info("Stopped.")

    def stop(self):
        self._stop.set()

    def tile_bounding_box(self) -> TileBoundingBox:
        return tile_bounding_box(self.settings.bbox, self.settings.zoom_level)

    def download(self) -> BatchResult:
        """Run one complete batch over the configured grid."""
        zoom = self.settings.zoom_level
        tile_bbox = self.tile_bounding_box()
        tile_count = tile_bbox.tile_count

        batch_time = self._now()
        directory = os.path.join(self.settings.output_directory, batch_time.strftime(BATCH_TIME_FORMAT))
        self.log.info(f"Scheduling batch of tile downloads tileCount={tile_count} "
                      f"bbox={tile_bbox} directory={directory}")

        tile_map = TileMap(log=self.log)
        manifest = Manifest(
            GeneratorInfo(version=__version__, program=PROGRAM_NAME),
            timestamp=batch_time,
            tile_count=tile_count,
        )

        counts = {"fetched": 0, "failed": 0}
        counts_lock = threading.Lock()
        started = time.monotonic()

        def download_cell(coords):
            self.log.debug(f"Scheduling tile download x={coords.x} y={coords.y}")
            tile = self.get_tile(coords)
            with counts_lock:
                counts["fetched"] += 1
                if tile.placeholder:
                    counts["failed"] += 1
            try:
                self.write_tile(tile, directory)
            except Exception as err:
                self.log.exception(f"Unexpected error writing tile x={coords.x} y={coords.y}: {err}")
            finally:
                tile_map.insert(tile)
                manifest.add_tile(tile)

        workers = []
        for coords in tile_bbox.coordinates(zoom):
            t = threading.Thread(target=download_cell, args=(coords,),
                                 name=f"tile_{coords.key}", daemon=True)
            t.start()
            workers.append(t)

        # Barrier: every cell must finish before the manifest and stitch
        for t in workers:
            t.join()

        result = BatchResult(
            directory=directory,
            timestamp=batch_time,
            tile_bbox=tile_bbox,
            tile_count=tile_count,
            fetch_count=counts["fetched"],
            failed_count=counts["failed"],
            manifest=manifest,
            tile_map=tile_map,
        )

        result.manifest_path = self.write_manifest(manifest, directory)
        if self.settings.generate_stitches:
            result.stitched_path = self.write_stitched(tile_map, tile_bbox, directory)

        elapsed = time.monotonic() - started
        inc_many({"batches": 1, "tiles_ok": result.fetch_count - result.failed_count,
                  "tiles_failed": result.failed_count})
        rss = update_process_memory_stat()
        rss_mb = round(rss / 1048576, 1) if rss else None
        totals = snapshot()
        self.log.info(f"STATS: batch={os.path.basename(directory)} tiles={result.fetch_count} "
                      f"failed={result.failed_count} elapsed_s={elapsed:.2f} "
                      f"avg_fetch_s={fetch_stats.get(zoom)} rss_mb={rss_mb}")
        result.stats = totals
        self.log.info("STATS: totals " + " ".join(f"{k}={v}" for k, v in sorted(totals.items())))
        return result

    def empty_tile(self):
        size = self.settings.tile_size
        return TsImage.new("RGBA", (size, size), PLACEHOLDER_COLOR)

    def get_tile(self, coords):
        """Fetch coords, substituting a placeholder image on any failure."""
        try:
            tile = self.fetcher.submit(coords)
        except (TileFetchError, DuplicateTileRequest) as err:
            tile = FetchedTile(coords=coords, url=self.fetcher.make_tile_url(coords), error=err)
        if tile.error is not None or tile.image is None:
            self.log.error(f"Using empty tile in place of failed tile x={coords.x} y={coords.y} "
                           f"status={tile.status_code} err={tile.error}")
            tile.image = self.empty_tile()
            tile.placeholder = True
            if not tile.url:
                tile.url = self.fetcher.make_tile_url(coords)
        return tile

    def write_tile(self, tile, directory):
        """
        Write tile to <directory>/<x>/<y>.png.  Returns the path, or None if
        the file could not be written; the manifest record is kept either way.
        """
        subdirectory = os.path.join(directory, str(tile.coords.x))
        try:
            os.makedirs(subdirectory, exist_ok=True)
        except OSError as err:
            self.log.error(f"Failed to create directory for tiles dir={subdirectory} err={err}")
            return None

        filename = os.path.join(subdirectory, f"{tile.coords.y}.png")
        try:
            tile.image.write_png(filename)
        except (OSError, ValueError) as err:
            self.log.error(f"Failed to write tile file={filename} err={err}")
            return None

        self.log.debug(f"Wrote file successfully file={filename}")
        return filename

    def write_manifest(self, manifest, directory):
        path = os.path.join(directory, MANIFEST_FILENAME)
        try:
            os.makedirs(directory, exist_ok=True)
            manifest.write(path)
        except OSError as err:
            self.log.error(f"Failed to write manifest file file={path} err={err}")
            return None
        self.log.info(f"Wrote manifest file={path} tiles={len(manifest)}")
        return path

    def write_stitched(self, tile_map, tile_bbox, directory):
        path = os.path.join(directory, STITCHED_FILENAME)
        try:
            image = tile_map.stitch(tile_bbox, self.settings.tile_size)
            os.makedirs(directory, exist_ok=True)
            image.write_png(path)
        except StitchError as err:
            self.log.error(f"Failed to stitch tiles err={err}")
            return None
        except (OSError, ValueError) as err:
            self.log.error(f"Failed to write stitched image file={path} err={err}")
            return None
        self.log.info(f"Wrote stitched image file={path}")
        return path
