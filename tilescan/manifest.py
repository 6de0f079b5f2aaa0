#!/usr/bin/env python3
"""
Per-batch manifest: one record per requested tile, written as JSON next to
the tile images.

Records are always built from the completed FetchedTile, so placeholder
tiles get a record with whatever the failed attempt learned (URL, timings,
status) rather than fields reconstructed from the request.
"""
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ManifestFrozen(Exception):
    pass


def format_time(ts: Optional[datetime]) -> Optional[str]:
    """RFC 3339 UTC with microseconds and a Z suffix."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class GeneratorInfo:
    version: str
    program: str

    def to_dict(self) -> dict:
        return {"version": self.version, "program": self.program}


@dataclass(frozen=True)
class TileRecord:
    url: str
    filename: str
    last_modified: datetime
    request_time: Optional[datetime]
    received_time: Optional[datetime]
    http_response_code: int

    @classmethod
    def from_tile(cls, tile) -> "TileRecord":
        return cls(
            url=tile.url,
            filename=f"{tile.coords.x}/{tile.coords.y}.png",
            last_modified=tile.last_modified or EPOCH,
            request_time=tile.request_time,
            received_time=tile.received_time,
            http_response_code=tile.status_code or 0,
        )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "filename": self.filename,
            "lastModified": format_time(self.last_modified),
            "requestTime": format_time(self.request_time),
            "receivedTime": format_time(self.received_time),
            "httpResponseCode": self.http_response_code,
        }


class Manifest(object):

    def __init__(self, generator: GeneratorInfo, timestamp: datetime, tile_count: int):
        self.generator = generator
        self.timestamp = timestamp
        self.tile_count = tile_count
        self._records: List[TileRecord] = []
        self._lock = threading.Lock()
        self._frozen = False

    def __len__(self):
        with self._lock:
            return len(self._records)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def records(self) -> List[TileRecord]:
        with self._lock:
            return list(self._records)

    def add_tile(self, tile) -> TileRecord:
        record = TileRecord.from_tile(tile)
        with self._lock:
            if self._frozen:
                raise ManifestFrozen(f"manifest for batch {format_time(self.timestamp)} is already written")
            self._records.append(record)
        return record

    def freeze(self):
        with self._lock:
            self._frozen = True

    def to_dict(self) -> dict:
        with self._lock:
            tiles = [r.to_dict() for r in self._records]
        return {
            "generator": self.generator.to_dict(),
            "timestamp": format_time(self.timestamp),
            "tileCount": self.tile_count,
            "tiles": tiles,
        }

    def write(self, path):
        """
        Serialize to path and freeze.  OSError from the filesystem propagates.
        """
        self.freeze()
        data = json.dumps(self.to_dict(), indent="\t")
        with open(path, "w", encoding="utf-8") as h:
            h.write(data)
        log.debug(f"Wrote manifest file={path} tiles={len(self)}")
