#!/usr/bin/env python3
import threading
import logging

from tilescan.tsimage import TsImage
from tilescan.utils.constants import PLACEHOLDER_COLOR

log = logging.getLogger(__name__)


class StitchError(Exception):
    pass


class TileMap(object):
    """
    Sparse x -> y -> FetchedTile grid holding the tiles of one batch.

    Each cell is fetched once per batch, so a second insert for the same
    (x, y) means the caller broke that rule.  The newer tile wins and the
    collision is logged.
    """

    def __init__(self, log=None):
        self._m = {}
        self._lock = threading.Lock()
        self.log = log if log is not None else logging.getLogger(__name__)

    def __len__(self):
        with self._lock:
            return sum(len(col) for col in self._m.values())

    def __contains__(self, xy):
        x, y = xy
        with self._lock:
            return y in self._m.get(x, {})

    def insert(self, tile):
        x, y = tile.coords.x, tile.coords.y
        with self._lock:
            col = self._m.setdefault(x, {})
            if y in col:
                self.log.warning(f"Duplicate insert into tile map x={x} y={y}, replacing")
            col[y] = tile

    def get(self, x, y):
        with self._lock:
            return self._m.get(x, {}).get(y)

    def iterate(self, fn):
        """Call fn(x, y, tile) for every stored cell, x-major order."""
        with self._lock:
            cells = [(x, y, tile)
                     for x in sorted(self._m)
                     for y, tile in sorted(self._m[x].items())]
        for x, y, tile in cells:
            fn(x, y, tile)

    def stitch(self, tile_bbox, tile_size):
        """
        Compose every cell of tile_bbox into one image.

        Must only run after all fetches of the batch have completed.

        Raises:
            StitchError: a cell is missing, or its image is not
                         tile_size x tile_size
        """
        width = tile_bbox.width * tile_size
        height = tile_bbox.height * tile_size
        self.log.info(f"Stitching {tile_bbox.width}x{tile_bbox.height} tiles into {width}x{height} image")

        with self._lock:
            grid = {x: dict(col) for x, col in self._m.items()}

        canvas = TsImage.new("RGBA", (width, height), PLACEHOLDER_COLOR)
        for x in range(tile_bbox.min_x, tile_bbox.max_x + 1):
            for y in range(tile_bbox.min_y, tile_bbox.max_y + 1):
                tile = grid.get(x, {}).get(y)
                if tile is None or tile.image is None:
                    raise StitchError(f"tile x={x} y={y} missing from tile map")
                if tuple(tile.image.size) != (tile_size, tile_size):
                    raise StitchError(
                        f"tile x={x} y={y} is {tile.image.size[0]}x{tile.image.size[1]}, "
                        f"expected {tile_size}x{tile_size}"
                    )
                pos = ((x - tile_bbox.min_x) * tile_size, (y - tile_bbox.min_y) * tile_size)
                canvas.paste(tile.image, pos)
        return canvas
