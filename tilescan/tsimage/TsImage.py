#!/usr/bin/env python

from io import BytesIO

from PIL import Image, UnidentifiedImageError

import logging
log = logging.getLogger(__name__)


class TsImageException(Exception):
    pass


class TsImage(object):
    """
    Thin wrapper around a Pillow RGBA image.

    Every image that flows through the scanner is kept in RGBA so that
    pasting and placeholder tiles behave the same regardless of what
    palette or bit depth the tile server used.
    """

    def __init__(self, img):
        if img.mode != "RGBA":
            img = img.convert("RGBA")
        self._img = img

    def __repr__(self):
        return f"TsImage(width: {self.size[0]} height: {self.size[1]} mode: {self._img.mode})"

    @property
    def size(self):
        return self._img.size

    @property
    def pil(self):
        return self._img

    def getpixel(self, pos):
        return self._img.getpixel(pos)

    def paste(self, p_img, pos):
        """
        Opaquely copy p_img into this image with its top-left corner at pos.
        """
        x, y = pos
        w, h = p_img.size
        if x < 0 or y < 0:
            raise TsImageException(f"paste: invalid position ({x}, {y})")
        if x + w > self.size[0] or y + h > self.size[1]:
            raise TsImageException(
                f"paste: image extends beyond bounds: pos=({x},{y}), "
                f"size=({w}x{h}), dest=({self.size[0]}x{self.size[1]})"
            )
        # No mask: source pixels overwrite, alpha included
        self._img.paste(p_img.pil, (x, y))

    def to_png(self):
        buf = BytesIO()
        self._img.save(buf, format="PNG")
        return buf.getvalue()

    def write_png(self, filename):
        """
        Write PNG to filename.  OSError from the filesystem propagates.
        """
        self._img.save(filename, format="PNG")


## factories
def new(mode, wh, color):
    assert mode == "RGBA", "Sorry, only RGBA supported"
    return TsImage(Image.new(mode, tuple(wh), tuple(color)))


def load_from_memory(mem):
    """
    Decode an image from bytes.

    Raises:
        TsImageException: if mem is empty or not a decodable image
    """
    if not mem:
        raise TsImageException("load_from_memory: no data")

    try:
        img = Image.open(BytesIO(mem))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as err:
        raise TsImageException(f"load_from_memory: {err}") from err

    log.debug(f"TsImage: decoded {img.size[0]}x{img.size[1]} {img.mode} image from {len(mem)} bytes")
    return TsImage(img)


def open(filename):
    with Image.open(filename) as img:
        img.load()
        return TsImage(img.copy())
