"""tilescan - periodic slippy-map tile scanner"""
from tilescan.version import __version__  # noqa: F401
