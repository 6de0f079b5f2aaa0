#!/usr/bin/env python3

import os
import re
import ast
import configparser
from types import SimpleNamespace

from tilescan.scanner import ScannerSettings
from tilescan.utils.constants import LOGS_DIR, PROGRAM_NAME, TILE_SIZE
from tilescan.utils.tilemath import GeoBoundingBox
from tilescan.version import __version__

import logging
log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration is missing or malformed.  Fatal at startup."""


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text):
    """
    Parse a duration such as ``1h30m``, ``90s``, ``250ms`` or a bare number
    of seconds.  Returns seconds as a float.

    Raises:
        ConfigError: text is empty or malformed
    """
    s = '' if text is None else str(text).strip()
    if not s:
        raise ConfigError("empty duration")

    try:
        return float(s)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if not m:
            raise ConfigError(f"invalid duration {text!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    return total


class SectionParser(object):
    true = ['true', '1', 'yes', 'on']
    false = ['false', '0', 'no', 'off']

    def __init__(self, /, **kwargs):
        for k, v in kwargs.items():
            sv = '' if v is None else str(v)
            s = sv.strip()

            # Detect booleans
            if s.lower() in self.true:
                parsed_val = True
            elif s.lower() in self.false:
                parsed_val = False
            # Detect list
            elif s.startswith('[') and s.endswith(']'):
                try:
                    parsed_val = ast.literal_eval(s)
                except (ValueError, SyntaxError):
                    parsed_val = s
            else:
                parsed_val = s

            self.__dict__.update({k: parsed_val})

    def __repr__(self):
        items = (f"{k}={v!r}" for k, v in self.__dict__.items())
        return "{}({})".format(type(self).__name__, ", ".join(items))

    def __eq__(self, other):
        if isinstance(other, (SectionParser, SimpleNamespace)):
            return self.__dict__ == other.__dict__
        return NotImplemented


class TSConfig(object):

    _defaults = f"""
[general]
# Console log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
console_log_level = INFO
# File log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
file_log_level = DEBUG
log_file = {os.path.join(LOGS_DIR, "tilescan.log")}

[scanner]
# Area to scan as [lat_min, lon_min, lat_max, lon_max]
bbox =
# Time between batches, e.g. 1h30m, 90s, 250ms, or plain seconds
frequency = 1h
# Each batch is written to a timestamped directory below this one
output = ./tiles
# {{x}}, {{y}} and {{z}} are substituted per tile
tile_server = https://backend.wplace.live/files/s0/tiles/{{x}}/{{y}}.png
user_agent = {PROGRAM_NAME}/{__version__}
# Upper bound on simultaneous HTTP requests
max_concurrency = 4
zoom_level = 11
# Also write stitched.png combining every tile of a batch
stitch_tiles = False
# Pixel size of a tile, used for stitching and placeholders
tile_size = {TILE_SIZE}
# Seconds
request_timeout = 30
connect_timeout = 5
"""

    def __init__(self, conf_file=None):
        self.config = configparser.ConfigParser(strict=False, allow_no_value=True,
                                                comment_prefixes='/', interpolation=None)
        if not conf_file:
            self.conf_file = os.path.join(os.getcwd(), "config.ini")
        else:
            self.conf_file = conf_file

        self.ready = self.load()

    def load(self):
        # Defaults fill whatever the file leaves out, see _sanitize_and_patch_config
        if os.path.isfile(self.conf_file):
            log.info(f"Config file found {self.conf_file} reading...")
            try:
                self.config.read(self.conf_file)
            except configparser.Error as err:
                raise ConfigError(f"failed to parse {self.conf_file}: {err}") from err
        else:
            log.info("No config file found. Using defaults...")

        self.get_config()
        return True

    def _load_defaults_parser(self):
        """Create a ConfigParser loaded with internal defaults."""
        defaults_cp = configparser.ConfigParser(strict=False, allow_no_value=True,
                                                comment_prefixes='/', interpolation=None)
        defaults_cp.read_string(self._defaults)
        return defaults_cp

    def _sanitize_and_patch_config(self):
        """Fill missing sections and keys from the defaults."""
        defaults_cp = self._load_defaults_parser()
        patched = False

        for sect in defaults_cp.sections():
            if not self.config.has_section(sect):
                self.config.add_section(sect)
                patched = True

            for key, def_val in defaults_cp.items(sect):
                if self.config.has_option(sect, key):
                    continue
                if key.startswith('#'):
                    # Avoid trailing '=' in comment lines
                    self.config.set(sect, key, None)
                else:
                    self.config.set(sect, key, str(def_val))
                patched = True

        self._patched_during_load = patched

    def get_config(self):
        # Pull info from ConfigParser object into TSConfig
        self._sanitize_and_patch_config()

        # Comment lines are kept as value-less keys so they survive a save
        config_dict = {sect: SectionParser(**{k: v for k, v in self.config.items(sect)
                                              if not k.startswith('#')})
                       for sect in self.config.sections()}
        self.__dict__.update(**config_dict)

        # Only persist when the user already has a config file
        if getattr(self, "_patched_during_load", False) and os.path.isfile(self.conf_file):
            try:
                self.save()
            except OSError as e:
                log.error(f"Failed to persist patched config defaults: {e}")
        self._patched_during_load = False

    def save(self):
        log.info("Saving config ... ")
        with open(self.conf_file, 'w') as h:
            self.config.write(h)
        log.info(f"Wrote config file: {self.conf_file}")

    def _get(self, key):
        return getattr(self.scanner, key, '')

    def _raw(self, key):
        # Unparsed string; SectionParser would turn "1" or "0" into a bool
        return (self.config.get('scanner', key, fallback='') or '').strip()

    def _get_int(self, key, minimum=None):
        raw = self._raw(key)
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"scanner.{key} must be an integer, got {raw!r}")
        if minimum is not None and value < minimum:
            raise ConfigError(f"scanner.{key} must be >= {minimum}, got {value}")
        return value

    def _get_float(self, key):
        raw = self._raw(key)
        try:
            value = float(raw)
        except ValueError:
            raise ConfigError(f"scanner.{key} must be a number, got {raw!r}")
        if value <= 0:
            raise ConfigError(f"scanner.{key} must be positive, got {value}")
        return value

    def to_settings(self) -> ScannerSettings:
        """
        Validate the [scanner] section and build ScannerSettings.

        Raises:
            ConfigError: any value is missing or malformed
        """
        raw_bbox = self._get('bbox')
        if raw_bbox in ('', None):
            raise ConfigError("scanner.bbox is required: [lat_min, lon_min, lat_max, lon_max]")
        if not isinstance(raw_bbox, (list, tuple)):
            raise ConfigError(f"scanner.bbox is not a list: {raw_bbox!r}")
        try:
            bbox = GeoBoundingBox.from_list(raw_bbox)
        except ValueError as err:
            raise ConfigError(f"scanner.bbox: {err}") from err

        frequency = parse_duration(self._raw('frequency'))
        if frequency <= 0:
            raise ConfigError(f"scanner.frequency must be positive, got {self._raw('frequency')!r}")

        stitch = self._get('stitch_tiles')
        if not isinstance(stitch, bool):
            raise ConfigError(f"scanner.stitch_tiles must be a boolean, got {stitch!r}")

        output = self._raw('output')
        if not output:
            raise ConfigError("scanner.output is required")

        tile_server = self._raw('tile_server')
        if not tile_server:
            raise ConfigError("scanner.tile_server is required")

        zoom = self._get_int('zoom_level', minimum=0)
        if zoom > 30:
            raise ConfigError(f"scanner.zoom_level must be <= 30, got {zoom}")

        return ScannerSettings(
            bbox=bbox,
            output_directory=os.path.expanduser(output),
            tile_server_url=tile_server,
            user_agent=self._raw('user_agent') or f"{PROGRAM_NAME}/{__version__}",
            max_concurrent_requests=self._get_int('max_concurrency', minimum=1),
            zoom_level=zoom,
            frequency=frequency,
            generate_stitches=stitch,
            tile_size=self._get_int('tile_size', minimum=1),
            request_timeout=self._get_float('request_timeout'),
            connect_timeout=self._get_float('connect_timeout'),
        )
