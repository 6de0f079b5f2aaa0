#!/usr/bin/env python3

import signal
import argparse

from tilescan.scanner import Scanner
from tilescan.utils.constants import PROGRAM_NAME
from tilescan.version import __version__

import logging
log = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="tilescan: periodic slippy-map tile scanner"
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.ini",
        help = "Path to the INI config file (default: %(default)s)"
    )
    parser.add_argument(
        "--debug",
        default=False,
        action="store_true",
        help = "Log everything, including response headers."
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{PROGRAM_NAME} {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="command")
    start_parser = subparsers.add_parser(
        "start",
        help = "Start scanning the configured area."
    )
    start_parser.add_argument(
        "--once",
        default=False,
        action="store_true",
        help = "Run a single batch and exit."
    )
    return parser


def start(cfg, once=False):
    """Build the scanner from cfg and run it until stopped."""
    log.info(f"tilescan version: {__version__}")
    settings = cfg.to_settings()
    scanner = Scanner(settings)

    def _request_stop(signum, frame):
        log.info(f"Shutdown requested (signal {signum}). Finishing current batch...")
        scanner.stop()

    for _sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(_sig, _request_stop)
        except ValueError:
            # Not the main thread
            pass

    scanner.run(once=once)
    log.info("tilescan exit.")
    return scanner
