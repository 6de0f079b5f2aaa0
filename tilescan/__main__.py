import os
import sys
import logging
import logging.handlers

from tilescan.tilescan import build_parser, start
from tilescan.tsconfig import ConfigError, TSConfig
from tilescan.utils.constants import system_type


def setuplogs(cfg, debug=False):
    log_file = getattr(cfg.general, 'log_file', '') or ''
    log_file = os.path.expanduser(str(log_file))

    # Get log levels from config
    file_log_level_str = str(getattr(cfg.general, 'file_log_level', 'DEBUG')).upper()
    console_log_level_str = str(getattr(cfg.general, 'console_log_level', 'INFO')).upper()

    if debug or os.environ.get('TILESCAN_DEBUG'):
        file_log_level_str = 'TRACE'
        console_log_level_str = 'TRACE'

    # Convert to logging levels
    file_log_level = logging.getLevelName(file_log_level_str)
    if not isinstance(file_log_level, int):
        file_log_level = logging.DEBUG
    console_log_level = logging.getLevelName(console_log_level_str)
    if not isinstance(console_log_level, int):
        console_log_level = logging.INFO

    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - service=tilescan %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    handlers = []
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.isdir(log_dir):
            os.makedirs(log_dir)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=10485760,
            backupCount=5
        )
        file_handler.setLevel(file_log_level)
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Console goes to stderr
    if sys.stderr is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_log_level)
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Root logger at the minimum so every handler sees what it wants
    logging.basicConfig(
        level=min(file_log_level, console_log_level),
        handlers=handlers,
        force=True
    )

    log = logging.getLogger(__name__)
    log.info(f"Setup logs: {log_file or 'console only'}")
    log.info(f"File log level: {file_log_level_str}, Console log level: {console_log_level_str}")


# If SSL_CERT_DIR is not set, default to /etc/ssl/certs when available for Linux users.
if system_type == 'linux' and "SSL_CERT_DIR" not in os.environ and os.path.isdir("/etc/ssl/certs"):
    os.environ["SSL_CERT_DIR"] = "/etc/ssl/certs"


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    log = logging.getLogger(__name__)
    try:
        cfg = TSConfig(args.config)
        setuplogs(cfg, debug=args.debug)
        if args.command == "start":
            start(cfg, once=args.once)
    except ConfigError as err:
        log.exception(f"Invalid configuration in {args.config}: {err}")
        return 1
    except Exception as _fatal_err:
        log.exception(f"Fatal error: {_fatal_err}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
