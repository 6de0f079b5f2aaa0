#!/usr/bin/env python3

import logging
import logging.handlers
from types import SimpleNamespace

import pytest

from tilescan import __main__ as entry
from tilescan import __version__
from tilescan.tilescan import build_parser
from tilescan.utils.constants import TRACE


def test_parse_start():
    args = build_parser().parse_args(["start"])
    assert args.command == "start"
    assert args.config == "config.ini"
    assert args.debug is False
    assert args.once is False


def test_parse_options():
    args = build_parser().parse_args(["-c", "other.ini", "--debug", "start", "--once"])
    assert args.config == "other.ini"
    assert args.debug is True
    assert args.once is True


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args(["--version"])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert entry.main([]) == 2
    assert "start" in capsys.readouterr().out


def test_invalid_config_exits_1(tmp_path, restore_logging):
    ini = tmp_path / "config.ini"
    ini.write_text(f"[general]\nlog_file = {tmp_path / 'logs' / 'tilescan.log'}\n\n[scanner]\nzoom_level = 11\n")
    assert entry.main(["-c", str(ini), "start", "--once"]) == 1
    assert "scanner.bbox is required" in (tmp_path / "logs" / "tilescan.log").read_text()


def test_setuplogs_levels(tmp_path, restore_logging):
    log_file = tmp_path / "logs" / "tilescan.log"
    cfg = SimpleNamespace(general=SimpleNamespace(
        log_file=str(log_file), file_log_level="INFO", console_log_level="ERROR"))
    entry.setuplogs(cfg)

    root = logging.getLogger()
    assert root.level == logging.INFO
    file_handlers = [h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].level == logging.INFO
    assert file_handlers[0].maxBytes == 10485760
    assert file_handlers[0].backupCount == 5
    assert log_file.exists()


def test_setuplogs_debug_enables_trace(tmp_path, restore_logging):
    cfg = SimpleNamespace(general=SimpleNamespace(
        log_file=str(tmp_path / "t.log"), file_log_level="INFO", console_log_level="INFO"))
    entry.setuplogs(cfg, debug=True)

    root = logging.getLogger()
    assert root.level == TRACE
    assert logging.getLevelName(TRACE) == "TRACE"
    assert all(h.level == TRACE for h in root.handlers)
