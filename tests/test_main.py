"""Tests for the CLI entry point."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from polyarb.config import MIN_SCAN_INTERVAL, BotConfig
from polyarb.errors import InitializationError
from polyarb.main import apply_args, cli_main, parse_args


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert not args.live
        assert not args.auto
        assert args.interval is None
        assert args.db is None

    def test_flags(self):
        args = parse_args(["--live", "--auto", "--interval", "15", "--db", "x.db", "--account", "a2"])
        assert args.live and args.auto
        assert args.interval == 15.0
        assert args.account == "a2"


class TestApplyArgs:
    def test_overrides(self):
        config = apply_args(BotConfig(), parse_args(["--live", "--auto", "--db", "x.db", "--account", "a2"]))
        assert config.dry_run is False
        assert config.auto_mode is True
        assert config.db_path == "x.db"
        assert config.account_id == "a2"

    def test_interval_clamped(self):
        config = apply_args(BotConfig(), parse_args(["--interval", "1"]))
        assert config.scan_interval == MIN_SCAN_INTERVAL

    def test_no_flags_keep_config(self):
        config = apply_args(BotConfig(), parse_args([]))
        assert config.dry_run is True
        assert config.auto_mode is None
        assert config.scan_interval is None


class TestCliMain:
    def test_initialization_error_exits_1(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["polyarb"])

        async def failing(config):
            raise InitializationError("CLOB unreachable")

        with patch("polyarb.main.main_loop", failing):
            with pytest.raises(SystemExit) as exc_info:
                cli_main()
        assert exc_info.value.code == 1
