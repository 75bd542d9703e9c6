"""CLI entry point — start-up checks, signal handling, scan loop."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from polyarb.account import AccountContext
from polyarb.config import MIN_SCAN_INTERVAL, BotConfig
from polyarb.errors import InitializationError
from polyarb.monitoring.telegram import TelegramAlerter
from polyarb.pipeline import ScanOrchestrator

logger = logging.getLogger(__name__)

BANNER = r"""
 ____       _          _
|  _ \ ___ | |_   _   / \   _ __ ___
| |_) / _ \| | | | | / _ \ | '__/ _ \
|  __/ (_) | | |_| |/ ___ \| | | (_) |
|_|   \___/|_|\__, /_/   \_\_|  \___/
              |___/  YES+NO < $1 arbitrage
"""


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """커맨드라인 인자 파싱."""
    parser = argparse.ArgumentParser(
        prog="polyarb",
        description="Polymarket YES/NO Dutch-book arbitrage bot",
    )
    parser.add_argument(
        "--live", action="store_true", default=False,
        help="Enable live trading (default: dry run)",
    )
    parser.add_argument(
        "--interval", type=float, default=None,
        help=f"Scan interval in seconds (overrides stored settings, min: {MIN_SCAN_INTERVAL:.0f})",
    )
    parser.add_argument(
        "--auto", action="store_true", default=False,
        help="Execute qualifying opportunities without approval",
    )
    parser.add_argument(
        "--db", type=str, default=None,
        help="SQLite database path",
    )
    parser.add_argument(
        "--account", type=str, default=None,
        help="Account id (one database per account)",
    )
    return parser.parse_args(argv)


def apply_args(config: BotConfig, args: argparse.Namespace) -> BotConfig:
    if args.live:
        config.dry_run = False
    if args.interval is not None:
        config.scan_interval = max(args.interval, MIN_SCAN_INTERVAL)
    if args.auto:
        config.auto_mode = True
    if args.db:
        config.db_path = args.db
    if args.account:
        config.account_id = args.account
    return config


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


async def main_loop(config: BotConfig) -> None:
    """메인 루프: 주기적 스캔 사이클, 시그널 수신 시 정리 후 종료."""
    ctx = AccountContext.create(config)
    try:
        await ctx.gateway.check_connection()
        if config.auto_mode is not None:
            ctx.repository.update_settings(auto_mode=config.auto_mode)

        settings = ctx.repository.get_settings()
        alerter = TelegramAlerter(
            bot_token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
        )

        print(BANNER)
        print(f"Mode: {'DRY RUN' if config.dry_run else 'LIVE'}")
        print(f"Account: {config.account_id} ({config.db_path})")
        print(f"Execution: {'AUTO' if settings.auto_mode else 'MANUAL APPROVAL'}")
        print(f"Currencies: {', '.join(settings.active_currencies)}")
        print(f"Telegram alerts: {'ON' if alerter.enabled else 'OFF'}")
        if settings.kill_switch:
            print(f"⚠️  Kill switch is ACTIVE: {settings.kill_switch_reason}")
        print("-" * 60)

        relay_task = None
        if alerter.enabled:
            relay_task = asyncio.create_task(ctx.events.relay(alerter.handle_event))
            mode = "DRY RUN" if config.dry_run else "LIVE"
            await alerter.alert_error(f"🟢 polyarb started in {mode} mode", level="info")

        # Graceful shutdown
        stop_event = asyncio.Event()

        def _handle_signal():
            print("\n⚡ Shutting down gracefully...")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handle_signal)
            except NotImplementedError:
                pass  # Windows

        orchestrator = ScanOrchestrator(ctx)
        orchestrator.start()
        await stop_event.wait()

        await orchestrator.shutdown()
        if relay_task is not None:
            relay_task.cancel()
            try:
                await relay_task
            except asyncio.CancelledError:
                pass
    finally:
        ctx.close()

    print("Goodbye! 🤙")


def cli_main() -> None:
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = parse_args()
    config = apply_args(BotConfig.from_env(), args)

    try:
        asyncio.run(main_loop(config))
    except InitializationError as exc:
        logger.critical("Cannot start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
