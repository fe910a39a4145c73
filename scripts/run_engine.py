#!/usr/bin/env python3
"""
Run the Trading Engine

Command-line interface for one per-user trading engine: copy-trading of
tracked wallets, liquidity quoting, momentum sniping, take-profit and auto
cashout, all driven by a single heartbeat.

Usage:
    # Paper trading (default, safe)
    python scripts/run_engine.py --targets 0xabc...,0xdef...

    # Check status (non-blocking)
    python scripts/run_engine.py --status

    # Run for a specific duration (in minutes)
    python scripts/run_engine.py --duration 60

    # Live trading (CAUTION - requires proper credentials)
    python scripts/run_engine.py --live

    # Activate / deactivate kill switch
    python scripts/run_engine.py --kill
    python scripts/run_engine.py --resume

Safety Notes:
    - Paper mode is the default. Real money is NEVER risked unless --live is passed.
    - Kill switch: Create .kill_switch file in project root to halt all new orders.
    - Live mode requires POLYMARKET_PRIVATE_KEY and POLYMARKET_FUNDER in .env

Environment Variables:
    POLYMARKET_PRIVATE_KEY - Private key for signing orders
    POLYMARKET_FUNDER - Proxy wallet holding the funds
    TARGET_ADDRESSES - Comma-separated wallets to copy
    ENABLE_MARKET_MAKING / ENABLE_MOMENTUM / ENABLE_AUTO_CASHOUT - Service flags
    AUTO_TP_PCT - Take-profit threshold as a fraction (0.2 = +20%)
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from polyengine.config import (
    DATA_DIR,
    KILL_SWITCH_FILE,
    LOGS_DIR,
    POLYMARKET_FUNDER,
    POLYMARKET_PRIVATE_KEY,
    TRADING_MODE,
    ConfigurationError,
    EngineConfig,
)
from polyengine.engine.bot import TradingEngine
from polyengine.engine.store import JsonEngineStore
from polyengine.exchanges.base import ExchangeError
from polyengine.exchanges.paper import PaperExchange
from polyengine.exchanges.polymarket import PolymarketExchange
from polyengine.trading.executor import check_kill_switch


def setup_logging(verbose: bool = False) -> Path:
    """Configure console and file logging."""
    level = logging.DEBUG if verbose else logging.INFO

    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"engine_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    for noisy in ("urllib3", "requests", "web3", "websocket"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")
    return log_file


def show_status(user_id: str) -> None:
    """Show kill switch, credentials and stored engine state."""
    print("\n" + "=" * 70)
    print("Trading Engine Status")
    print("=" * 70)

    kill_switch_active = check_kill_switch(KILL_SWITCH_FILE)
    print(f"\nKill Switch: {'ACTIVE (trading halted)' if kill_switch_active else 'Inactive'}")
    print(f"Kill Switch Path: {KILL_SWITCH_FILE}")

    config = EngineConfig.from_env(user_id)
    print("\nConfiguration:")
    print(f"  Trading Mode: {TRADING_MODE}")
    print(f"  Targets: {len(config.target_addresses)}")
    print(f"  Multiplier: {config.multiplier}")
    print(f"  Max Trade: {config.max_trade_amount or 'none'}")
    print(f"  Auto TP: {config.auto_tp_pct or 'off'}")

    print("\nCredentials:")
    has_key = bool(POLYMARKET_PRIVATE_KEY)
    has_funder = bool(POLYMARKET_FUNDER)
    print(f"  Private Key: {'Configured' if has_key else 'NOT CONFIGURED'}")
    print(f"  Funder Address: {'Configured' if has_funder else 'NOT CONFIGURED'}")
    print(f"  Live Trading: {'Ready' if (has_key and has_funder) else 'NOT AVAILABLE'}")

    store = JsonEngineStore(DATA_DIR / "engine")
    stats = store.load_stats(user_id)
    trades = store.load_trades(user_id, limit=5)
    print("\nStored Stats:")
    if stats:
        print(json.dumps(stats, indent=2))
    else:
        print("  No stats yet")
    if trades:
        print("\nRecent Trades:")
        for trade in trades:
            print(
                f"  {trade['timestamp']} {trade['side']} {trade['status']} "
                f"{trade['shares_filled']:g} @ {trade['price_filled']:.3f} ({trade['service']})"
            )

    print("\n" + "=" * 70)


def activate_kill_switch(reason: str = "CLI activation") -> None:
    """Activate the kill switch to halt all new orders."""
    KILL_SWITCH_FILE.write_text(f"{datetime.now().isoformat()} {reason}\n")
    print(f"\nKill switch ACTIVATED: {reason}")
    print(f"Kill switch file: {KILL_SWITCH_FILE}")
    print("To resume, run: python scripts/run_engine.py --resume")


def deactivate_kill_switch() -> None:
    """Deactivate the kill switch to allow trading."""
    if KILL_SWITCH_FILE.exists():
        KILL_SWITCH_FILE.unlink()
        print("\nKill switch DEACTIVATED")
    else:
        print("\nKill switch was not active")


def build_exchange(live: bool):
    """Live adapter, or a paper adapter reading live books through it."""
    source = PolymarketExchange(private_key=POLYMARKET_PRIVATE_KEY, funder=POLYMARKET_FUNDER)
    if live:
        return source
    if POLYMARKET_PRIVATE_KEY and POLYMARKET_FUNDER:
        return PaperExchange(source=source, log_trades=True, log_path=str(DATA_DIR / "paper_trades.jsonl"))
    return PaperExchange(log_trades=True, log_path=str(DATA_DIR / "paper_trades.jsonl"))


async def run_engine(args: argparse.Namespace) -> None:
    """Start the engine and keep it running until stopped or the duration ends."""
    mode_str = "LIVE" if args.live else "PAPER"

    print("\n" + "=" * 70)
    print(f"Starting Trading Engine ({mode_str} MODE)")
    print("=" * 70)

    if args.live:
        print("\n" + "!" * 70)
        print("WARNING: LIVE TRADING MODE")
        print("Real money will be at risk!")
        print("!" * 70)

        confirm = input("\nType 'LIVE' to confirm live trading: ")
        if confirm != "LIVE":
            print("Live trading cancelled.")
            return

    config = EngineConfig.from_env(args.user)
    changes = {}
    if args.targets:
        changes["target_addresses"] = [t.strip() for t in args.targets.split(",") if t.strip()]
    if args.multiplier is not None:
        changes["multiplier"] = args.multiplier
    if args.max_trade is not None:
        changes["max_trade_amount"] = args.max_trade or None
    if args.no_mm:
        changes["enable_market_making"] = False
    config = config.merged(**changes)

    print("\nConfiguration:")
    print(f"  Mode: {mode_str}")
    print(f"  Targets: {', '.join(config.target_addresses) or 'none'}")
    print(f"  Multiplier: {config.multiplier}")
    print(f"  Market making: {config.enable_market_making}")
    print(f"  Duration: {args.duration} minutes" if args.duration > 0 else "  Duration: Unlimited")
    print("\nPress Ctrl+C to stop\n")

    engine = TradingEngine(
        config,
        build_exchange(args.live),
        store=JsonEngineStore(DATA_DIR / "engine"),
        live=args.live,
    )

    try:
        await engine.start()
        if args.duration > 0:
            await asyncio.sleep(args.duration * 60)
            print(f"\nDuration limit reached ({args.duration} minutes)")
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        print("\nShutdown requested by user...")
    finally:
        await engine.stop()

        status = engine.get_status()
        stats = status["stats"]
        print("\n" + "=" * 70)
        print("Final Status")
        print("=" * 70)
        print("\nSession Summary:")
        print(f"  Mode: {mode_str}")
        print(f"  Heartbeats: {status['tick_count']}")
        print(f"  Trades: {stats['trades_count']} (win rate {stats['win_rate']:.0%})")
        print(f"  Realized P&L: ${stats['total_pnl']:.2f}")
        print(f"  Volume: ${stats['total_volume']:.2f}")
        print(f"  Fees due: ${stats['total_fees_due']:.2f}")
        print(f"  Errors: {stats['error_count']}")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Polymarket trading engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_engine.py --targets 0xabc    # Paper copy-trading (default)
  python scripts/run_engine.py --status           # Check status
  python scripts/run_engine.py --duration 60      # Run for 60 minutes
  python scripts/run_engine.py --live             # Live trading (CAUTION)
  python scripts/run_engine.py --kill             # Activate kill switch
  python scripts/run_engine.py --resume           # Deactivate kill switch
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--live", action="store_true", help="Enable live trading (CAUTION: real money at risk)")
    mode_group.add_argument("--status", action="store_true", help="Show engine status and exit")
    mode_group.add_argument("--kill", action="store_true", help="Activate kill switch to halt all trading")
    mode_group.add_argument("--resume", action="store_true", help="Deactivate kill switch to allow trading")

    parser.add_argument("--user", default="default", help="User id for stored state (default: default)")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument("--targets", metavar="ADDRS", help="Comma-separated wallets to copy")
    parser.add_argument("--multiplier", type=float, metavar="X", help="Copy multiplier")
    parser.add_argument("--max-trade", type=float, metavar="USD", help="Per-trade ceiling (0 = none)")
    parser.add_argument("--no-mm", action="store_true", help="Disable market making")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.status:
        show_status(args.user)
        return
    if args.kill:
        activate_kill_switch("CLI --kill flag")
        return
    if args.resume:
        deactivate_kill_switch()
        return

    setup_logging(verbose=args.verbose)

    try:
        asyncio.run(run_engine(args))
    except KeyboardInterrupt:
        print("\nStopped.")
    except (ConfigurationError, ExchangeError) as e:
        print(f"\nFatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
