#!/usr/bin/env python
"""
Opening-Range Breakout Bot - Single Command Startup

Runs one trading session against IB Gateway, or replays a CSV tick file
through the paper gateway with --replay.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from breakout_bot.config import BotConfig, ConfigError, load_config, load_universe
from breakout_bot.engine import BreakoutEngine
from breakout_bot.gateway import FeedDisconnectedError
from breakout_bot.paper_gateway import PaperGateway
from breakout_bot.session_clock import SessionClock

logger = logging.getLogger('breakout_bot')

DEFAULT_CONFIG = Path(__file__).parent / 'config.yaml'


def print_startup_banner(config: BotConfig, symbols, mode: str):
    """Print startup information"""
    session = config.session
    print("\n" + "=" * 70)
    print("  🚀 Opening-Range Breakout Bot")
    print("=" * 70)
    print(f"  Mode: {mode}")
    print(f"  Universe: {len(symbols)} symbols ({config.universe.exchange})")
    print(f"  Session: {session.market_open} open | {session.first_candle_end} range set | "
          f"{session.entry_cutoff} entry cutoff | {session.market_close} close ({session.timezone})")
    print(f"  Risk/trade: {config.strategy.risk_per_trade} | "
          f"Volatility threshold: {config.strategy.volatility_threshold}%")
    if mode == 'live':
        print(f"  IB Gateway: {config.ib_gateway.host}:{config.ib_gateway.port}")
    print("=" * 70 + "\n")


def build_replay_gateway(path: str, config: BotConfig) -> PaperGateway:
    """Replay gateway whose clock runs past market close once the file is exhausted."""
    gateway = PaperGateway.from_csv(path)
    _, last_ts = gateway.replay_span()
    if last_ts is not None:
        gateway.end_time = SessionClock(config.session).cutoff('market_close', last_ts) + 1
    return gateway


async def run_session(config: BotConfig, symbols, replay: str = None) -> int:
    if replay:
        gateway = build_replay_gateway(replay, config)
        engine = BreakoutEngine(config, gateway, symbols, clock=gateway.clock)
        # Replay time advances with the ticks, so check the phase often
        engine.timer_interval = 0.05
    else:
        from breakout_bot.ib_gateway import IBGateway
        gateway = IBGateway(config.ib_gateway, config.universe, symbols)
        engine = BreakoutEngine(config, gateway, symbols)

    try:
        await gateway.connect()
        await engine.run()
        logger.info(f"Session statistics: {engine.get_statistics()}")
        if not replay:
            logger.info(f"IB Gateway health: {gateway.get_health_status()}")
        return 0
    except FeedDisconnectedError as e:
        logger.critical(f"❌ {e} - manual intervention required")
        return 1
    except ConnectionError as e:
        logger.error(f"❌ Bot failed to start: {e}")
        return 1
    finally:
        await gateway.disconnect()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Run the opening-range breakout bot for one session'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=str(DEFAULT_CONFIG),
        help='Path to config.yaml'
    )
    parser.add_argument(
        '--replay',
        type=str,
        help='Replay ticks from a CSV file (symbol,price,timestamp) through the paper gateway'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        help='Override log level from config'
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format=config.log_format
    )

    try:
        symbols = load_universe(config.universe)
    except ConfigError as e:
        logger.error(f"Error loading universe: {e}")
        sys.exit(1)

    print_startup_banner(config, symbols, 'replay' if args.replay else 'live')

    try:
        exit_code = asyncio.run(run_session(config, symbols, args.replay))
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down (no square-off performed)...")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
