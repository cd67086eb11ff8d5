"""
Session Status Reporting

Periodic operator-facing log output driven by the engine's timer:
- status line every status_interval seconds
- market update once per minute while the market is open
- one-shot alerts ahead of the entry cutoff and market close
- heartbeat every 5 minutes during active trading
- daily summary at square-off
"""

import logging
import os
from typing import Optional, Set

import psutil

from .opening_range import OpeningRangeQualifier
from .positions import PositionManager
from .session_clock import SessionClock, SessionPhase

logger = logging.getLogger(__name__)

MEMORY_WARNING_MB = 100
STALE_FEED_SECONDS = 30
HEARTBEAT_SECONDS = 300
MAX_LISTED_SYMBOLS = 10

# (cutoff, minutes before, message)
ALERTS = [
    ('entry_cutoff', 5, "5 minutes until entry cutoff"),
    ('market_close', 10, "10 minutes until market close"),
    ('market_close', 2, "2 minutes until market close - preparing for square-off"),
]


class SessionReporter:
    def __init__(
        self,
        clock: SessionClock,
        qualifier: OpeningRangeQualifier,
        positions: PositionManager,
        universe_size: int,
        status_interval: float = 30.0,
    ):
        self.clock = clock
        self.qualifier = qualifier
        self.positions = positions
        self.universe_size = universe_size
        self.status_interval = status_interval

        self.last_status_time: Optional[float] = None
        self.last_minute_update: Optional[float] = None
        self.last_heartbeat: Optional[float] = None
        self.fired_alerts: Set[str] = set()
        self.process = psutil.Process(os.getpid())

    def on_timer(self, now: float, phase: SessionPhase, last_tick_at: Optional[float] = None):
        if self.last_status_time is None or now - self.last_status_time >= self.status_interval:
            self.log_status(now, last_tick_at)
            self.last_status_time = now

        if phase in (SessionPhase.PRE_MARKET, SessionPhase.CLOSED):
            return

        if self.last_minute_update is None or now - self.last_minute_update >= 60:
            self.log_market_update(now, phase)
            self.last_minute_update = now

        self._check_alerts(now)

        if phase is SessionPhase.ACTIVE_TRADING and (
            self.last_heartbeat is None or now - self.last_heartbeat >= HEARTBEAT_SECONDS
        ):
            logger.info(
                f"💓 Heartbeat: monitoring {len(self.qualifier.qualified_symbols())} "
                f"qualified stocks for breakouts"
            )
            self.last_heartbeat = now

        if last_tick_at is not None and now - last_tick_at > STALE_FEED_SECONDS:
            logger.warning(
                f"⚠️ No ticks for {now - last_tick_at:.0f}s - market data may be stale"
            )

    def log_status(self, now: float, last_tick_at: Optional[float]):
        feed = 'no ticks yet' if last_tick_at is None else f"last tick {now - last_tick_at:.0f}s ago"
        logger.info(
            f"📊 Status [{self.clock.format_time(now)}]: "
            f"{len(self.qualifier.qualified_symbols())} qualified stocks, "
            f"{self.positions.open_count()} active positions, feed: {feed}"
        )

    def log_market_update(self, now: float, phase: SessionPhase):
        logger.info(f"⏰ === {self.clock.format_time(now)} Market Update === Phase: {phase.description}")

        qualified = self.qualifier.qualified_symbols()
        if qualified:
            listed = ', '.join(qualified[:MAX_LISTED_SYMBOLS])
            more = '...' if len(qualified) > MAX_LISTED_SYMBOLS else ''
            logger.info(f"✅ Qualified Stocks ({len(qualified)}): {listed}{more}")
        elif phase.value >= SessionPhase.ACTIVE_TRADING.value:
            logger.info("⚠️ No stocks qualified yet")

        open_positions = self.positions.open_positions()
        if open_positions:
            logger.info(f"💼 Active Positions ({len(open_positions)}):")
            for pos in open_positions:
                logger.info(f"   {pos.symbol} {pos.side.value} - Qty: {pos.quantity}, Entry: {pos.entry_level}")

        memory_mb = self.memory_usage_mb()
        if memory_mb > MEMORY_WARNING_MB:
            logger.warning(f"⚠️ Memory Usage: {memory_mb:.0f}MB")

    def memory_usage_mb(self) -> float:
        return self.process.memory_info().rss / 1024 / 1024

    def _check_alerts(self, now: float):
        for cutoff_name, minutes, message in ALERTS:
            key = f"{cutoff_name}-{minutes}"
            if key in self.fired_alerts:
                continue
            cutoff = self.clock.cutoff(cutoff_name, now)
            if cutoff - minutes * 60 <= now < cutoff:
                logger.info(f"⏰ ALERT: {message}")
                self.fired_alerts.add(key)

    def daily_summary(self, now: float) -> dict:
        qualified = self.qualifier.qualified_symbols()
        summary = {
            'date': self.clock.local_time(now).date().isoformat(),
            'session_time': self.clock.format_time(now),
            'qualified': len(qualified),
            'disqualified': len(self.qualifier.disqualified_symbols()),
            'universe': self.universe_size,
            'qualified_symbols': qualified,
            'total_entries': self.positions.total_entries(),
        }

        logger.info("📋 === DAILY TRADING SUMMARY ===")
        logger.info(f"📅 Date: {summary['date']}")
        logger.info(f"⏰ Session Time: {summary['session_time']}")
        logger.info(f"📊 Qualified Stocks: {summary['qualified']}/{summary['universe']}")
        if qualified:
            logger.info(f"✅ Qualified Symbols: {', '.join(qualified)}")
        logger.info(f"💼 Total Trades Attempted: {summary['total_entries']}")

        return summary
