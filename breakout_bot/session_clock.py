"""
Session Phase Clock

Maps wall-clock time to one of five ordered session phases using the
configured cutoffs, evaluated in the market's local time zone:

    PRE_MARKET          before market_open
    CANDLE_FORMATION    market_open      <= t < first_candle_end
    ACTIVE_TRADING      first_candle_end <= t < entry_cutoff
    POSITION_MONITORING entry_cutoff     <= t < market_close
    CLOSED              t >= market_close
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

import pytz

from .config import SessionConfig

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    """Session phases, in the order they occur"""
    PRE_MARKET = 0
    CANDLE_FORMATION = 1
    ACTIVE_TRADING = 2
    POSITION_MONITORING = 3
    CLOSED = 4

    @property
    def description(self) -> str:
        return PHASE_DESCRIPTIONS[self]


PHASE_DESCRIPTIONS = {
    SessionPhase.PRE_MARKET: 'PRE-MARKET',
    SessionPhase.CANDLE_FORMATION: 'CANDLE FORMATION',
    SessionPhase.ACTIVE_TRADING: 'ACTIVE TRADING',
    SessionPhase.POSITION_MONITORING: 'POSITION MONITORING (No new entries)',
    SessionPhase.CLOSED: 'CLOSED',
}


class SessionClock:
    """
    Session phase tracker.

    phase_at() is a pure function of time. advance() additionally remembers
    the furthest phase reached so that a phase is never re-entered within
    the session, and logs each transition.
    """

    def __init__(self, config: SessionConfig):
        self.config = config
        self.tz = pytz.timezone(config.timezone)
        self.current_phase: Optional[SessionPhase] = None

    def local_time(self, now: float) -> datetime:
        """Unix seconds -> timezone-aware datetime in market time."""
        return datetime.fromtimestamp(now, tz=pytz.UTC).astimezone(self.tz)

    def cutoff(self, name: str, now: float) -> float:
        """Unix timestamp of the named cutoff on the market-local date of `now`."""
        if name not in SessionConfig.CUTOFFS:
            raise ValueError(f"Unknown cutoff: {name}")
        local = self.local_time(now)
        t = getattr(self.config, name)
        naive = datetime(local.year, local.month, local.day, t.hour, t.minute, t.second)
        return self.tz.localize(naive).timestamp()

    def bucket_start(self, name: str, now: float, width: int) -> int:
        """Bucket containing the named cutoff on the date of `now`."""
        return int(self.cutoff(name, now) // width) * width

    def phase_at(self, now: float) -> SessionPhase:
        if now >= self.cutoff('market_close', now):
            return SessionPhase.CLOSED
        if now >= self.cutoff('entry_cutoff', now):
            return SessionPhase.POSITION_MONITORING
        if now >= self.cutoff('first_candle_end', now):
            return SessionPhase.ACTIVE_TRADING
        if now >= self.cutoff('market_open', now):
            return SessionPhase.CANDLE_FORMATION
        return SessionPhase.PRE_MARKET

    def advance(self, now: float) -> SessionPhase:
        """Recompute the phase; never moves backwards."""
        phase = self.phase_at(now)

        if self.current_phase is not None and phase.value < self.current_phase.value:
            return self.current_phase

        if phase != self.current_phase:
            logger.info(
                f"📈 Market Phase: {phase.description} "
                f"(at {self.local_time(now).strftime('%H:%M:%S')})"
            )
            self.current_phase = phase

        return phase

    def is_entry_window(self, now: float) -> bool:
        return now < self.cutoff('entry_cutoff', now)

    def format_time(self, now: float) -> str:
        return self.local_time(now).strftime('%H:%M:%S')
