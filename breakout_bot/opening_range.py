"""
Opening-Range Qualifier

Decides once per symbol whether the first N candles of the session are
tight enough to trade breakouts on.

    window         = candles with bucket_start in
                     [bucket(market_open), bucket(first_candle_end))
    high / low     = max(high) / min(low) over the window
    volatility_pct = (high - low) / first.open * 100
    qualified      = volatility_pct < threshold

A verdict needs exactly N candles in the window. With fewer (feed gap) or
more (bucket misconfiguration) nothing is decided and the check runs again
on the next call, for as long as it takes.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .candles import Candle
from .session_clock import SessionClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpeningRange:
    """Permanent opening-range verdict for one symbol."""
    symbol: str
    high: float
    low: float
    open: float
    volatility_pct: float
    qualified: bool
    decided_at: float
    candle_count: int

    @property
    def width(self) -> float:
        return self.high - self.low


class OpeningRangeQualifier:
    """Holds at most one OpeningRange per symbol; never re-evaluates."""

    def __init__(
        self,
        clock: SessionClock,
        width_seconds: int = 60,
        required_candles: int = 5,
        volatility_threshold: float = 1.0,
    ):
        self.clock = clock
        self.width = width_seconds
        self.required_candles = required_candles
        self.volatility_threshold = volatility_threshold

        self._ranges: Dict[str, OpeningRange] = {}
        self._last_counts: Dict[str, int] = {}

    def try_qualify(self, symbol: str, candles: Sequence[Candle], now: float) -> Optional[OpeningRange]:
        """
        Evaluate the symbol's opening range if it is due.

        Cheap to call on every tick. Returns the verdict once one exists,
        None while still undecided.
        """
        existing = self._ranges.get(symbol)
        if existing is not None:
            return existing

        if now < self.clock.cutoff('first_candle_end', now):
            return None

        window_start = self.clock.bucket_start('market_open', now, self.width)
        window_end = self.clock.bucket_start('first_candle_end', now, self.width)
        window = [c for c in candles if window_start <= c.bucket_start < window_end]

        if len(window) != self.required_candles:
            if window and self._last_counts.get(symbol) != len(window):
                logger.debug(
                    f"🔍 {symbol}: Found {len(window)}/{self.required_candles} "
                    f"candles in opening window"
                )
            self._last_counts[symbol] = len(window)
            return None

        self._last_counts.pop(symbol, None)
        opening_range = self._evaluate(symbol, window, now)
        self._ranges[symbol] = opening_range
        return opening_range

    def _evaluate(self, symbol: str, window: List[Candle], now: float) -> OpeningRange:
        high = max(c.high for c in window)
        low = min(c.low for c in window)
        open_price = window[0].open
        volatility = (high - low) / open_price * 100
        qualified = volatility < self.volatility_threshold

        if qualified:
            logger.info(f"✅ {symbol} qualified (range {low}-{high}, vol={volatility:.2f}%)")
        else:
            logger.info(
                f"❌ {symbol} disqualified (range {low}-{high}, vol={volatility:.2f}% "
                f">= {self.volatility_threshold}%)"
            )

        return OpeningRange(
            symbol=symbol,
            high=high,
            low=low,
            open=open_price,
            volatility_pct=volatility,
            qualified=qualified,
            decided_at=now,
            candle_count=len(window),
        )

    def get_range(self, symbol: str) -> Optional[OpeningRange]:
        return self._ranges.get(symbol)

    def is_evaluated(self, symbol: str) -> bool:
        return symbol in self._ranges

    def is_qualified(self, symbol: str) -> bool:
        opening_range = self._ranges.get(symbol)
        return opening_range is not None and opening_range.qualified

    def qualified_symbols(self) -> List[str]:
        return [s for s, r in self._ranges.items() if r.qualified]

    def disqualified_symbols(self) -> List[str]:
        return [s for s, r in self._ranges.items() if not r.qualified]
