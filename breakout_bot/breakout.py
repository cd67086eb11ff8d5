"""
Breakout Detection

Compares each price update of a qualified symbol against its opening
range. A print above the range high is a long breakout, below the range
low a short one. Entry is the broken boundary, stop the opposite one.
"""

import logging
from dataclasses import dataclass
from typing import List

from .models import Side
from .opening_range import OpeningRangeQualifier
from .positions import PositionManager
from .session_clock import SessionClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakoutSignal:
    symbol: str
    side: Side
    entry_price: float
    stop_price: float
    trigger_price: float
    timestamp: float


class BreakoutDetector:
    """Emits signals only; admission and order placement happen in the engine."""

    def __init__(
        self,
        clock: SessionClock,
        qualifier: OpeningRangeQualifier,
        positions: PositionManager,
    ):
        self.clock = clock
        self.qualifier = qualifier
        self.positions = positions
        self.signals_emitted = 0

    def on_price_update(self, symbol: str, price: float, now: float) -> List[BreakoutSignal]:
        opening_range = self.qualifier.get_range(symbol)
        if opening_range is None or not opening_range.qualified:
            return []

        if not self.clock.is_entry_window(now):
            return []

        signals = []

        if price > opening_range.high and self.positions.can_enter(symbol, Side.LONG):
            signals.append(BreakoutSignal(
                symbol=symbol,
                side=Side.LONG,
                entry_price=opening_range.high,
                stop_price=opening_range.low,
                trigger_price=price,
                timestamp=now,
            ))

        if price < opening_range.low and self.positions.can_enter(symbol, Side.SHORT):
            signals.append(BreakoutSignal(
                symbol=symbol,
                side=Side.SHORT,
                entry_price=opening_range.low,
                stop_price=opening_range.high,
                trigger_price=price,
                timestamp=now,
            ))

        for signal in signals:
            logger.info(
                f"🚀 {symbol} {signal.side.value} breakout at {price} "
                f"(range {opening_range.low}-{opening_range.high})"
            )

        self.signals_emitted += len(signals)
        return signals
