"""
Live Candle Aggregator

Builds fixed-width OHLC candles from the tick stream, one append-only
sequence per symbol.

    bucket = floor(timestamp / width) * width

A tick in the newest bucket updates the newest candle; a tick in a later
bucket starts a new candle. Earlier candles are never touched again, so
per-symbol bucket starts are unique and strictly increasing.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Candle:
    """One OHLC bar. Invariant: low <= open, close <= high."""
    symbol: str
    bucket_start: int     # unix seconds, multiple of the width
    open: float
    high: float
    low: float
    close: float

    def update(self, price: float):
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price


class CandleAggregator:
    """
    Per-symbol candle builder.

    Owns every candle sequence; nothing else mutates them.
    """

    def __init__(self, width_seconds: int = 60):
        """
        Args:
            width_seconds: Candle width (default: 60)
        """
        if width_seconds <= 0:
            raise ValueError(f"Candle width must be positive, got {width_seconds}")

        self.width = width_seconds
        self._candles: Dict[str, List[Candle]] = defaultdict(list)

        self.stats = {
            'ticks_processed': 0,
            'bars_started': 0,
            'bars_updated': 0,
            'late_ticks': 0,
        }

    def bucket_of(self, timestamp: float) -> int:
        return int(timestamp // self.width) * self.width

    def on_tick(self, symbol: str, price: float, timestamp: float) -> Tuple[Optional[Candle], bool]:
        """
        Fold one tick into the symbol's sequence.

        Returns:
            (candle the tick landed in, is_new_bar). The candle is None when
            the tick belongs to a bucket older than the newest candle; such
            ticks are dropped.
        """
        bucket = self.bucket_of(timestamp)
        series = self._candles[symbol]
        last = series[-1] if series else None

        if last is not None and bucket < last.bucket_start:
            self.stats['late_ticks'] += 1
            logger.debug(
                f"[{symbol}] Late tick dropped: bucket {bucket} is older than "
                f"current bar {last.bucket_start}"
            )
            return None, False

        self.stats['ticks_processed'] += 1

        if last is None or last.bucket_start != bucket:
            if last is not None:
                logger.debug(
                    f"[{symbol}] Bar completed: "
                    f"O={last.open:.2f} H={last.high:.2f} "
                    f"L={last.low:.2f} C={last.close:.2f}"
                )
            candle = Candle(symbol, bucket, price, price, price, price)
            series.append(candle)
            self.stats['bars_started'] += 1
            return candle, True

        last.update(price)
        self.stats['bars_updated'] += 1
        return last, False

    def candles(self, symbol: str) -> List[Candle]:
        """Snapshot of the symbol's candle sequence (oldest first)."""
        return list(self._candles.get(symbol, ()))

    def last_candle(self, symbol: str) -> Optional[Candle]:
        series = self._candles.get(symbol)
        return series[-1] if series else None

    def symbols(self) -> List[str]:
        return list(self._candles.keys())

    def get_statistics(self) -> Dict[str, int]:
        stats = dict(self.stats)
        stats['symbols'] = len(self._candles)
        return stats
