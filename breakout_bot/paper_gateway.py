"""
Paper / Replay Gateway

In-memory broker for dry runs, replays and tests. Every order is accepted
unless a rejection rule matches; submitted orders are recorded in order.
Ticks come from a list or a CSV file with columns symbol, price, timestamp
(unix seconds or any timestamp pandas can parse).
"""

import asyncio
import itertools
import logging
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple

import pandas as pd

from .gateway import BrokerGateway
from .models import LegRole, OrderLeg, OrderResult, PositionSnapshot, Tick

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['symbol', 'price', 'timestamp']


class PaperGateway(BrokerGateway):
    """
    Simulated broker.

    Args:
        ticks: ticks to replay, in order
        positions: broker-side positions returned by query_open_positions()
        hold_open: keep the feed open after the last tick instead of ending
            it (ending it is a feed disconnect)
        tick_delay: seconds to sleep between ticks (0 = as fast as possible)
        end_time: replay clock value once the ticks are exhausted
    """

    def __init__(
        self,
        ticks: Optional[Iterable[Tick]] = None,
        positions: Optional[Iterable[PositionSnapshot]] = None,
        hold_open: bool = True,
        tick_delay: float = 0.0,
        end_time: Optional[float] = None,
    ):
        self.ticks: List[Tick] = list(ticks or [])
        self.positions: List[PositionSnapshot] = list(positions or [])
        self.hold_open = hold_open
        self.tick_delay = tick_delay
        self.end_time = end_time

        self.submitted: List[OrderLeg] = []
        self.reject_roles: Set[LegRole] = set()
        self.reject_symbols: Set[str] = set()
        self.position_error: Optional[Exception] = None

        self._order_ids = itertools.count(1)
        self._last_timestamp: Optional[float] = None
        self._exhausted = False
        self._closed = asyncio.Event()

    @classmethod
    def from_csv(cls, path, **kwargs) -> 'PaperGateway':
        """Load replay ticks from CSV, sorted by timestamp."""
        df = pd.read_csv(Path(path))

        missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing:
            raise ValueError(f"Replay file missing required columns: {missing}")

        if not pd.api.types.is_numeric_dtype(df['timestamp']):
            parsed = pd.to_datetime(df['timestamp'], utc=True)
            df['timestamp'] = (parsed - pd.Timestamp(0, tz='UTC')).dt.total_seconds()

        df['price'] = pd.to_numeric(df['price'], errors='coerce')
        df = df.sort_values('timestamp', kind='stable')

        ticks = [
            Tick(str(row.symbol), float(row.price), float(row.timestamp))
            for row in df.itertuples(index=False)
        ]
        logger.info(f"Loaded {len(ticks)} replay ticks from {path}")
        return cls(ticks=ticks, **kwargs)

    def reject(self, role: Optional[LegRole] = None, symbol: Optional[str] = None):
        """Make future orders matching the role and/or symbol get rejected."""
        if role is not None:
            self.reject_roles.add(role)
        if symbol is not None:
            self.reject_symbols.add(symbol)

    async def submit_order(self, order: OrderLeg) -> OrderResult:
        self.submitted.append(order)

        if order.role in self.reject_roles or order.symbol in self.reject_symbols:
            logger.info(f"[PAPER] Rejected {order.describe()}")
            return OrderResult(accepted=False, reason='rejected by paper broker')

        order_id = f"PAPER-{next(self._order_ids)}"
        logger.info(f"[PAPER] Accepted {order.describe()} ({order_id})")
        return OrderResult(accepted=True, order_id=order_id)

    async def query_open_positions(self) -> List[PositionSnapshot]:
        if self.position_error is not None:
            raise self.position_error
        return list(self.positions)

    async def tick_feed(self) -> AsyncIterator[Tick]:
        for tick in self.ticks:
            if self._closed.is_set():
                return
            self._last_timestamp = tick.timestamp
            yield tick
            await asyncio.sleep(self.tick_delay)

        self._exhausted = True
        logger.info("[PAPER] Replay exhausted")

        if self.hold_open:
            await self._closed.wait()

    async def disconnect(self):
        self._closed.set()

    def clock(self) -> float:
        """Replay time: last tick delivered, then end_time once exhausted."""
        if self._exhausted and self.end_time is not None:
            return self.end_time
        if self._last_timestamp is not None:
            return self._last_timestamp
        return self.ticks[0].timestamp if self.ticks else 0.0

    def orders_for(self, role: LegRole) -> List[OrderLeg]:
        return [o for o in self.submitted if o.role is role]

    def replay_span(self) -> Tuple[Optional[float], Optional[float]]:
        if not self.ticks:
            return None, None
        return self.ticks[0].timestamp, self.ticks[-1].timestamp
