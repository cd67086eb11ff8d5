"""
Position Manager

Tracks admitted position slots per symbol and side and enforces the
per-side cap.

A slot is opened the moment a breakout is admitted, before the broker has
confirmed anything, so a second signal cannot slip in while the first
order is in flight. If the entry order is rejected the slot is released;
otherwise it stays open until closed explicitly or at square-off.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .models import Side

logger = logging.getLogger(__name__)


class PositionStatus(Enum):
    OPEN = "open"
    RELEASED = "released"    # entry order rejected; never existed
    CLOSED = "closed"


@dataclass
class Position:
    """One admitted slot."""
    symbol: str
    side: Side
    entry_level: float          # range boundary used for stop/target
    avg_price: float
    quantity: int = 0           # planned bracket size
    open_quantity: int = 0      # authoritative quantity lives at the broker
    status: PositionStatus = PositionStatus.OPEN
    opened_at: float = 0.0
    closed_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN


class PositionManager:
    """Slot bookkeeping for the session."""

    def __init__(self, max_per_side: int = 1):
        if max_per_side < 1:
            raise ValueError(f"max_per_side must be at least 1, got {max_per_side}")

        self.max_per_side = max_per_side
        self.positions: Dict[str, List[Position]] = defaultdict(list)

    def open_slots(self, symbol: str, side: Side) -> int:
        return sum(1 for p in self.positions.get(symbol, ()) if p.side is side and p.is_open)

    def can_enter(self, symbol: str, side: Side) -> bool:
        return self.open_slots(symbol, side) < self.max_per_side

    def record_entry(
        self,
        symbol: str,
        side: Side,
        entry_price: float = 0.0,
        quantity: int = 0,
        timestamp: float = 0.0,
    ) -> Position:
        """
        Open a slot for an admitted breakout.

        Raises:
            ValueError: the side is already at its cap
        """
        if not self.can_enter(symbol, side):
            raise ValueError(
                f"{symbol} {side.value}: {self.open_slots(symbol, side)} open slot(s), "
                f"cap is {self.max_per_side}"
            )

        position = Position(
            symbol=symbol,
            side=side,
            entry_level=entry_price,
            avg_price=entry_price,
            quantity=quantity,
            open_quantity=0,
            opened_at=timestamp,
        )
        self.positions[symbol].append(position)
        logger.debug(f"[{symbol}] Slot opened: {side.value} qty={quantity} @{entry_price}")
        return position

    def release(self, position: Position, timestamp: Optional[float] = None):
        """Give the slot back after an entry rejection."""
        if not position.is_open:
            return
        position.status = PositionStatus.RELEASED
        position.open_quantity = 0
        position.closed_at = timestamp
        logger.info(f"[{position.symbol}] {position.side.value} slot released")

    def close(self, symbol: str, side: Side, timestamp: Optional[float] = None) -> int:
        """Close every open slot of one side. Returns how many were closed."""
        closed = 0
        for position in self.positions.get(symbol, ()):
            if position.side is side and position.is_open:
                position.status = PositionStatus.CLOSED
                position.open_quantity = 0
                position.closed_at = timestamp
                closed += 1
        return closed

    def close_all(self, symbol: str, timestamp: Optional[float] = None) -> int:
        return sum(self.close(symbol, side, timestamp) for side in Side)

    def snapshot(self) -> Dict[str, List[Position]]:
        return {symbol: list(slots) for symbol, slots in self.positions.items()}

    def open_positions(self) -> List[Position]:
        return [p for slots in self.positions.values() for p in slots if p.is_open]

    def open_count(self, symbol: Optional[str] = None) -> int:
        if symbol is not None:
            return sum(1 for p in self.positions.get(symbol, ()) if p.is_open)
        return len(self.open_positions())

    def total_entries(self) -> int:
        """Every slot ever admitted, including released ones."""
        return sum(len(slots) for slots in self.positions.values())
