"""
Shared value types

Plain data carried between the engine, its components and the broker
gateway. Nothing in here holds session state.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════

class Side(Enum):
    """Direction of a breakout / position"""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_action(self) -> 'OrderSide':
        return OrderSide.BUY if self is Side.LONG else OrderSide.SELL

    @property
    def exit_action(self) -> 'OrderSide':
        return OrderSide.SELL if self is Side.LONG else OrderSide.BUY


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> 'OrderSide':
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(Enum):
    LIMIT = "LMT"
    STOP_MARKET = "SL-MKT"
    MARKET = "MKT"


class LegRole(Enum):
    """Which part of a bracket (or the square-off) an order belongs to"""
    ENTRY = "ENTRY"
    STOP = "STOP"
    TARGET = "TARGET"
    FLATTEN = "FLATTEN"


# ═══════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Tick:
    """A single trade print as delivered by the gateway feed."""
    symbol: str
    price: float
    timestamp: float     # arrival time, unix seconds

    def is_valid(self) -> bool:
        """Price must be a finite positive number."""
        try:
            price = float(self.price)
        except (TypeError, ValueError):
            return False
        return math.isfinite(price) and price > 0


@dataclass(frozen=True)
class OrderLeg:
    """One order as handed to BrokerGateway.submit_order()."""
    side: OrderSide
    symbol: str
    quantity: int
    order_type: OrderType
    price: float = 0.0
    stop_price: float = 0.0
    tag: str = ''
    role: LegRole = LegRole.ENTRY
    exchange: str = 'NSE'
    oca_group: str = ''   # legs sharing a group cancel each other on fill

    def describe(self) -> str:
        parts = [f"{self.side.value} {self.quantity} {self.symbol} {self.order_type.value}"]
        if self.order_type is OrderType.LIMIT:
            parts.append(f"@{self.price:.2f}")
        elif self.order_type is OrderType.STOP_MARKET:
            parts.append(f"stop={self.stop_price:.2f}")
        if self.tag:
            parts.append(f"[{self.tag}]")
        return " ".join(parts)


@dataclass(frozen=True)
class OrderResult:
    accepted: bool
    reason: str = ''
    order_id: Optional[str] = None


@dataclass(frozen=True)
class PositionSnapshot:
    """Broker-side net position, used only for the end-of-session square-off."""
    symbol: str
    exchange: str
    net_quantity: int
