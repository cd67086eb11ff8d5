"""
Order Intent Builder

Turns a breakout signal into a bracket: entry, stop and target legs with a
fixed risk budget and a 1:1 reward-to-risk target.

    quantity = max(1, floor(risk_budget / |entry - stop|))
    target   = entry + (entry - stop)     LONG
             = entry - (stop - entry)     SHORT

The legs are linked: stop and target are only ever submitted after the
entry leg has been accepted, and share an OCA group so that one filling
cancels the other.
"""

import itertools
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .breakout import BreakoutSignal
from .models import LegRole, OrderLeg, OrderType, Side

logger = logging.getLogger(__name__)

STOP_TAG = 'SL'
TARGET_TAG = 'TGT'
FLATTEN_TAG = 'EOD'


@dataclass(frozen=True)
class Bracket:
    """Immutable bracket order parameters calculated at signal time."""
    symbol: str
    side: Side
    quantity: int
    entry_price: float
    stop_price: float
    target_price: float
    entry: OrderLeg
    stop: OrderLeg
    target: OrderLeg

    @property
    def initial_risk(self) -> float:
        """Risk per share (distance to stop)."""
        return abs(self.entry_price - self.stop_price)

    @property
    def protective_legs(self) -> Tuple[OrderLeg, OrderLeg]:
        return self.stop, self.target


class OrderIntentBuilder:
    def __init__(self, risk_per_trade: float = 100.0, exchange: str = 'NSE'):
        self.risk_per_trade = risk_per_trade
        self.exchange = exchange
        self._bracket_ids = itertools.count(1)

    def build(self, signal: BreakoutSignal, risk_budget: Optional[float] = None) -> Bracket:
        """
        Size and price a bracket for the signal.

        Raises:
            ValueError: entry and stop coincide, so the trade cannot be sized
        """
        risk = self.risk_per_trade if risk_budget is None else risk_budget
        distance = abs(signal.entry_price - signal.stop_price)
        if distance <= 0:
            raise ValueError(
                f"{signal.symbol}: zero risk distance (entry={signal.entry_price}, "
                f"stop={signal.stop_price})"
            )

        quantity = max(1, math.floor(risk / distance))

        if signal.side is Side.LONG:
            target = signal.entry_price + (signal.entry_price - signal.stop_price)
        else:
            target = signal.entry_price - (signal.stop_price - signal.entry_price)

        entry_action = signal.side.entry_action
        exit_action = signal.side.exit_action
        oca_group = f"ORB-{signal.symbol}-{signal.side.value}-{int(signal.timestamp)}-{next(self._bracket_ids)}"

        entry = OrderLeg(
            side=entry_action,
            symbol=signal.symbol,
            quantity=quantity,
            order_type=OrderType.LIMIT,
            price=signal.entry_price,
            tag=signal.side.value,
            role=LegRole.ENTRY,
            exchange=self.exchange,
        )
        stop = OrderLeg(
            side=exit_action,
            symbol=signal.symbol,
            quantity=quantity,
            order_type=OrderType.STOP_MARKET,
            stop_price=signal.stop_price,
            tag=STOP_TAG,
            role=LegRole.STOP,
            exchange=self.exchange,
            oca_group=oca_group,
        )
        target_leg = OrderLeg(
            side=exit_action,
            symbol=signal.symbol,
            quantity=quantity,
            order_type=OrderType.LIMIT,
            price=target,
            tag=TARGET_TAG,
            role=LegRole.TARGET,
            exchange=self.exchange,
            oca_group=oca_group,
        )

        return Bracket(
            symbol=signal.symbol,
            side=signal.side,
            quantity=quantity,
            entry_price=signal.entry_price,
            stop_price=signal.stop_price,
            target_price=target,
            entry=entry,
            stop=stop,
            target=target_leg,
        )

    def flatten(self, symbol: str, net_quantity: int, exchange: Optional[str] = None) -> OrderLeg:
        """Market order that takes a broker net position back to zero."""
        if net_quantity == 0:
            raise ValueError(f"{symbol}: nothing to flatten")

        side = Side.LONG if net_quantity > 0 else Side.SHORT
        return OrderLeg(
            side=side.exit_action,
            symbol=symbol,
            quantity=abs(net_quantity),
            order_type=OrderType.MARKET,
            tag=FLATTEN_TAG,
            role=LegRole.FLATTEN,
            exchange=exchange or self.exchange,
        )
