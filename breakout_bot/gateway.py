"""
Broker Gateway Interface

The engine needs exactly three things from a broker: a tick feed, order
submission, and a position snapshot for the square-off. Authentication,
symbol resolution and subscriptions are the implementation's business.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List

from .models import OrderLeg, OrderResult, PositionSnapshot, Tick


class FeedDisconnectedError(RuntimeError):
    """The tick feed ended mid-session. Requires operator intervention."""


class BrokerGateway(ABC):
    """
    Base class for broker gateways.

    Subclasses must implement:
    - submit_order(): place one order, report accepted/rejected
    - query_open_positions(): broker-side net positions
    - tick_feed(): indefinite async stream of ticks
    """

    async def connect(self):
        """Establish the session. Default: nothing to do."""

    async def disconnect(self):
        """Tear the session down. Default: nothing to do."""

    @abstractmethod
    async def submit_order(self, order: OrderLeg) -> OrderResult:
        pass

    @abstractmethod
    async def query_open_positions(self) -> List[PositionSnapshot]:
        pass

    @abstractmethod
    def tick_feed(self) -> AsyncIterator[Tick]:
        """
        Async iterator of ticks. Not restartable: when it ends, the feed
        is gone for the rest of the session.
        """
        pass
