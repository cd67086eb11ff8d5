"""
IB Gateway Broker Adapter

Live BrokerGateway on top of ib_insync:
- connection with exponential backoff and jitter
- Stock contract qualification for the universe
- streaming market data -> Tick queue
- bracket legs -> LimitOrder / StopOrder / MarketOrder
- position snapshot for the square-off

A lost connection ends the tick feed. The engine treats that as fatal for
the session, so there is no automatic reconnect here.
"""

import asyncio
import logging
import math
import random
import time
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from ib_insync import IB, Contract, LimitOrder, MarketOrder, Stock, StopOrder, Ticker

from .config import IBGatewayConfig, UniverseConfig
from .gateway import BrokerGateway
from .models import OrderLeg, OrderResult, OrderType, PositionSnapshot, Tick

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection state machine states"""
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2        # Socket connected
    SUBSCRIBED = 3       # Active market data
    IB_DISCONNECTED = 4  # 1100 received (IB server issue)


# Error code classifications (codes without a dedicated branch in _on_error)
RETRYABLE_ERRORS = {162, 366}
FATAL_ERRORS = {200, 502}
INFORMATIONAL_CODES = {2104, 2106, 2158}

# Order statuses
ACKNOWLEDGED_STATES = {'PreSubmitted', 'Submitted', 'Filled'}
REJECTED_STATES = {'Cancelled', 'ApiCancelled', 'Inactive'}

# Last price / last size, live and delayed
LAST_TICK_TYPES = {4, 5, 68, 71}

_FEED_CLOSED = None


class IBGateway(BrokerGateway):
    """
    Interactive Brokers gateway for the breakout engine.

    Args:
        config: ib_gateway section (host, port, client_id, timeout, order_ack_timeout)
        universe: universe section (exchange, currency)
        symbols: symbols to resolve and subscribe
    """

    def __init__(self, config: IBGatewayConfig, universe: UniverseConfig, symbols: List[str]):
        self.config = config
        self.exchange = universe.exchange
        self.currency = universe.currency
        self.symbols = list(symbols)

        self.ib = IB()
        self.state = ConnectionState.DISCONNECTED
        self.contracts: Dict[str, Contract] = {}
        self.tickers: Dict[str, Ticker] = {}

        self._ticks: asyncio.Queue = asyncio.Queue()
        self._con_id_to_symbol: Dict[int, str] = {}
        self._last_prices: Dict[str, float] = {}

        # Connection metrics
        self.connection_attempts = 0
        self.last_connection_time: Optional[datetime] = None
        self.last_tick_time: Optional[float] = None
        self.quote_only_updates = 0

        self.ib.errorEvent += self._on_error
        self.ib.disconnectedEvent += self._on_disconnected

    # ═══════════════════════════════════════════════════════════════════════
    # CONNECTION
    # ═══════════════════════════════════════════════════════════════════════

    async def connect(self, max_retries: int = 5, base_delay: float = 2.0):
        """
        Connect, resolve contracts and subscribe to market data.

        Raises:
            ConnectionError: all connection attempts failed or nothing resolved
        """
        if not self.ib.isConnected():
            await self._connect_with_retry(max_retries, base_delay)

        await self._resolve_contracts()
        if not self.contracts:
            raise ConnectionError("No universe symbols could be resolved at IB")

        self._subscribe()

    async def _connect_with_retry(self, max_retries: int, base_delay: float):
        for attempt in range(max_retries):
            try:
                self.state = ConnectionState.CONNECTING
                self.connection_attempts += 1

                logger.info(
                    f"🔐 Connecting to IB Gateway at {self.config.host}:{self.config.port} "
                    f"(attempt {attempt + 1}/{max_retries})"
                )

                await self.ib.connectAsync(
                    host=self.config.host,
                    port=self.config.port,
                    clientId=self.config.client_id,
                    timeout=self.config.timeout,
                )

                if self.ib.isConnected():
                    self.state = ConnectionState.CONNECTED
                    self.last_connection_time = datetime.now()
                    logger.info("✓ Connected to IB Gateway")
                    return

            except Exception as e:
                logger.error(f"Connection attempt {attempt + 1} failed: {e}")

                if attempt < max_retries - 1:
                    # Exponential backoff with jitter
                    delay = min(base_delay * (2 ** attempt), 60.0)
                    jitter = delay * (0.75 + random.random() * 0.5)
                    logger.info(f"Retrying in {jitter:.1f} seconds...")
                    await asyncio.sleep(jitter)

        self.state = ConnectionState.DISCONNECTED
        raise ConnectionError("Failed to connect to IB Gateway after all retry attempts")

    async def _resolve_contracts(self):
        requested = [Stock(symbol, self.exchange, self.currency) for symbol in self.symbols]
        qualified = await self.ib.qualifyContractsAsync(*requested)

        for contract in qualified:
            if contract is None or not contract.conId:
                continue
            self.contracts[contract.symbol] = contract
            self._con_id_to_symbol[contract.conId] = contract.symbol

        for symbol in self.symbols:
            if symbol not in self.contracts:
                logger.warning(f"⚠️ Failed to resolve contract for {symbol}, skipping")

        logger.info(f"📊 Resolved {len(self.contracts)}/{len(self.symbols)} contracts")

    def _subscribe(self):
        self.ib.pendingTickersEvent += self._on_pending_tickers
        for symbol, contract in self.contracts.items():
            self.tickers[symbol] = self.ib.reqMktData(contract, '', False, False)
        self.state = ConnectionState.SUBSCRIBED
        logger.info(f"📡 Subscribed to {len(self.tickers)} instruments")

    async def disconnect(self):
        if self.ib.isConnected():
            logger.info("Disconnecting from IB Gateway")
            for contract in self.contracts.values():
                self.ib.cancelMktData(contract)
            self.ib.disconnectedEvent -= self._on_disconnected
            self.ib.disconnect()
        self.state = ConnectionState.DISCONNECTED
        self._ticks.put_nowait(_FEED_CLOSED)

    # ═══════════════════════════════════════════════════════════════════════
    # MARKET DATA
    # ═══════════════════════════════════════════════════════════════════════

    def _on_pending_tickers(self, tickers):
        now = time.time()
        for ticker in tickers:
            symbol = self._con_id_to_symbol.get(ticker.contract.conId) if ticker.contract else None
            if symbol is None:
                continue

            price = ticker.last
            if price is None or (isinstance(price, float) and math.isnan(price)):
                price = ticker.close

            # Bid/ask-only updates repeat the unchanged last price
            traded = any(t.tickType in LAST_TICK_TYPES for t in (getattr(ticker, 'ticks', None) or ()))
            if not traded and self._last_prices.get(symbol) == price:
                self.quote_only_updates += 1
                continue
            self._last_prices[symbol] = price

            self.last_tick_time = now
            # Validation happens in the engine, which also counts drops
            self._ticks.put_nowait(Tick(symbol, price, now))

    async def tick_feed(self) -> AsyncIterator[Tick]:
        while True:
            tick = await self._ticks.get()
            if tick is _FEED_CLOSED:
                return
            yield tick

    # ═══════════════════════════════════════════════════════════════════════
    # ORDERS / POSITIONS
    # ═══════════════════════════════════════════════════════════════════════

    def _contract_for(self, symbol: str, exchange: Optional[str] = None) -> Contract:
        contract = self.contracts.get(symbol)
        if contract is None:
            contract = Stock(symbol, exchange or self.exchange, self.currency)
        return contract

    @staticmethod
    def _to_ib_order(order: OrderLeg):
        action = order.side.value
        if order.order_type is OrderType.LIMIT:
            ib_order = LimitOrder(action, order.quantity, order.price)
        elif order.order_type is OrderType.STOP_MARKET:
            ib_order = StopOrder(action, order.quantity, order.stop_price)
        else:
            ib_order = MarketOrder(action, order.quantity)

        ib_order.orderRef = order.tag
        ib_order.tif = 'DAY'
        if order.oca_group:
            # One fill cancels the rest of the group
            ib_order.ocaGroup = order.oca_group
            ib_order.ocaType = 1
        return ib_order

    async def submit_order(self, order: OrderLeg) -> OrderResult:
        if not self.ib.isConnected():
            return OrderResult(accepted=False, reason='not connected to IB Gateway')

        trade = self.ib.placeOrder(self._contract_for(order.symbol, order.exchange), self._to_ib_order(order))
        order_id = str(trade.order.orderId)

        status = await self._wait_for_status(trade)
        if status in ACKNOWLEDGED_STATES:
            return OrderResult(accepted=True, order_id=order_id)
        if status in REJECTED_STATES:
            reason = trade.log[-1].message if trade.log and trade.log[-1].message else status
            return OrderResult(accepted=False, reason=reason, order_id=order_id)

        return await self._cancel_unacknowledged(order, trade, order_id)

    async def _wait_for_status(self, trade) -> Optional[str]:
        """Poll until the order is acknowledged or dead. None on timeout."""
        deadline = time.monotonic() + self.config.order_ack_timeout
        while True:
            status = trade.orderStatus.status
            if status in ACKNOWLEDGED_STATES or status in REJECTED_STATES:
                return status
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(0.05)

    async def _cancel_unacknowledged(self, order: OrderLeg, trade, order_id: str) -> OrderResult:
        """
        An order without acknowledgement may still be working at IB. It is
        reported as rejected only once IB confirms the cancel; otherwise it
        is reported as accepted so the engine keeps the slot held.
        """
        timeout = self.config.order_ack_timeout
        logger.warning(
            f"No acknowledgement for {order.describe()} within {timeout}s "
            f"(status={trade.orderStatus.status}), cancelling"
        )
        try:
            self.ib.cancelOrder(trade.order)
        except Exception as e:
            logger.error(f"Cancel request failed for {order.describe()}: {e}")

        status = await self._wait_for_status(trade)
        if status in REJECTED_STATES:
            return OrderResult(
                accepted=False,
                reason=f"no acknowledgement within {timeout}s, cancelled",
                order_id=order_id,
            )

        if status not in ACKNOWLEDGED_STATES:
            logger.warning(
                f"⚠️ Cancel not confirmed for {order.describe()} "
                f"(status={trade.orderStatus.status}) - treating order as working"
            )
        return OrderResult(accepted=True, reason=status or 'unconfirmed', order_id=order_id)

    async def query_open_positions(self) -> List[PositionSnapshot]:
        positions = await self.ib.reqPositionsAsync()
        return [
            PositionSnapshot(
                symbol=p.contract.symbol,
                exchange=p.contract.exchange or p.contract.primaryExchange or self.exchange,
                net_quantity=int(p.position),
            )
            for p in positions
        ]

    # ═══════════════════════════════════════════════════════════════════════
    # EVENTS
    # ═══════════════════════════════════════════════════════════════════════

    def _on_disconnected(self):
        logger.warning("Disconnected from IB Gateway")
        self.state = ConnectionState.DISCONNECTED
        self._ticks.put_nowait(_FEED_CLOSED)

    def _on_error(self, reqId: int, errorCode: int, errorString: str, contract: Any):
        """
        Handle IB error messages.

        Critical error codes:
        - 1100: Connection lost
        - 1101: Connection restored, data lost (subscriptions are gone)
        - 1102: Connection restored, data maintained
        - 2103/2105: Farm disconnected
        - 201: Order rejected
        - 354: Not subscribed to market data
        """
        if errorCode in INFORMATIONAL_CODES:
            logger.debug(f"Info {errorCode}: {errorString}")
            return

        if errorCode == 1100:
            logger.error(f"ERROR 1100: IB server connection lost - {errorString}")
            self.state = ConnectionState.IB_DISCONNECTED

        elif errorCode == 1101:
            # Market data subscriptions were dropped by IB: the feed is gone
            logger.critical(f"ERROR 1101: Connection restored, data lost - {errorString}")
            self._ticks.put_nowait(_FEED_CLOSED)

        elif errorCode == 1102:
            logger.info(f"ERROR 1102: Connection restored, data maintained - {errorString}")
            if self.state == ConnectionState.IB_DISCONNECTED:
                self.state = ConnectionState.SUBSCRIBED

        elif errorCode in {2103, 2105}:
            logger.warning(f"ERROR {errorCode}: Data farm disconnected - {errorString}")

        elif errorCode == 201:
            symbol = getattr(contract, 'symbol', '?')
            logger.error(f"ERROR 201: Order rejected for {symbol} - {errorString}")

        elif errorCode == 354:
            logger.error(f"ERROR 354: Not subscribed to market data - {errorString}")

        elif errorCode in RETRYABLE_ERRORS:
            logger.warning(f"Retryable error {errorCode}: {errorString}")
        elif errorCode in FATAL_ERRORS:
            logger.error(f"Fatal error {errorCode}: {errorString}")
        else:
            logger.error(f"Error {errorCode}: {errorString}")

    def get_health_status(self) -> dict:
        health = {
            'connected': self.ib.isConnected(),
            'state': self.state.name,
            'connection_attempts': self.connection_attempts,
            'contracts': len(self.contracts),
            'subscriptions': len(self.tickers),
            'quote_only_updates': self.quote_only_updates,
        }

        if self.last_connection_time:
            health['uptime_seconds'] = (datetime.now() - self.last_connection_time).total_seconds()

        if self.last_tick_time:
            tick_age = time.time() - self.last_tick_time
            health['last_tick_age_seconds'] = tick_age
            health['data_stale'] = tick_age > 30

        return health
