"""
Breakout Engine Loop

The single owner of all session state. Three producers feed one ordered
asyncio.Queue:

1. Feed pump     - ticks from BrokerGateway.tick_feed()
2. Timer         - TIMER events every timer_interval seconds
3. Order tasks   - ORDER_RESULT events when a submission completes

One consumer applies events strictly in queue order, so candle updates,
qualification, breakout admission and the square-off never interleave.
Broker I/O never runs inside the consumer while the session is live: it
is spawned as a task whose result comes back through the queue.

Per tick, for that symbol only:
    aggregate -> qualify -> detect -> build bracket -> admit slot -> submit entry

On the CLOSED phase the engine stops intake, waits for in-flight orders,
flattens every non-zero broker position and exits.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from .breakout import BreakoutDetector, BreakoutSignal
from .candles import CandleAggregator
from .config import BotConfig
from .gateway import BrokerGateway, FeedDisconnectedError
from .models import LegRole, OrderLeg, OrderResult, Tick
from .opening_range import OpeningRangeQualifier
from .orders import Bracket, OrderIntentBuilder
from .positions import Position, PositionManager
from .session_clock import SessionClock, SessionPhase
from .status import SessionReporter

logger = logging.getLogger(__name__)


class EventType(Enum):
    TICK = "tick"
    TIMER = "timer"
    ORDER_RESULT = "order_result"
    FEED_LOST = "feed_lost"


@dataclass
class EngineEvent:
    type: EventType
    timestamp: float
    tick: Optional[Tick] = None
    order: Optional[OrderLeg] = None
    result: Optional[OrderResult] = None
    bracket: Optional[Bracket] = None
    position: Optional[Position] = None
    error: Optional[str] = None


class BreakoutEngine:
    """
    Serialized decision engine for one trading session.

    Args:
        config: Validated bot configuration
        gateway: Broker gateway (live or paper)
        universe: Symbols to trade; ticks for anything else are dropped
        clock: Wall-clock source in unix seconds (default: time.time)
    """

    def __init__(
        self,
        config: BotConfig,
        gateway: BrokerGateway,
        universe: Iterable[str],
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.gateway = gateway
        self.universe: Set[str] = set(universe)
        self.clock = clock

        strategy = config.strategy
        self.session = SessionClock(config.session)
        self.aggregator = CandleAggregator(strategy.candle_width_seconds)
        self.qualifier = OpeningRangeQualifier(
            self.session,
            width_seconds=strategy.candle_width_seconds,
            required_candles=strategy.opening_range_candles,
            volatility_threshold=strategy.volatility_threshold,
        )
        self.positions = PositionManager(strategy.max_per_side)
        self.detector = BreakoutDetector(self.session, self.qualifier, self.positions)
        self.builder = OrderIntentBuilder(strategy.risk_per_trade, exchange=config.universe.exchange)
        self.reporter = SessionReporter(
            self.session,
            self.qualifier,
            self.positions,
            universe_size=len(self.universe),
            status_interval=config.engine.status_interval_seconds,
        )

        self.queue: asyncio.Queue = asyncio.Queue()
        self.timer_interval = config.engine.timer_interval_seconds

        self.running = False
        self.accepting_entries = True
        self.closed = False
        self.feed_lost = False
        self.last_tick_at: Optional[float] = None
        self.unprotected: List[OrderLeg] = []
        self.summary: Optional[dict] = None

        self._inflight: Set[asyncio.Task] = set()

        self.stats = {
            'ticks_received': 0,
            'ticks_dropped': 0,
            'signals': 0,
            'entries_submitted': 0,
            'entries_rejected': 0,
            'protective_rejected': 0,
            'flatten_orders': 0,
            'event_errors': 0,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # LOOP
    # ═══════════════════════════════════════════════════════════════════════

    async def run(self):
        """
        Run until square-off completes or the feed is lost.

        Raises:
            FeedDisconnectedError: tick feed ended mid-session
        """
        self.running = True
        logger.info(
            f"🕐 Engine running ({len(self.universe)} symbols). Session: "
            f"{self.config.session.market_open} - {self.config.session.entry_cutoff} (Entry) - "
            f"{self.config.session.market_close} (Close)"
        )

        producers = [
            asyncio.create_task(self._pump_feed()),
            asyncio.create_task(self._pump_timer()),
        ]

        try:
            await self._consume()
        finally:
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)
            await self._cancel_inflight()
            self.running = False

        if self.feed_lost:
            raise FeedDisconnectedError("Tick feed ended before market close")

    def stop(self):
        """Stop consuming after the current event (no square-off)."""
        self.running = False
        self.queue.put_nowait(EngineEvent(EventType.TIMER, self.clock()))

    async def _consume(self):
        while self.running:
            event = await self.queue.get()
            try:
                if self.running:
                    await self._dispatch(event)
            except Exception as e:
                self.stats['event_errors'] += 1
                symbol = event.tick.symbol if event.tick else (event.order.symbol if event.order else '-')
                logger.error(
                    f"Error handling {event.type.value} event for {symbol} "
                    f"(phase={self._phase_name()}): {e}",
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    async def _dispatch(self, event: EngineEvent):
        if event.type is EventType.TICK:
            self.handle_tick(event.tick)
        elif event.type is EventType.TIMER:
            await self.handle_timer(event.timestamp)
        elif event.type is EventType.ORDER_RESULT:
            self.handle_order_result(event)
        elif event.type is EventType.FEED_LOST:
            self._on_feed_lost(event)

    async def _pump_feed(self):
        reason = 'tick feed ended'
        try:
            async for tick in self.gateway.tick_feed():
                await self.queue.put(EngineEvent(EventType.TICK, tick.timestamp, tick=tick))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"tick feed failed: {e}"

        await self.queue.put(EngineEvent(EventType.FEED_LOST, self.clock(), error=reason))

    async def _pump_timer(self):
        while True:
            await asyncio.sleep(self.timer_interval)
            await self.queue.put(EngineEvent(EventType.TIMER, self.clock()))

    # ═══════════════════════════════════════════════════════════════════════
    # TICKS
    # ═══════════════════════════════════════════════════════════════════════

    def handle_tick(self, tick: Tick) -> List[BreakoutSignal]:
        """Run one tick through the decision pipeline. Returns admitted signals."""
        if self.closed:
            return []

        self.stats['ticks_received'] += 1

        if tick.symbol not in self.universe or not tick.is_valid():
            self.stats['ticks_dropped'] += 1
            logger.debug(f"Dropped malformed tick: {tick}")
            return []

        price = float(tick.price)
        now = tick.timestamp
        self.last_tick_at = now

        candle, _ = self.aggregator.on_tick(tick.symbol, price, now)
        if candle is None:
            return []

        self.qualifier.try_qualify(tick.symbol, self.aggregator.candles(tick.symbol), now)

        if not self.accepting_entries:
            return []

        admitted = []
        for signal in self.detector.on_price_update(tick.symbol, price, now):
            self.stats['signals'] += 1
            if self._admit(signal):
                admitted.append(signal)
        return admitted

    def _admit(self, signal: BreakoutSignal) -> bool:
        try:
            bracket = self.builder.build(signal)
        except ValueError as e:
            logger.warning(f"Skipping {signal.symbol} {signal.side.value} breakout: {e}")
            return False

        position = self.positions.record_entry(
            signal.symbol,
            signal.side,
            entry_price=bracket.entry_price,
            quantity=bracket.quantity,
            timestamp=signal.timestamp,
        )

        logger.info(
            f"🎯 {signal.side.value} {signal.symbol} qty={bracket.quantity} "
            f"@{bracket.entry_price} SL={bracket.stop_price} TGT={bracket.target_price}"
        )
        self.stats['entries_submitted'] += 1
        self._spawn(self._submit_and_report(bracket.entry, bracket, position))
        return True

    # ═══════════════════════════════════════════════════════════════════════
    # ORDERS
    # ═══════════════════════════════════════════════════════════════════════

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _submit(self, order: OrderLeg) -> OrderResult:
        try:
            return await self.gateway.submit_order(order)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Order submission failed for {order.describe()}: {e}")
            return OrderResult(accepted=False, reason=str(e))

    async def _submit_and_report(self, order: OrderLeg, bracket: Bracket, position: Position):
        result = await self._submit(order)
        await self.queue.put(EngineEvent(
            EventType.ORDER_RESULT,
            self.clock(),
            order=order,
            result=result,
            bracket=bracket,
            position=position,
        ))

    def handle_order_result(self, event: EngineEvent):
        order, result = event.order, event.result

        if order.role is LegRole.ENTRY:
            if not result.accepted:
                self.stats['entries_rejected'] += 1
                logger.warning(
                    f"❌ Entry rejected for {order.symbol} {event.bracket.side.value}: "
                    f"{result.reason or 'no reason given'}"
                )
                self.positions.release(event.position, event.timestamp)
                return

            logger.info(f"✓ Entry accepted: {order.describe()} ({result.order_id})")

            if self.closed:
                logger.warning(
                    f"{order.symbol}: entry confirmed after close - "
                    f"protective legs skipped, square-off covers it"
                )
                return

            for leg in event.bracket.protective_legs:
                self._spawn(self._submit_and_report(leg, event.bracket, event.position))

        elif order.role in (LegRole.STOP, LegRole.TARGET):
            if result.accepted:
                logger.info(f"✓ {order.role.value.title()} placed: {order.describe()}")
                return

            self.stats['protective_rejected'] += 1
            self.unprotected.append(order)
            logger.critical(
                f"🚨 UNPROTECTED POSITION {order.symbol} {event.bracket.side.value}: "
                f"{order.role.value} leg rejected ({result.reason or 'no reason given'}) - "
                f"bare exposure of {order.quantity}, manual action required"
            )

    async def settle(self):
        """Wait for outstanding orders and apply their queued results."""
        while True:
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)

            pending = []
            while not self.queue.empty():
                pending.append(self.queue.get_nowait())
                self.queue.task_done()

            for event in pending:
                if event.type is EventType.ORDER_RESULT:
                    self.handle_order_result(event)

            if not self._inflight and self.queue.empty():
                return

    async def _cancel_inflight(self):
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ═══════════════════════════════════════════════════════════════════════
    # TIMER / SESSION
    # ═══════════════════════════════════════════════════════════════════════

    async def handle_timer(self, now: float):
        if self.closed:
            return

        phase = self.session.advance(now)
        self.reporter.on_timer(now, phase, self.last_tick_at)

        if phase is SessionPhase.CLOSED:
            logger.info(f"🔔 Market close time ({self.config.session.market_close}) reached")
            await self.square_off(now)
            self.running = False

    async def square_off(self, now: Optional[float] = None) -> List[OrderLeg]:
        """
        Flatten every non-zero broker position. Runs once.

        Returns:
            The flattening orders that were submitted
        """
        if self.closed:
            return []

        now = self.clock() if now is None else now
        self.closed = True
        self.accepting_entries = False

        logger.info("🔄 Squaring off positions...")
        await self.settle()

        try:
            snapshots = await self.gateway.query_open_positions()
        except Exception as e:
            logger.error(f"❌ Square off error: position query failed: {e}")
            snapshots = []

        flattened = []
        for snapshot in snapshots:
            if snapshot.net_quantity == 0:
                continue
            order = self.builder.flatten(snapshot.symbol, snapshot.net_quantity, snapshot.exchange)
            result = await self._submit(order)
            flattened.append(order)
            self.stats['flatten_orders'] += 1
            if result.accepted:
                logger.info(f"✅ Squared off: {snapshot.symbol} ({order.describe()})")
            else:
                logger.critical(
                    f"🚨 Square-off rejected for {snapshot.symbol} "
                    f"net={snapshot.net_quantity}: {result.reason}"
                )

        for symbol in list(self.positions.positions.keys()):
            self.positions.close_all(symbol, now)

        self.summary = self.reporter.daily_summary(now)
        logger.info("📉 Market closed - engine stopping")
        return flattened

    def _on_feed_lost(self, event: EngineEvent):
        if self.closed:
            return
        self.feed_lost = True
        self.accepting_entries = False
        self.running = False
        logger.critical(
            f"❌ Feed disconnected ({event.error}) during {self._phase_name()} - "
            f"entries halted, no automatic square-off. "
            f"{self.positions.open_count()} slot(s) open; operator intervention required"
        )

    def _phase_name(self) -> str:
        phase = self.session.current_phase
        return phase.name if phase else 'UNKNOWN'

    def get_statistics(self) -> Dict[str, object]:
        stats = dict(self.stats)
        stats['candles'] = self.aggregator.get_statistics()
        stats['qualified'] = len(self.qualifier.qualified_symbols())
        stats['disqualified'] = len(self.qualifier.disqualified_symbols())
        stats['open_positions'] = self.positions.open_count()
        stats['unprotected'] = len(self.unprotected)
        return stats
