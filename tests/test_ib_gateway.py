"""
Tests for the IB Gateway adapter (no live connection required)
"""

import asyncio
import logging
import math
from types import SimpleNamespace

import pytest
from ib_insync import LimitOrder, MarketOrder, StopOrder

from breakout_bot.breakout import BreakoutSignal
from breakout_bot.config import IBGatewayConfig, UniverseConfig
from breakout_bot.engine import BreakoutEngine
from breakout_bot.ib_gateway import ConnectionState, IBGateway
from breakout_bot.models import LegRole, OrderLeg, OrderSide, OrderType, Side, Tick
from breakout_bot.orders import OrderIntentBuilder


class FakeIB:
    """Order side of ib_insync.IB with scripted order statuses."""

    def __init__(self, status='Submitted', cancel_status='Cancelled', log_message=''):
        self.status = status
        self.cancel_status = cancel_status
        self.log_message = log_message
        self.placed = []
        self.cancelled = []

    def isConnected(self):
        return True

    def placeOrder(self, contract, order):
        order.orderId = len(self.placed) + 1
        log = [SimpleNamespace(message=self.log_message)] if self.log_message else []
        trade = SimpleNamespace(
            contract=contract,
            order=order,
            orderStatus=SimpleNamespace(status=self.status),
            log=log,
        )
        self.placed.append(trade)
        return trade

    def cancelOrder(self, order):
        self.cancelled.append(order)
        if self.cancel_status:
            for trade in self.placed:
                if trade.order is order:
                    trade.orderStatus.status = self.cancel_status

    def entries(self):
        return [t for t in self.placed if t.order.orderRef in ('LONG', 'SHORT')]


@pytest.fixture
def gateway():
    gw = IBGateway(IBGatewayConfig(order_ack_timeout=0.05), UniverseConfig(), ['INFY', 'TCS'])
    gw._con_id_to_symbol = {101: 'INFY', 202: 'TCS'}
    return gw


def ticker(con_id, last, close=float('nan'), tick_types=()):
    return SimpleNamespace(
        contract=SimpleNamespace(conId=con_id),
        last=last,
        close=close,
        ticks=[SimpleNamespace(tickType=t) for t in tick_types],
    )


def entry_leg():
    return OrderLeg(OrderSide.BUY, 'INFY', 142, OrderType.LIMIT, price=100.5, tag='LONG')


async def drain(gw):
    return [tick async for tick in gw.tick_feed()]


class TestOrderMapping:
    """Test OrderLeg -> ib_insync order conversion"""

    def test_limit(self):
        order = IBGateway._to_ib_order(entry_leg())

        assert isinstance(order, LimitOrder)
        assert order.action == 'BUY'
        assert order.totalQuantity == 142
        assert order.lmtPrice == 100.5
        assert order.orderRef == 'LONG'
        assert order.tif == 'DAY'
        assert order.ocaGroup == ''

    def test_stop_market(self):
        leg = OrderLeg(OrderSide.SELL, 'INFY', 142, OrderType.STOP_MARKET,
                       stop_price=99.8, tag='SL', role=LegRole.STOP)
        order = IBGateway._to_ib_order(leg)

        assert isinstance(order, StopOrder)
        assert order.action == 'SELL'
        assert order.auxPrice == 99.8

    def test_market(self):
        leg = OrderLeg(OrderSide.BUY, 'TCS', 15, OrderType.MARKET, tag='EOD', role=LegRole.FLATTEN)
        order = IBGateway._to_ib_order(leg)

        assert isinstance(order, MarketOrder)
        assert order.orderRef == 'EOD'

    def test_protective_legs_share_oca_group(self):
        """Test stop and target cancel each other at IB"""
        signal = BreakoutSignal('INFY', Side.LONG, 100.5, 99.8, 100.6, 1772423405.0)
        bracket = OrderIntentBuilder(100.0).build(signal)

        stop = IBGateway._to_ib_order(bracket.stop)
        target = IBGateway._to_ib_order(bracket.target)

        assert stop.ocaGroup
        assert stop.ocaGroup == target.ocaGroup
        assert stop.ocaType == 1
        assert target.ocaType == 1
        assert IBGateway._to_ib_order(bracket.entry).ocaGroup == ''


class TestSubmitOrder:
    """Test acknowledgement handling"""

    def test_acknowledged(self, gateway):
        gateway.ib = FakeIB(status='Submitted')

        result = asyncio.run(gateway.submit_order(entry_leg()))

        assert result.accepted
        assert result.order_id == '1'
        assert gateway.ib.cancelled == []

    def test_rejected_with_reason(self, gateway):
        gateway.ib = FakeIB(status='Inactive', log_message='Order rejected - insufficient margin')

        result = asyncio.run(gateway.submit_order(entry_leg()))

        assert not result.accepted
        assert result.reason == 'Order rejected - insufficient margin'
        assert gateway.ib.cancelled == []

    def test_timeout_cancel_confirmed(self, gateway):
        """Test an unacknowledged order is cancelled before being reported rejected"""
        gateway.ib = FakeIB(status='PendingSubmit', cancel_status='Cancelled')

        result = asyncio.run(gateway.submit_order(entry_leg()))

        assert not result.accepted
        assert 'cancelled' in result.reason
        assert len(gateway.ib.cancelled) == 1

    def test_timeout_cancel_unconfirmed(self, gateway, caplog):
        """Test an order that cannot be confirmed dead is reported as working"""
        gateway.ib = FakeIB(status='PendingSubmit', cancel_status=None)

        with caplog.at_level(logging.WARNING, logger='breakout_bot.ib_gateway'):
            result = asyncio.run(gateway.submit_order(entry_leg()))

        assert result.accepted
        assert len(gateway.ib.cancelled) == 1
        assert any('Cancel not confirmed' in r.getMessage() for r in caplog.records)

    def test_not_connected(self, gateway):
        result = asyncio.run(gateway.submit_order(entry_leg()))

        assert not result.accepted
        assert 'not connected' in result.reason


class TestSlotCapAtBroker:
    """Test an unacknowledged entry never leaves two live entries at IB"""

    def run_two_breakouts(self, bot_config, opening_ticks, at, fake_ib):
        async def scenario():
            gateway = IBGateway(IBGatewayConfig(order_ack_timeout=0.05), UniverseConfig(), ['INFY'])
            gateway.ib = fake_ib
            engine = BreakoutEngine(bot_config, gateway, ['INFY'], clock=lambda: at('10:00:00'))
            for tick in opening_ticks('INFY'):
                engine.handle_tick(tick)
            engine.handle_tick(Tick('INFY', 100.6, at('09:20:05')))
            await engine.settle()
            engine.handle_tick(Tick('INFY', 100.7, at('09:21:00')))
            await engine.settle()
            return engine

        return asyncio.run(scenario())

    def test_unconfirmed_entry_holds_slot(self, bot_config, opening_ticks, at):
        fake_ib = FakeIB(status='PendingSubmit', cancel_status=None)

        engine = self.run_two_breakouts(bot_config, opening_ticks, at, fake_ib)

        assert len(fake_ib.entries()) == 1
        assert engine.positions.open_count('INFY') == 1

    def test_cancelled_entry_releases_slot(self, bot_config, opening_ticks, at):
        fake_ib = FakeIB(status='PendingSubmit', cancel_status='Cancelled')

        engine = self.run_two_breakouts(bot_config, opening_ticks, at, fake_ib)

        entries = [t.order for t in fake_ib.entries()]
        assert len(entries) == 2
        assert all(order in fake_ib.cancelled for order in entries)
        assert engine.positions.open_count('INFY') == 0


class TestMarketData:
    """Test ticker updates -> Tick feed"""

    def test_last_price_with_close_fallback(self, gateway):
        gateway._on_pending_tickers([
            ticker(101, 100.6),
            ticker(202, float('nan'), close=3000.0),
            ticker(999, 50.0),
        ])
        gateway._on_disconnected()

        ticks = asyncio.run(drain(gateway))

        assert [(t.symbol, t.price) for t in ticks] == [('INFY', 100.6), ('TCS', 3000.0)]

    def test_no_price_passed_through_invalid(self, gateway):
        """Test a ticker without any price still yields a tick the engine will drop"""
        gateway._on_pending_tickers([ticker(101, float('nan'))])
        gateway._on_disconnected()

        ticks = asyncio.run(drain(gateway))

        assert math.isnan(ticks[0].price)
        assert not ticks[0].is_valid()

    def test_quote_only_updates_skipped(self, gateway):
        """Test bid/ask updates with an unchanged last price emit no tick"""
        gateway._on_pending_tickers([ticker(101, 100.6, tick_types=(4,))])
        gateway._on_pending_tickers([ticker(101, 100.6, tick_types=(1, 2))])
        gateway._on_pending_tickers([ticker(101, 100.6, tick_types=(0, 3))])
        gateway._on_pending_tickers([ticker(101, 100.7, tick_types=(1,))])
        gateway._on_disconnected()

        ticks = asyncio.run(drain(gateway))

        assert [t.price for t in ticks] == [100.6, 100.7]
        assert gateway.quote_only_updates == 2

    def test_same_price_trade_kept(self, gateway):
        """Test a new trade at the previous price is still a tick"""
        gateway._on_pending_tickers([ticker(101, 100.6, tick_types=(4, 5))])
        gateway._on_pending_tickers([ticker(101, 100.6, tick_types=(5,))])
        gateway._on_disconnected()

        assert len(asyncio.run(drain(gateway))) == 2


class TestErrors:
    """Test IB error classification"""

    def test_data_lost_ends_feed(self, gateway):
        gateway._on_error(-1, 1101, 'Connectivity restored - data lost', None)
        assert asyncio.run(drain(gateway)) == []

    def test_connection_lost_and_restored(self, gateway):
        gateway.state = ConnectionState.SUBSCRIBED
        gateway._on_error(-1, 1100, 'Connectivity lost', None)
        assert gateway.state is ConnectionState.IB_DISCONNECTED

        gateway._on_error(-1, 1102, 'Connectivity restored - data maintained', None)
        assert gateway.state is ConnectionState.SUBSCRIBED

    @pytest.mark.parametrize('code,level,prefix', [
        (162, logging.WARNING, 'Retryable error 162'),
        (366, logging.WARNING, 'Retryable error 366'),
        (200, logging.ERROR, 'Fatal error 200'),
        (502, logging.ERROR, 'Fatal error 502'),
        (10147, logging.ERROR, 'Error 10147'),
    ])
    def test_fall_through_classification(self, gateway, caplog, code, level, prefix):
        with caplog.at_level(logging.DEBUG, logger='breakout_bot.ib_gateway'):
            gateway._on_error(-1, code, 'message', None)

        record = caplog.records[-1]
        assert record.levelno == level
        assert record.getMessage().startswith(prefix)

    def test_health_status(self, gateway):
        health = gateway.get_health_status()
        assert health['connected'] is False
        assert health['state'] == 'DISCONNECTED'
        assert health['contracts'] == 0
        assert health['quote_only_updates'] == 0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
