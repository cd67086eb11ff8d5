"""
Tests for bracket construction and square-off orders
"""

import pytest

from breakout_bot.breakout import BreakoutSignal
from breakout_bot.models import LegRole, OrderSide, OrderType, Side
from breakout_bot.orders import FLATTEN_TAG, STOP_TAG, TARGET_TAG, OrderIntentBuilder


def make_signal(side, entry, stop, symbol='INFY'):
    return BreakoutSignal(
        symbol=symbol,
        side=side,
        entry_price=entry,
        stop_price=stop,
        trigger_price=entry,
        timestamp=0.0,
    )


@pytest.fixture
def builder():
    return OrderIntentBuilder(risk_per_trade=100.0, exchange='NSE')


class TestSizing:
    """Test quantity and target calculation"""

    def test_long_bracket(self, builder):
        """Test LONG entry 100, stop 95, risk 100 -> qty 20, target 105"""
        bracket = builder.build(make_signal(Side.LONG, 100.0, 95.0))

        assert bracket.quantity == 20
        assert bracket.target_price == 105.0
        assert bracket.initial_risk == 5.0

    def test_short_bracket(self, builder):
        """Test SHORT entry 100, stop 102, risk 50 -> qty 25, target 98"""
        bracket = builder.build(make_signal(Side.SHORT, 100.0, 102.0), risk_budget=50)

        assert bracket.quantity == 25
        assert bracket.target_price == 98.0

    def test_quantity_floors(self, builder):
        """Test partial units are truncated"""
        bracket = builder.build(make_signal(Side.LONG, 100.5, 99.8))
        assert bracket.quantity == 142

    def test_minimum_quantity(self, builder):
        """Test a distance larger than the budget still trades one unit"""
        bracket = builder.build(make_signal(Side.LONG, 2500.0, 2300.0))
        assert bracket.quantity == 1

    def test_target_is_one_to_one(self, builder):
        """Test |target - entry| == |entry - stop| for both sides"""
        for side, entry, stop in ((Side.LONG, 250.0, 247.5), (Side.SHORT, 250.0, 252.5)):
            bracket = builder.build(make_signal(side, entry, stop))
            assert abs(bracket.target_price - entry) == pytest.approx(abs(entry - stop))

    def test_zero_distance_rejected(self, builder):
        """Test entry == stop cannot be sized"""
        with pytest.raises(ValueError, match='zero risk'):
            builder.build(make_signal(Side.LONG, 100.0, 100.0))


class TestLegs:
    """Test the three linked legs"""

    def test_long_legs(self, builder):
        bracket = builder.build(make_signal(Side.LONG, 100.0, 95.0))

        assert bracket.entry.side is OrderSide.BUY
        assert bracket.entry.order_type is OrderType.LIMIT
        assert bracket.entry.price == 100.0
        assert bracket.entry.tag == 'LONG'
        assert bracket.entry.role is LegRole.ENTRY

        assert bracket.stop.side is OrderSide.SELL
        assert bracket.stop.order_type is OrderType.STOP_MARKET
        assert bracket.stop.stop_price == 95.0
        assert bracket.stop.tag == STOP_TAG

        assert bracket.target.side is OrderSide.SELL
        assert bracket.target.order_type is OrderType.LIMIT
        assert bracket.target.price == 105.0
        assert bracket.target.tag == TARGET_TAG

        for leg in (bracket.entry, bracket.stop, bracket.target):
            assert leg.quantity == 20
            assert leg.symbol == 'INFY'
            assert leg.exchange == 'NSE'

    def test_short_legs(self, builder):
        bracket = builder.build(make_signal(Side.SHORT, 100.0, 102.0))

        assert bracket.entry.side is OrderSide.SELL
        assert bracket.entry.tag == 'SHORT'
        assert bracket.stop.side is OrderSide.BUY
        assert bracket.stop.stop_price == 102.0
        assert bracket.target.side is OrderSide.BUY
        assert bracket.target.price == 98.0
        assert bracket.protective_legs == (bracket.stop, bracket.target)

    def test_oca_group(self, builder):
        """Test stop and target share a group that no other bracket uses"""
        first = builder.build(make_signal(Side.LONG, 100.0, 95.0))
        second = builder.build(make_signal(Side.LONG, 100.0, 95.0))

        assert first.stop.oca_group
        assert first.stop.oca_group == first.target.oca_group
        assert first.entry.oca_group == ''
        assert second.stop.oca_group != first.stop.oca_group

    def test_describe(self, builder):
        bracket = builder.build(make_signal(Side.LONG, 100.0, 95.0))
        assert bracket.stop.describe() == 'SELL 20 INFY SL-MKT stop=95.00 [SL]'


class TestFlatten:
    """Test square-off orders"""

    def test_flatten_long(self, builder):
        order = builder.flatten('INFY', 20)

        assert order.side is OrderSide.SELL
        assert order.quantity == 20
        assert order.order_type is OrderType.MARKET
        assert order.tag == FLATTEN_TAG
        assert order.role is LegRole.FLATTEN

    def test_flatten_short(self, builder):
        order = builder.flatten('TCS', -15, exchange='BSE')

        assert order.side is OrderSide.BUY
        assert order.quantity == 15
        assert order.exchange == 'BSE'

    def test_flatten_zero(self, builder):
        with pytest.raises(ValueError):
            builder.flatten('INFY', 0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
