"""
Tests for position slot bookkeeping
"""

import pytest

from breakout_bot.models import Side
from breakout_bot.positions import PositionManager, PositionStatus


@pytest.fixture
def manager():
    return PositionManager(max_per_side=1)


class TestCap:
    """Test the per-side cap"""

    def test_empty_allows_entry(self, manager):
        assert manager.can_enter('INFY', Side.LONG)
        assert manager.can_enter('INFY', Side.SHORT)

    def test_cap_blocks_same_side(self, manager):
        """Test one open LONG blocks another LONG but not a SHORT"""
        manager.record_entry('INFY', Side.LONG, 100.5, 142, 1.0)

        assert not manager.can_enter('INFY', Side.LONG)
        assert manager.can_enter('INFY', Side.SHORT)
        assert manager.can_enter('TCS', Side.LONG)

    def test_record_over_cap_raises(self, manager):
        manager.record_entry('INFY', Side.LONG)
        with pytest.raises(ValueError, match='cap'):
            manager.record_entry('INFY', Side.LONG)

    def test_larger_cap(self):
        manager = PositionManager(max_per_side=2)
        manager.record_entry('INFY', Side.SHORT)
        assert manager.can_enter('INFY', Side.SHORT)
        manager.record_entry('INFY', Side.SHORT)
        assert not manager.can_enter('INFY', Side.SHORT)
        assert manager.open_slots('INFY', Side.SHORT) == 2

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            PositionManager(max_per_side=0)

    def test_slot_counts_before_broker_fill(self, manager):
        """Test an admitted slot counts immediately, with nothing filled yet"""
        position = manager.record_entry('INFY', Side.LONG, 100.5, 142)

        assert position.open_quantity == 0
        assert position.is_open
        assert not manager.can_enter('INFY', Side.LONG)


class TestLifecycle:
    """Test release and close"""

    def test_release_frees_slot(self, manager):
        position = manager.record_entry('INFY', Side.LONG)

        manager.release(position, 5.0)

        assert position.status is PositionStatus.RELEASED
        assert position.closed_at == 5.0
        assert manager.can_enter('INFY', Side.LONG)
        assert manager.total_entries() == 1

    def test_release_is_idempotent(self, manager):
        position = manager.record_entry('INFY', Side.LONG)
        manager.close_all('INFY')
        manager.release(position)
        assert position.status is PositionStatus.CLOSED

    def test_close_side(self, manager):
        manager.record_entry('INFY', Side.LONG)
        manager.record_entry('INFY', Side.SHORT)

        assert manager.close('INFY', Side.LONG, 10.0) == 1
        assert manager.open_count('INFY') == 1
        assert manager.can_enter('INFY', Side.LONG)

    def test_close_all(self, manager):
        manager.record_entry('INFY', Side.LONG)
        manager.record_entry('INFY', Side.SHORT)
        manager.record_entry('TCS', Side.LONG)

        assert manager.close_all('INFY') == 2
        assert manager.open_count() == 1
        assert [p.symbol for p in manager.open_positions()] == ['TCS']

    def test_snapshot_is_copy(self, manager):
        manager.record_entry('INFY', Side.LONG)
        snapshot = manager.snapshot()
        snapshot['INFY'].clear()

        assert manager.open_count('INFY') == 1


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
