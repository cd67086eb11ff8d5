"""
Shared test fixtures
"""

from datetime import datetime

import pytest
import pytz

from breakout_bot.config import BotConfig
from breakout_bot.models import Tick
from breakout_bot.session_clock import SessionClock

IST = pytz.timezone('Asia/Kolkata')
SESSION_DATE = (2026, 3, 2)


@pytest.fixture
def at():
    """Unix timestamp for an 'HH:MM:SS' market time on the test session date"""
    def _at(hhmmss: str) -> float:
        h, m, s = (int(p) for p in hhmmss.split(':'))
        return IST.localize(datetime(*SESSION_DATE, h, m, s)).timestamp()
    return _at


@pytest.fixture
def bot_config():
    """Default configuration with a small inline universe"""
    return BotConfig.from_dict({
        'universe': {'symbols': ['RELIANCE', 'INFY', 'TCS']},
        'engine': {'timer_interval_seconds': 0.01, 'status_interval_seconds': 30},
    })


@pytest.fixture
def session_clock(bot_config):
    return SessionClock(bot_config.session)


@pytest.fixture
def opening_ticks(at):
    """
    Ticks forming one candle per minute from 09:15.

    The first candle spans open/high/low; the rest trade at the open, so the
    resulting range is exactly (low, high) with the given opening price.
    """
    def _make(symbol, open_price=100.0, high=100.5, low=99.8, minutes=5, skip=()):
        ticks = []
        for minute in range(minutes):
            if minute in skip:
                continue
            base = at(f"09:{15 + minute:02d}:00")
            if minute == 0:
                prices = [open_price, high, low, open_price]
            else:
                prices = [open_price, open_price]
            for offset, price in enumerate(prices):
                ticks.append(Tick(symbol, price, base + 1 + offset * 10))
        return ticks
    return _make
