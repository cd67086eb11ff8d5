"""
Opening-Range Breakout Engine

Real-time tick aggregation, opening-range qualification, breakout
detection and bracket-order management for a single trading session.
"""

from .models import (
    Side, OrderSide, OrderType, LegRole,
    Tick, OrderLeg, OrderResult, PositionSnapshot,
)
from .config import BotConfig, ConfigError, load_config, load_universe
from .session_clock import SessionPhase, SessionClock
from .candles import Candle, CandleAggregator
from .opening_range import OpeningRange, OpeningRangeQualifier
from .breakout import BreakoutSignal, BreakoutDetector
from .orders import Bracket, OrderIntentBuilder
from .positions import Position, PositionStatus, PositionManager
from .gateway import BrokerGateway, FeedDisconnectedError
from .paper_gateway import PaperGateway
from .engine import BreakoutEngine, EngineEvent, EventType

__all__ = [
    'Side', 'OrderSide', 'OrderType', 'LegRole',
    'Tick', 'OrderLeg', 'OrderResult', 'PositionSnapshot',
    'BotConfig', 'ConfigError', 'load_config', 'load_universe',
    'SessionPhase', 'SessionClock',
    'Candle', 'CandleAggregator',
    'OpeningRange', 'OpeningRangeQualifier',
    'BreakoutSignal', 'BreakoutDetector',
    'Bracket', 'OrderIntentBuilder',
    'Position', 'PositionStatus', 'PositionManager',
    'BrokerGateway', 'FeedDisconnectedError',
    'PaperGateway',
    'BreakoutEngine', 'EngineEvent', 'EventType',
]
