"""
Configuration Loading

Reads config.yaml into typed sections and loads the instrument universe.

config.yaml layout:
    session:    timezone + the four phase cutoffs (HH:MM:SS, market time)
    strategy:   risk_per_trade, volatility_threshold, max_per_side,
                candle_width_seconds, opening_range_candles
    engine:     timer_interval_seconds, status_interval_seconds
    universe:   file and/or symbols, exchange, currency
    ib_gateway: host, port, client_id, timeout, order_ack_timeout
    logging:    level, format

Every section is optional; missing keys fall back to the defaults below.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import time as dtime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytz
import yaml

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ConfigError(ValueError):
    """Fatal configuration problem - aborts startup."""


def parse_clock_time(value: Any, name: str) -> dtime:
    """Parse 'HH:MM:SS' (or 'HH:MM') into a datetime.time."""
    if isinstance(value, dtime):
        return value
    # YAML 1.1 reads unquoted 09:15:00 as sexagesimal seconds
    if isinstance(value, int):
        hours, rest = divmod(value, 3600)
        minutes, seconds = divmod(rest, 60)
        return dtime(hours, minutes, seconds)

    parts = str(value).strip().split(':')
    try:
        if len(parts) not in (2, 3):
            raise ValueError
        numbers = [int(p) for p in parts]
        return dtime(*numbers)
    except ValueError:
        raise ConfigError(f"Invalid time for {name}: {value!r} (expected HH:MM:SS)")


@dataclass
class SessionConfig:
    timezone: str = 'Asia/Kolkata'
    market_open: dtime = dtime(9, 15, 0)
    first_candle_end: dtime = dtime(9, 20, 0)
    entry_cutoff: dtime = dtime(12, 0, 0)
    market_close: dtime = dtime(15, 20, 0)

    CUTOFFS = ('market_open', 'first_candle_end', 'entry_cutoff', 'market_close')

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'SessionConfig':
        defaults = cls()
        kwargs = {'timezone': raw.get('timezone', defaults.timezone)}
        for name in cls.CUTOFFS:
            kwargs[name] = parse_clock_time(raw.get(name, getattr(defaults, name)), name)
        return cls(**kwargs)

    def validate(self):
        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            raise ConfigError(f"Unknown timezone: {self.timezone}")

        times = [getattr(self, name) for name in self.CUTOFFS]
        for earlier, later, a, b in zip(times, times[1:], self.CUTOFFS, self.CUTOFFS[1:]):
            if not earlier < later:
                raise ConfigError(f"Session cutoffs out of order: {a}={earlier} must be before {b}={later}")


@dataclass
class StrategyConfig:
    risk_per_trade: float = 100.0
    volatility_threshold: float = 1.0
    max_per_side: int = 1
    candle_width_seconds: int = 60
    opening_range_candles: int = 5

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'StrategyConfig':
        defaults = cls()
        return cls(
            risk_per_trade=float(raw.get('risk_per_trade', defaults.risk_per_trade)),
            volatility_threshold=float(raw.get('volatility_threshold', defaults.volatility_threshold)),
            max_per_side=int(raw.get('max_per_side', defaults.max_per_side)),
            candle_width_seconds=int(raw.get('candle_width_seconds', defaults.candle_width_seconds)),
            opening_range_candles=int(raw.get('opening_range_candles', defaults.opening_range_candles)),
        )

    def validate(self):
        if self.risk_per_trade <= 0:
            raise ConfigError(f"risk_per_trade must be positive, got {self.risk_per_trade}")
        if self.volatility_threshold <= 0:
            raise ConfigError(f"volatility_threshold must be positive, got {self.volatility_threshold}")
        if self.max_per_side < 1:
            raise ConfigError(f"max_per_side must be at least 1, got {self.max_per_side}")
        if self.candle_width_seconds <= 0:
            raise ConfigError(f"candle_width_seconds must be positive, got {self.candle_width_seconds}")
        if self.opening_range_candles < 1:
            raise ConfigError(f"opening_range_candles must be at least 1, got {self.opening_range_candles}")


@dataclass
class EngineConfig:
    timer_interval_seconds: float = 5.0
    status_interval_seconds: float = 30.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'EngineConfig':
        defaults = cls()
        return cls(
            timer_interval_seconds=float(raw.get('timer_interval_seconds', defaults.timer_interval_seconds)),
            status_interval_seconds=float(raw.get('status_interval_seconds', defaults.status_interval_seconds)),
        )

    def validate(self):
        if self.timer_interval_seconds <= 0:
            raise ConfigError("timer_interval_seconds must be positive")
        if self.status_interval_seconds <= 0:
            raise ConfigError("status_interval_seconds must be positive")


@dataclass
class UniverseConfig:
    file: Optional[str] = None
    symbols: List[str] = field(default_factory=list)
    exchange: str = 'NSE'
    currency: str = 'INR'

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'UniverseConfig':
        return cls(
            file=raw.get('file'),
            symbols=[str(s) for s in raw.get('symbols') or []],
            exchange=raw.get('exchange', 'NSE'),
            currency=raw.get('currency', 'INR'),
        )


@dataclass
class IBGatewayConfig:
    host: str = '127.0.0.1'
    port: int = 4002
    client_id: int = 1
    timeout: int = 10
    order_ack_timeout: float = 5.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'IBGatewayConfig':
        defaults = cls()
        return cls(
            host=raw.get('host', defaults.host),
            port=int(raw.get('port', defaults.port)),
            client_id=int(raw.get('client_id', defaults.client_id)),
            timeout=int(raw.get('timeout', defaults.timeout)),
            order_ack_timeout=float(raw.get('order_ack_timeout', defaults.order_ack_timeout)),
        )


@dataclass
class BotConfig:
    """Complete, validated bot configuration."""
    session: SessionConfig = field(default_factory=SessionConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    universe: UniverseConfig = field(default_factory=UniverseConfig)
    ib_gateway: IBGatewayConfig = field(default_factory=IBGatewayConfig)
    log_level: str = 'INFO'
    log_format: str = DEFAULT_LOG_FORMAT

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'BotConfig':
        raw = raw or {}
        log_section = raw.get('logging') or {}
        config = cls(
            session=SessionConfig.from_dict(raw.get('session') or {}),
            strategy=StrategyConfig.from_dict(raw.get('strategy') or {}),
            engine=EngineConfig.from_dict(raw.get('engine') or {}),
            universe=UniverseConfig.from_dict(raw.get('universe') or {}),
            ib_gateway=IBGatewayConfig.from_dict(raw.get('ib_gateway') or {}),
            log_level=str(log_section.get('level', 'INFO')).upper(),
            log_format=log_section.get('format', DEFAULT_LOG_FORMAT),
        )
        config.validate()
        return config

    def validate(self):
        self.session.validate()
        self.strategy.validate()
        self.engine.validate()
        self._check_opening_window()

    def _check_opening_window(self):
        """Warn when the opening window cannot hold exactly N buckets."""
        width = self.strategy.candle_width_seconds
        start = _seconds_of_day(self.session.market_open) // width
        end = _seconds_of_day(self.session.first_candle_end) // width
        buckets = end - start
        if buckets != self.strategy.opening_range_candles:
            logger.warning(
                f"Opening-range window {self.session.market_open}-{self.session.first_candle_end} "
                f"spans {buckets} buckets of {width}s but opening_range_candles="
                f"{self.strategy.opening_range_candles}; no symbol will ever qualify"
            )


def _seconds_of_day(t: dtime) -> int:
    return t.hour * 3600 + t.minute * 60 + t.second


def load_config(path) -> BotConfig:
    """
    Load and validate a YAML configuration file.

    Raises:
        ConfigError: file missing, unreadable, or semantically invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found at {config_path}")

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}")

    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    config = BotConfig.from_dict(raw)

    # Universe file paths are relative to the config file
    if config.universe.file and not Path(config.universe.file).is_absolute():
        config.universe.file = str(config_path.parent / config.universe.file)

    return config


def load_universe(universe: UniverseConfig) -> List[str]:
    """
    Resolve the instrument universe.

    Symbols listed inline come first, followed by those from the JSON file
    ({"stocks": [{"symbol": "RELIANCE"}, ...]}). Duplicates are dropped,
    order is preserved.

    Raises:
        ConfigError: unreadable file or empty universe
    """
    symbols = list(universe.symbols)

    if universe.file:
        try:
            with open(universe.file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load universe from {universe.file}: {e}")

        for entry in data.get('stocks', []):
            symbol = entry.get('symbol') if isinstance(entry, dict) else entry
            if symbol:
                symbols.append(str(symbol))

    unique = list(dict.fromkeys(s.strip() for s in symbols if s and s.strip()))
    if not unique:
        raise ConfigError("Instrument universe is empty")

    logger.info(f"📊 Universe loaded ({len(unique)} symbols)")
    return unique
