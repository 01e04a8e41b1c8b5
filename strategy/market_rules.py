"""Symbol, session and order-admissibility rules.

``MarketRules`` is built once from broker metadata and carries no mutable
state, so one instance can be shared by the execution path and the decision
engine.
"""
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from strategy.instruments import classify_asset_class, get_instrument


DEFAULT_FOREX_OPEN_UTC = '21:00'
DEFAULT_FOREX_CLOSE_UTC = '21:00'
DEFAULT_ROLLOVER_START_UTC = '21:55'
DEFAULT_ROLLOVER_END_UTC = '22:10'

_NON_ALNUM = re.compile(r'[^A-Z0-9]')


def to_minutes(value: Any) -> Optional[int]:
    """Parse ``HH:MM`` into minutes of day, clamped to the day."""
    raw = str(value or '').strip()
    if not raw:
        return None
    parts = raw.split(':')
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    return min(24 * 60 - 1, max(0, hours * 60 + minutes))


def _utc(time_s: Optional[float]) -> datetime:
    ts = time.time() if time_s is None else time_s
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _minutes_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def within_window_utc(time_s: Optional[float], start: Any, end: Any) -> bool:
    start_min = to_minutes(start)
    end_min = to_minutes(end)
    if start_min is None or end_min is None:
        return False
    current = _minutes_of_day(_utc(time_s))
    if start_min <= end_min:
        return start_min <= current <= end_min
    return current >= start_min or current <= end_min


def _normalize_base(value: Any) -> str:
    return str(value or '').strip().upper()


@dataclass(frozen=True)
class OrderCheck:
    allowed: bool
    reasons: List[str] = field(default_factory=list)


class MarketRules:
    def __init__(self, options: Optional[Mapping[str, Any]] = None):
        options = dict(options or {})
        broker_meta = options.get('broker_meta') or {}

        self.symbol_allowlist = {
            _normalize_base(value)
            for value in (broker_meta.get('symbol_allowlist') or [])
            if _normalize_base(value)
        }
        self.symbol_map: Dict[str, str] = {
            _normalize_base(key): value
            for key, value in (broker_meta.get('symbol_map') or {}).items()
        }
        self.symbol_suffix = _normalize_base(broker_meta.get('symbol_suffix'))

        self.forex_open_utc = options.get('forex_open_utc') or DEFAULT_FOREX_OPEN_UTC
        self.forex_close_utc = options.get('forex_close_utc') or DEFAULT_FOREX_CLOSE_UTC
        self.rollover_start_utc = options.get('rollover_start_utc') or DEFAULT_ROLLOVER_START_UTC
        self.rollover_end_utc = options.get('rollover_end_utc') or DEFAULT_ROLLOVER_END_UTC
        self.block_rollover = options.get('block_rollover') is not False
        self.block_closed = options.get('block_closed') is not False

    def normalize_symbol(self, value: Any) -> Optional[str]:
        raw = _normalize_base(value)
        if not raw:
            return None
        mapped = self.symbol_map.get(raw) or self.symbol_map.get(_NON_ALNUM.sub('', raw))
        normalized = _normalize_base(mapped) if mapped else raw
        if self.symbol_suffix and normalized.endswith(self.symbol_suffix):
            return normalized[:-len(self.symbol_suffix)]
        return normalized

    def resolve_broker_symbol(self, value: Any) -> Optional[str]:
        normalized = self.normalize_symbol(value)
        if not normalized:
            return None
        if self.symbol_suffix and not normalized.endswith(self.symbol_suffix):
            return f"{normalized}{self.symbol_suffix}"
        return normalized

    def is_symbol_allowed(self, value: Any) -> bool:
        if not self.symbol_allowlist:
            return True
        normalized = self.normalize_symbol(value)
        if not normalized:
            return False
        return (
            normalized in self.symbol_allowlist
            or self.resolve_broker_symbol(normalized) in self.symbol_allowlist
        )

    def is_market_open(self, value: Any, time_s: Optional[float] = None) -> bool:
        symbol = self.normalize_symbol(value)
        if not symbol:
            return False
        if classify_asset_class(symbol) == 'crypto':
            return True

        moment = _utc(time_s)
        weekday = moment.weekday()  # Monday == 0
        current = _minutes_of_day(moment)
        open_minutes = to_minutes(self.forex_open_utc)
        close_minutes = to_minutes(self.forex_close_utc)
        if open_minutes is None:
            open_minutes = 21 * 60
        if close_minutes is None:
            close_minutes = 21 * 60

        if weekday == 5:
            return False
        if weekday == 6 and current < open_minutes:
            return False
        if weekday == 4 and current >= close_minutes:
            return False
        return True

    def is_rollover_window(self, time_s: Optional[float] = None) -> bool:
        return within_window_utc(time_s, self.rollover_start_utc, self.rollover_end_utc)

    def get_precision(self, value: Any) -> Dict[str, Any]:
        symbol = self.normalize_symbol(value)
        instrument = get_instrument(symbol)
        if instrument is not None:
            return {
                'symbol': symbol,
                'price_precision': instrument.price_precision,
                'pip_size': instrument.pip_size,
                'contract_size': instrument.contract_size,
                'asset_class': instrument.asset_class,
            }
        return {
            'symbol': symbol,
            'price_precision': 5,
            'pip_size': 0.01 if symbol and symbol.endswith('JPY') else 0.0001,
            'contract_size': 100000.0,
            'asset_class': classify_asset_class(symbol),
        }

    def validate_order(self, order: Optional[Mapping[str, Any]] = None,
                       time_s: Optional[float] = None) -> OrderCheck:
        order = order or {}
        symbol = self.normalize_symbol(order.get('symbol') or order.get('pair'))
        if not symbol:
            return OrderCheck(False, ['symbol_required'])
        if not self.is_symbol_allowed(symbol):
            return OrderCheck(False, ['symbol_not_allowed'])
        if self.block_closed and not self.is_market_open(symbol, time_s):
            return OrderCheck(False, ['market_closed'])
        if self.block_rollover and self.is_rollover_window(time_s):
            return OrderCheck(False, ['rollover_window'])
        return OrderCheck(True, [])
