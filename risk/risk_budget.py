from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
import logging

from config.utils import as_float, as_int


logger = logging.getLogger(__name__)


class RiskBudget:
    """Risk-fraction accounting shared by the decision and execution paths."""

    def __init__(self, settings: Optional[Mapping[str, Any]] = None):
        settings = dict(settings or {})
        self.risk_per_trade = as_float(settings.get('risk_per_trade'), 0.01, minimum=0.0)
        self.max_risk_per_symbol = as_float(settings.get('max_risk_per_symbol'))
        self.max_daily_risk = as_float(settings.get('max_daily_risk'))
        self.max_concurrent_trades = as_int(settings.get('max_concurrent_trades'), 5, minimum=1)

    def risk_of(self, risk_fraction: Optional[float]) -> float:
        if risk_fraction is None or risk_fraction <= 0:
            return self.risk_per_trade
        return risk_fraction

    def symbol_exposure(self, trades: Iterable[Any], pair: str) -> float:
        return sum(self.risk_of(t.risk_fraction) for t in trades if t.pair == pair)

    def exceeds_symbol_cap(self, trades: Iterable[Any], pair: str) -> bool:
        if self.max_risk_per_symbol is None:
            return False
        exposure = self.symbol_exposure(trades, pair)
        return exposure > self.max_risk_per_symbol + 1e-12

    def can_open(self, active_count: int, daily_risk: float,
                 risk_fraction: Optional[float] = None) -> Tuple[bool, Optional[str]]:
        if active_count >= self.max_concurrent_trades:
            return False, 'max_concurrent_trades'
        if self.max_daily_risk is not None:
            if daily_risk + self.risk_of(risk_fraction) > self.max_daily_risk + 1e-12:
                return False, 'max_daily_risk'
        return True, None

    def snapshot(self, trades: Iterable[Any], daily_risk: float) -> Dict[str, Any]:
        trades = list(trades)
        by_pair: Dict[str, float] = {}
        for trade in trades:
            by_pair[trade.pair] = by_pair.get(trade.pair, 0.0) + self.risk_of(trade.risk_fraction)
        remaining = None
        if self.max_daily_risk is not None:
            remaining = round(max(0.0, self.max_daily_risk - daily_risk), 6)
        return {
            'active_trades': len(trades),
            'max_concurrent_trades': self.max_concurrent_trades,
            'daily_risk': round(daily_risk, 6),
            'max_daily_risk': self.max_daily_risk,
            'remaining_daily_risk': remaining,
            'exposure_by_pair': {pair: round(v, 6) for pair, v in by_pair.items()},
        }
