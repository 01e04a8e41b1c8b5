from __future__ import annotations
from typing import TYPE_CHECKING, List, Optional
from abc import ABC, abstractmethod

if TYPE_CHECKING:
    from .execution import ExecutionEngine
    from .execution_types import Trade


class TradeStep(ABC):
    """One stage of the per-tick management pipeline for an open trade."""

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine

    @abstractmethod
    def process(self, trade: Trade, current_price: float) -> Optional[str]:
        pass


SUPERVISION_EXIT_REASONS = ('news_blackout_exit', 'data_quality_exit')


class SupervisionStep(TradeStep):
    """Protects open trades around high-impact news and degraded market data.

    A trade already in enough profit is exited (``*_exit`` reasons); any other
    trade has its stop pulled to entry (``*_breakeven`` reasons).
    """

    def process(self, trade: Trade, current_price: float) -> Optional[str]:
        hazard = self.engine.supervision_hazard(trade)
        if hazard is None:
            return None
        profit_pct = trade.current_pnl.percentage if trade.current_pnl is not None else 0.0
        if profit_pct >= self.engine.smart_exit_min_profit_pct:
            return f'{hazard}_exit'
        reason = f'{hazard}_breakeven'
        if self.engine.tightens_stop(trade, trade.entry_price):
            trade.stop_loss = trade.entry_price
            trade.moved_to_breakeven = True
            self.engine.log_stop_adjustment(trade, reason)
        return reason


class BreakevenStep(TradeStep):
    def process(self, trade: Trade, current_price: float) -> Optional[str]:
        if trade.moved_to_breakeven or not self.engine.should_move_to_breakeven(trade, current_price):
            return None
        trade.moved_to_breakeven = True
        if not self.engine.tightens_stop(trade, trade.entry_price):
            return None
        trade.stop_loss = trade.entry_price
        self.engine.log_stop_adjustment(trade, 'breakeven')
        return 'breakeven'


class TrailingStep(TradeStep):
    def process(self, trade: Trade, current_price: float) -> Optional[str]:
        if not trade.trailing_stop.enabled:
            return None
        if not self.engine.should_activate_trailing(trade, current_price):
            return None
        if self.engine.update_trailing_stop(trade, current_price):
            return 'trailing'
        return None


class CloseCheck(TradeStep):
    """Returns the close reason when price has reached the stop or the target."""

    def process(self, trade: Trade, current_price: float) -> Optional[str]:
        if not self.engine.should_close_trade(trade, current_price):
            return None
        return self.engine.close_reason(trade, current_price)


def build_adjustment_steps(engine: ExecutionEngine) -> List[TradeStep]:
    # Breakeven mutates stop_loss before trailing and the close check read it.
    return [BreakevenStep(engine), TrailingStep(engine)]
