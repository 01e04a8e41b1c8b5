from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from strategy.signals import Direction, TradingSignal


@dataclass
class TrailingStopState:
    enabled: bool = False
    activation_level: Optional[float] = None
    trailing_distance: Optional[float] = None
    breakeven_at_fraction: float = 0.3
    activation_at_fraction: float = 0.6
    step_distance: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "activation_level": self.activation_level,
            "trailing_distance": self.trailing_distance,
            "breakeven_at_fraction": self.breakeven_at_fraction,
            "activation_at_fraction": self.activation_at_fraction,
            "step_distance": self.step_distance,
        }


@dataclass(frozen=True)
class PnL:
    """Numeric profit and loss; ``formatted`` is the display view."""

    pips: float
    amount: float
    percentage: float

    def formatted(self) -> Dict[str, str]:
        return {
            "pips": f"{self.pips:.1f}",
            "amount": f"{self.amount:.2f}",
            "percentage": f"{self.percentage:.2f}",
        }

    def as_dict(self) -> Dict[str, float]:
        return {"pips": self.pips, "amount": self.amount, "percentage": self.percentage}


@dataclass
class Trade:
    id: str
    pair: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    position_size: float
    risk_fraction: float
    open_time: float
    status: str = "open"
    trailing_stop: TrailingStopState = field(default_factory=TrailingStopState)
    stress_tests: Dict[str, Any] = field(default_factory=dict)
    guardrails: Dict[str, Any] = field(default_factory=dict)
    signal: Optional[TradingSignal] = None
    current_pnl: Optional[PnL] = None
    moved_to_breakeven: bool = False

    broker: Optional[str] = None
    broker_route: Optional[str] = None
    broker_order: Dict[str, Any] = field(default_factory=dict)
    execution: Dict[str, Any] = field(default_factory=dict)
    broker_close_error: Optional[str] = None
    broker_close_acknowledged: bool = False
    broker_close_receipt: Optional[Dict[str, Any]] = None
    manual_close_acknowledged: bool = False
    broker_modify_error: Optional[str] = None
    last_broker_modify_at: Optional[float] = None
    last_broker_stop_loss_sent: Optional[float] = None
    broker_fill: Optional[Dict[str, Any]] = None
    fill_price: Optional[float] = None

    close_price: Optional[float] = None
    close_time: Optional[float] = None
    close_reason: Optional[str] = None
    final_pnl: Optional[PnL] = None
    duration: Optional[float] = None

    @property
    def broker_ticket(self) -> Optional[str]:
        for key in ("id", "ticket", "order_id", "orderId"):
            value = self.broker_order.get(key)
            if value is not None:
                return str(value)
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pair": self.pair,
            "direction": self.direction.value,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "position_size": self.position_size,
            "risk_fraction": self.risk_fraction,
            "open_time": self.open_time,
            "status": self.status,
            "trailing_stop": self.trailing_stop.as_dict(),
            "moved_to_breakeven": self.moved_to_breakeven,
            "current_pnl": self.current_pnl.formatted() if self.current_pnl else None,
            "broker": self.broker,
            "broker_ticket": self.broker_ticket,
            "execution": dict(self.execution),
            "broker_close_error": self.broker_close_error,
            "broker_modify_error": self.broker_modify_error,
            "fill_price": self.fill_price,
            "close_price": self.close_price,
            "close_time": self.close_time,
            "close_reason": self.close_reason,
            "final_pnl": self.final_pnl.formatted() if self.final_pnl else None,
            "duration": self.duration,
        }


@dataclass
class ExecutionState:
    """Book owned by exactly one ``ExecutionEngine``."""

    active_trades: Dict[str, Trade] = field(default_factory=dict)
    trading_history: List[Trade] = field(default_factory=list)
    daily_risk: float = 0.0
    last_broker_sync: Optional[float] = None
    last_broker_sync_attempt: Optional[float] = None
    # Latest news/data-quality telemetry per pair, fed by incoming signals.
    market_context: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    success: bool
    trade: Optional[Trade] = None
    reason: Optional[str] = None
    signal: Optional[TradingSignal] = None
    # Machine-readable failure category (``broker_failed``, ``market_rules``...).
    code: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.trade is not None:
            data["trade"] = self.trade.as_dict()
        if self.reason is not None:
            data["reason"] = self.reason
        if self.code is not None:
            data["code"] = self.code
        return data


def _noop(*_args: Any) -> None:
    return None


@dataclass
class EngineHooks:
    on_trade_closed: Callable[[Trade], None] = _noop
    refresh_risk_snapshot: Callable[[], None] = _noop


@dataclass
class BrokerResult:
    """Normalized view of a broker router response."""

    success: bool
    broker: Optional[str] = None
    order: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, response: Any) -> "BrokerResult":
        if not isinstance(response, Mapping):
            return cls(success=False, error="Invalid broker response")
        order = response.get("order")
        result = response.get("result")
        error = response.get("error")
        return cls(
            success=bool(response.get("success")),
            broker=response.get("broker"),
            order=dict(order) if isinstance(order, Mapping) else {},
            result=dict(result) if isinstance(result, Mapping) else None,
            error=str(error) if error else None,
            raw=dict(response),
        )

    @classmethod
    def failure(cls, error: str) -> "BrokerResult":
        return cls(success=False, error=error)

    @property
    def fill_price(self) -> Optional[float]:
        for key in ("fill_price", "fillPrice", "price", "avg_price", "avgPrice", "executed_price"):
            value = self.order.get(key)
            try:
                price = float(value)
            except (TypeError, ValueError):
                continue
            if price:
                return price
        return None
