import logging
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from config.utils import as_float
from strategy.brokers import BrokerRouter


logger = logging.getLogger(__name__)


@dataclass
class PaperPosition:
    ticket: str
    trade_id: Optional[str]
    symbol: str
    side: str
    volume: float
    fill_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    history: List[Dict[str, Any]] = field(default_factory=list)


class PaperBrokerRouter(BrokerRouter):
    """In-process broker used for paper trading and as a last-price source.

    Orders fill immediately at the last price set for the symbol (or the
    requested price when none is known). Fills are queued for the next
    reconciliation pass.
    """

    supports_reconciliation = True

    def __init__(self, name: str = 'paper', initial_equity: float = 10000.0) -> None:
        self.name = name
        self._equity = initial_equity
        self._prices: Dict[str, float] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._unreported_fills: List[Dict[str, Any]] = []

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    def set_price(self, pair: str, price: float) -> None:
        self._prices[str(pair).upper()] = float(price)

    async def get_current_price_for_pair(self, pair: str) -> float:
        price = self._prices.get(str(pair).upper())
        if price is None:
            raise LookupError(f"No paper price for {pair}")
        return price

    async def place_order(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        symbol = str(payload.get('pair') or payload.get('symbol') or '').upper()
        volume = as_float(payload.get('volume') or payload.get('units'), 0.0)
        if not symbol or volume <= 0:
            return {'success': False, 'error': 'Invalid paper order'}
        fill_price = self._prices.get(symbol) or as_float(payload.get('price'))
        if fill_price is None:
            return {'success': False, 'error': f'No price for {symbol}'}

        ticket = f"paper-{uuid.uuid4().hex[:8]}"
        position = PaperPosition(
            ticket=ticket,
            trade_id=payload.get('trade_id'),
            symbol=symbol,
            side=str(payload.get('side') or 'buy').lower(),
            volume=volume,
            fill_price=fill_price,
            stop_loss=as_float(payload.get('stop_loss')),
            take_profit=as_float(payload.get('take_profit')),
        )
        self._positions[ticket] = position
        self._unreported_fills.append({
            'broker': self.name,
            'client_id': position.trade_id,
            'ticket': ticket,
            'symbol': symbol,
            'fill_price': fill_price,
            'volume': volume,
        })
        logger.info("Paper fill %s %s %s @ %s", ticket, position.side, symbol, fill_price)
        order = {'id': ticket, 'fill_price': fill_price, 'volume': volume, 'status': 'filled'}
        return {'success': True, 'broker': self.name, 'order': order}

    async def close_position(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        ticket = payload.get('ticket')
        position = self._positions.pop(ticket, None) if ticket else None
        if position is None:
            return {'success': False, 'error': f'Unknown ticket {ticket}'}
        close_price = as_float(payload.get('price'), position.fill_price)
        return {
            'success': True,
            'broker': self.name,
            'result': {'ticket': ticket, 'close_price': close_price},
        }

    async def modify_position(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        position = self._positions.get(payload.get('ticket'))
        if position is None:
            return {'success': False, 'error': f"Unknown ticket {payload.get('ticket')}"}
        position.history.append({'stop_loss': position.stop_loss, 'take_profit': position.take_profit})
        position.stop_loss = as_float(payload.get('stop_loss'), position.stop_loss)
        position.take_profit = as_float(payload.get('take_profit'), position.take_profit)
        return {
            'success': True,
            'broker': self.name,
            'result': {'ticket': position.ticket, 'stop_loss': position.stop_loss},
        }

    async def get_status(self) -> Dict[str, Any]:
        return {
            'success': True,
            'broker': self.name,
            'open_positions': len(self._positions),
            'equity': self._equity,
        }

    async def get_health_snapshots(self) -> List[Dict[str, Any]]:
        return [{'broker': self.name, 'connected': True, 'mode': 'paper'}]

    async def run_reconciliation(self) -> List[Dict[str, Any]]:
        fills, self._unreported_fills = self._unreported_fills, []
        return fills

    def record_pnl(self, pnl: Optional[float]) -> None:
        if pnl is None:
            return
        self._equity += pnl
        logger.info("Paper equity updated to %.2f (PnL: %.2f)", self._equity, pnl)
