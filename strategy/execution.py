import asyncio
import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from api.metrics import metrics
from config.utils import as_bool, as_float
from risk.risk_budget import RiskBudget
from strategy.brokers import BrokerRouter, PriceSource
from strategy.execution_types import (
    BrokerResult,
    EngineHooks,
    ExecutionResult,
    ExecutionState,
    PnL,
    Trade,
    TrailingStopState,
)
from strategy.instruments import get_instrument
from strategy.market_rules import MarketRules
from strategy.signals import Direction, TradingSignal
from strategy.trade_states import (
    SUPERVISION_EXIT_REASONS,
    CloseCheck,
    SupervisionStep,
    build_adjustment_steps,
)


logger = logging.getLogger(__name__)

DEFAULT_PIP_MULTIPLIER = 10000.0
_ID_ALPHABET = string.ascii_lowercase + string.digits
_EPSILON = 1e-10


class ExecutionEngine:
    """Open, supervise and close trades for valid signals.

    All mutable book-keeping lives in ``self.state``. Local state is committed
    before any broker call is awaited and rolled back if the broker refuses,
    so the book is never left half-applied.
    """

    def __init__(
        self,
        settings: Optional[Mapping[str, Any]] = None,
        broker_router: Optional[BrokerRouter] = None,
        price_source: Optional[PriceSource] = None,
        market_rules: Optional[MarketRules] = None,
        risk_budget: Optional[RiskBudget] = None,
        audit_logger=None,
        hooks: Optional[EngineHooks] = None,
        state: Optional[ExecutionState] = None,
        clock=time.time,
    ):
        settings = dict(settings or {})
        self.breakeven_at_fraction = as_float(settings.get('breakeven_at_fraction'), 0.3, minimum=0.0)
        self.trailing_activation_fraction = as_float(
            settings.get('trailing_activation_fraction'), 0.6, minimum=0.0
        )
        self.broker_timeout_s = as_float(settings.get('broker_timeout_s'), 10.0, minimum=0.01)
        self.price_timeout_s = as_float(settings.get('price_timeout_s'), 5.0, minimum=0.01)
        self.reconciliation_interval_s = as_float(settings.get('reconciliation_interval_s'), 60.0, minimum=0.0)
        self.modify_min_interval_s = as_float(settings.get('modify_min_interval_s'), 1.5, minimum=0.0)
        self.max_slippage_pips = as_float(settings.get('max_slippage_pips'))
        self.pip_size_from_instrument = bool(settings.get('pip_size_from_instrument', False))
        self.default_broker = settings.get('default_broker') or None
        self.time_in_force = settings.get('time_in_force') or 'GTC'
        self.smart_supervision_enabled = as_bool(settings.get('smart_supervision_enabled'))
        self.smart_exit_min_profit_pct = as_float(settings.get('smart_exit_min_profit_pct'), 0.35)
        self.smart_exit_news_minutes = as_float(settings.get('smart_exit_news_minutes'), 25.0, minimum=0.0)

        self.broker_router = broker_router
        self.price_source = price_source
        self.market_rules = market_rules
        self.risk_budget = risk_budget or RiskBudget(settings)
        self.audit_logger = audit_logger
        self.hooks = hooks or EngineHooks()
        self.state = state or ExecutionState()
        self.clock = clock

        self._supervision = SupervisionStep(self) if self.smart_supervision_enabled else None
        self._adjustment_steps = build_adjustment_steps(self)
        self._close_check = CloseCheck(self)
        self._closing: set = set()

    # ------------------------------------------------------------------ open

    async def execute_trade(self, signal: TradingSignal) -> ExecutionResult:
        validity = signal.is_valid
        if validity is None or not validity.is_valid:
            reason = validity.reason if validity and validity.reason else 'Signal is not valid'
            return self._blocked(signal, reason, 'invalid_signal')

        now = self.clock()
        if signal.is_expired(now):
            return self._blocked(signal, 'Signal expired', 'signal_expired', expires_at=signal.expires_at)

        if not signal.entry.has_levels() or signal.direction is Direction.NEUTRAL:
            return self._blocked(signal, 'Signal has no executable entry', 'incomplete_entry')

        book = self.state
        trade: Optional[Trade] = None
        committed_risk: Optional[float] = None
        try:
            if self.market_rules is not None:
                check = self.market_rules.validate_order(
                    {'symbol': signal.pair, 'volume': signal.risk_management.position_size}, now
                )
                if not check.allowed:
                    return self._blocked(
                        signal,
                        f"Market rules blocked execution: {', '.join(check.reasons)}",
                        'market_rules',
                        details=check.reasons,
                    )

            trade = self._build_trade(signal, now)
            book.active_trades[trade.id] = trade

            if self.risk_budget.exceeds_symbol_cap(book.active_trades.values(), trade.pair):
                exposure = self.risk_budget.symbol_exposure(book.active_trades.values(), trade.pair)
                del book.active_trades[trade.id]
                return self._blocked(
                    signal, 'Max risk per symbol exceeded', 'max_risk_per_symbol',
                    trade_id=trade.id, total_risk_fraction=round(exposure, 6),
                )

            committed_risk = trade.risk_fraction
            book.daily_risk += committed_risk
            logger.info(
                "Trade %s opened locally: %s %s @ %s (risk %.4f)",
                trade.id, trade.direction.value, trade.pair, trade.entry_price, committed_risk,
            )

            if self.broker_router is not None:
                broker_result = await self._commit_broker_order(trade, signal)
                if not broker_result.success:
                    self._rollback(trade, committed_risk)
                    error = broker_result.error or 'unknown error'
                    self._audit('execution.trade.broker_failed', {
                        'trade_id': trade.id,
                        'pair': trade.pair,
                        'direction': trade.direction.value,
                        'error': error,
                    })
                    metrics.record_trade_rejected('broker_failed')
                    logger.warning("Broker rejected trade %s: %s", trade.id, error)
                    return ExecutionResult(
                        False, reason=f"Broker execution failed: {error}", signal=signal, code='broker_failed'
                    )

            self._call_hook(self.hooks.refresh_risk_snapshot)
            self._audit('execution.trade.accepted', {
                'trade_id': trade.id,
                'pair': trade.pair,
                'direction': trade.direction.value,
                'entry_price': trade.entry_price,
                'risk_fraction': trade.risk_fraction,
                'broker': trade.broker,
                'source': signal.source,
            })
            metrics.record_trade_opened(trade.pair, trade.direction.value)
            self._update_book_metrics()
            return ExecutionResult(True, trade=trade, signal=signal)
        except Exception as exc:
            logger.error("Trade execution error for %s: %s", signal.pair, exc, exc_info=True)
            if trade is not None and committed_risk is not None:
                self._rollback(trade, committed_risk)
            elif trade is not None:
                book.active_trades.pop(trade.id, None)
            self._audit('execution.trade.error', {
                'reason': str(exc) or exc.__class__.__name__,
                'pair': signal.pair,
                'direction': signal.direction.value,
            })
            metrics.record_trade_rejected('error')
            return ExecutionResult(False, reason=str(exc) or exc.__class__.__name__, signal=signal, code='error')

    def generate_trade_id(self) -> str:
        while True:
            suffix = ''.join(secrets.choice(_ID_ALPHABET) for _ in range(9))
            trade_id = f"TRADE_{int(self.clock() * 1000)}_{suffix}"
            if trade_id not in self.state.active_trades:
                return trade_id

    def _build_trade(self, signal: TradingSignal, now: float) -> Trade:
        entry = signal.entry
        plan = entry.trailing_stop
        target_distance = abs(entry.take_profit - entry.price)

        breakeven_at = plan.breakeven_at_fraction
        if breakeven_at is None:
            breakeven_at = self.breakeven_at_fraction
        activation_at = plan.activation_at_fraction
        if activation_at is None:
            activation_at = self.trailing_activation_fraction
        activation_level = plan.activation_level
        if activation_level is None:
            activation_level = target_distance * activation_at
        trailing_distance = plan.trailing_distance
        if trailing_distance is None and plan.enabled:
            # Trail at the initial risk distance when none was planned.
            trailing_distance = abs(entry.price - entry.stop_loss) or None
        step_distance = plan.step_distance
        if step_distance is None and trailing_distance is not None:
            step_distance = trailing_distance * 0.25

        risk = signal.risk_management
        return Trade(
            id=self.generate_trade_id(),
            pair=signal.pair,
            direction=signal.direction,
            entry_price=entry.price,
            stop_loss=entry.stop_loss,
            take_profit=entry.take_profit,
            position_size=risk.position_size,
            risk_fraction=self.risk_budget.risk_of(risk.risk_fraction),
            open_time=now,
            trailing_stop=TrailingStopState(
                enabled=plan.enabled,
                activation_level=activation_level,
                trailing_distance=trailing_distance,
                breakeven_at_fraction=breakeven_at,
                activation_at_fraction=activation_at,
                step_distance=step_distance,
            ),
            stress_tests=dict(risk.stress_tests),
            guardrails=dict(risk.guardrails),
            signal=signal,
        )

    def _rollback(self, trade: Trade, committed_risk: float) -> None:
        if self.state.active_trades.pop(trade.id, None) is not None:
            self.state.daily_risk -= committed_risk
        self._update_book_metrics()

    def _blocked(self, signal: TradingSignal, reason: str, code: str, **details: Any) -> ExecutionResult:
        payload = {
            'reason': code,
            'message': reason,
            'pair': signal.pair,
            'direction': signal.direction.value,
            'source': signal.source,
        }
        payload.update(details)
        self._audit('execution.trade.blocked', payload)
        metrics.record_trade_rejected(code)
        logger.info("Trade blocked for %s: %s", signal.pair, reason)
        return ExecutionResult(False, reason=reason, signal=signal, code=code)

    # ---------------------------------------------------------------- manage

    async def manage_active_trades(self) -> None:
        if self.price_source is None:
            logger.debug("No price source attached; skipping trade management")
        else:
            for trade_id, trade in list(self.state.active_trades.items()):
                try:
                    price = await self._fetch_price(trade)
                    if trade_id not in self.state.active_trades:
                        continue
                    await self._manage_trade(trade, price)
                except asyncio.TimeoutError:
                    logger.error("Price lookup timed out for trade %s (%s)", trade_id, trade.pair)
                    metrics.record_management_error()
                except Exception as exc:
                    logger.error("Error managing trade %s: %s", trade_id, exc)
                    metrics.record_management_error()

        await self._maybe_reconcile()
        self._call_hook(self.hooks.refresh_risk_snapshot)
        self._update_book_metrics()

    async def _fetch_price(self, trade: Trade) -> float:
        price = await asyncio.wait_for(
            self.price_source.get_current_price_for_pair(trade.pair),
            timeout=self.price_timeout_s,
        )
        value = as_float(price)
        if value is None or value <= 0:
            raise ValueError(f"Invalid price {price!r} for {trade.pair}")
        return value

    async def _manage_trade(self, trade: Trade, price: float) -> None:
        trade.current_pnl = self.calculate_pnl(trade, price)

        stop_before = trade.stop_loss
        kinds = []
        if self._supervision is not None:
            verdict = self._supervision.process(trade, price)
            if verdict in SUPERVISION_EXIT_REASONS:
                await self.close_trade(trade.id, price, verdict)
                return
            if verdict:
                kinds.append(verdict)
        adjustments = [step.process(trade, price) for step in self._adjustment_steps]
        kinds.extend(kind for kind in adjustments if kind)
        if kinds and abs(trade.stop_loss - stop_before) > _EPSILON:
            await self.sync_broker_protection(trade, reason=kinds[-1])
            if trade.id not in self.state.active_trades:
                return

        reason = self._close_check.process(trade, price)
        if reason:
            await self.close_trade(trade.id, price, reason)

    def should_move_to_breakeven(self, trade: Trade, current_price: float) -> bool:
        target_distance = abs(trade.take_profit - trade.entry_price)
        if target_distance <= 0:
            return False
        fraction = trade.trailing_stop.breakeven_at_fraction
        return self._favourable_move(trade, current_price) >= target_distance * fraction

    def should_activate_trailing(self, trade: Trade, current_price: float) -> bool:
        activation_level = trade.trailing_stop.activation_level
        if activation_level is None:
            target_distance = abs(trade.take_profit - trade.entry_price)
            activation_level = target_distance * trade.trailing_stop.activation_at_fraction
        return self._favourable_move(trade, current_price) >= activation_level

    def update_trailing_stop(self, trade: Trade, current_price: float) -> bool:
        distance = trade.trailing_stop.trailing_distance
        if distance is None or distance <= 0:
            return False
        if trade.direction is Direction.BUY:
            candidate = current_price - distance
            improvement = candidate - trade.stop_loss
        else:
            candidate = current_price + distance
            improvement = trade.stop_loss - candidate
        if improvement <= 0:
            return False
        step = trade.trailing_stop.step_distance
        if step is not None and improvement + _EPSILON < step:
            return False
        trade.stop_loss = candidate
        self.log_stop_adjustment(trade, 'trailing')
        return True

    def tightens_stop(self, trade: Trade, candidate: float) -> bool:
        if trade.direction is Direction.BUY:
            return candidate > trade.stop_loss
        return candidate < trade.stop_loss

    def should_close_trade(self, trade: Trade, current_price: float) -> bool:
        if trade.direction is Direction.BUY:
            return current_price <= trade.stop_loss or current_price >= trade.take_profit
        return current_price >= trade.stop_loss or current_price <= trade.take_profit

    def close_reason(self, trade: Trade, current_price: float) -> str:
        if trade.direction is Direction.BUY:
            return 'stop_hit' if current_price <= trade.stop_loss else 'target_hit'
        return 'stop_hit' if current_price >= trade.stop_loss else 'target_hit'

    def log_stop_adjustment(self, trade: Trade, kind: str) -> None:
        logger.info("Trade %s %s: stop loss now %.5f", trade.id, kind, trade.stop_loss)
        metrics.record_stop_adjustment(kind)

    def update_market_context(
        self,
        pair: str,
        news: Optional[Mapping[str, Any]] = None,
        data_quality: Optional[Mapping[str, Any]] = None,
        at: Optional[float] = None,
    ) -> None:
        if not pair or (news is None and data_quality is None):
            return
        context = self.state.market_context.setdefault(pair, {})
        if news is not None:
            # nextHighImpactMinutes counts from the moment it was reported.
            context['news'] = dict(news)
            context['news_at'] = self.clock() if at is None else at
        if data_quality is not None:
            context['data_quality'] = dict(data_quality)

    def market_context_for(self, trade: Trade) -> Mapping[str, Any]:
        context = self.state.market_context.get(trade.pair)
        if context:
            return context
        signal = trade.signal
        if signal is None:
            return {}
        return {
            'news': signal.components.get('news') or {},
            'news_at': signal.timestamp,
            'data_quality': signal.market_data,
        }

    def supervision_hazard(self, trade: Trade) -> Optional[str]:
        """Name the condition that calls for protecting ``trade``, if any."""
        context = self.market_context_for(trade)
        news = context.get('news') or {}
        minutes = as_float(news.get('nextHighImpactMinutes', news.get('next_high_impact_minutes')))
        if minutes is not None:
            at = as_float(context.get('news_at'))
            if at is not None:
                minutes -= (self.clock() - at) / 60.0
            if abs(minutes) <= self.smart_exit_news_minutes:
                return 'news_blackout'

        quality = context.get('data_quality') or {}
        blocked = (
            bool(quality.get('circuitBreaker') or quality.get('circuit_breaker'))
            or str(quality.get('recommendation') or '').lower() == 'block'
            or str(quality.get('status') or '').lower() == 'critical'
        )
        if blocked:
            return 'data_quality'
        return None

    @staticmethod
    def _favourable_move(trade: Trade, current_price: float) -> float:
        if trade.direction is Direction.BUY:
            return current_price - trade.entry_price
        return trade.entry_price - current_price

    # ----------------------------------------------------------------- close

    async def close_trade(self, trade_id: str, close_price: float, reason: str) -> Optional[Trade]:
        trade = self.state.active_trades.get(trade_id)
        if trade is None or trade_id in self._closing:
            return None

        self._closing.add(trade_id)
        try:
            if self.broker_router is not None and not trade.manual_close_acknowledged:
                result = await self._close_broker_position(trade, close_price, reason)
                if result.success:
                    trade.broker_close_acknowledged = True
                    trade.broker_close_receipt = result.result or result.order or None
                else:
                    trade.broker_close_error = result.error or 'Broker close failed'
                    logger.warning(
                        "Broker close failed for %s, closing locally: %s",
                        trade_id, trade.broker_close_error,
                    )

            trade.close_price = close_price
            trade.close_time = self.clock()
            trade.status = 'closed'
            trade.close_reason = reason
            trade.final_pnl = self.calculate_pnl(trade, close_price)
            trade.duration = trade.close_time - trade.open_time

            self.state.active_trades.pop(trade_id, None)
            self.state.trading_history.append(trade)
        finally:
            self._closing.discard(trade_id)

        self._call_hook(self.hooks.on_trade_closed, trade)
        logger.info(
            "Trade %s closed (%s) at %s: %s pips",
            trade.id, reason, close_price, trade.final_pnl.formatted()['pips'],
        )
        self._audit('execution.trade.closed', {
            'trade_id': trade.id,
            'pair': trade.pair,
            'direction': trade.direction.value,
            'close_price': close_price,
            'reason': reason,
            'pnl': trade.final_pnl.as_dict(),
            'broker_close_error': trade.broker_close_error,
        })
        metrics.record_trade_closed(reason, trade.final_pnl.pips)
        self._update_book_metrics()
        return trade

    def calculate_pnl(self, trade: Trade, current_price: float) -> PnL:
        if trade.direction is Direction.BUY:
            diff = current_price - trade.entry_price
        else:
            diff = trade.entry_price - current_price
        percentage = diff / trade.entry_price * 100 if trade.entry_price else 0.0
        return PnL(
            pips=round(diff * self.pip_multiplier(trade.pair), 1),
            amount=round(diff * trade.position_size, 2),
            percentage=round(percentage, 2),
        )

    def pip_multiplier(self, pair: str) -> float:
        if not self.pip_size_from_instrument:
            return DEFAULT_PIP_MULTIPLIER
        if self.market_rules is not None:
            pip_size = self.market_rules.get_precision(pair).get('pip_size')
        else:
            instrument = get_instrument(pair)
            pip_size = instrument.pip_size if instrument else None
        if not pip_size:
            return DEFAULT_PIP_MULTIPLIER
        return 1.0 / pip_size

    # ---------------------------------------------------------------- broker

    async def _call_broker(self, operation: str, method: Callable, payload: Dict[str, Any]) -> BrokerResult:
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(method(payload), timeout=self.broker_timeout_s)
            result = BrokerResult.from_response(response)
        except asyncio.TimeoutError:
            result = BrokerResult.failure(f"Broker {operation} timed out after {self.broker_timeout_s}s")
        except Exception as exc:
            result = BrokerResult.failure(str(exc) or exc.__class__.__name__)
        metrics.record_broker_call(operation, time.monotonic() - started, result.success)
        if not result.success:
            logger.error("Broker %s failed: %s", operation, result.error)
        return result

    async def _commit_broker_order(self, trade: Trade, signal: TradingSignal) -> BrokerResult:
        payload = self._build_order_payload(trade, signal)
        started = time.monotonic()
        result = await self._call_broker('place_order', self.broker_router.place_order, payload)
        latency_ms = round((time.monotonic() - started) * 1000, 1)
        if not result.success:
            return result

        trade.broker = result.broker or payload['broker']
        trade.broker_route = payload['broker']
        trade.broker_order = dict(result.order)

        filled = result.fill_price
        requested = payload['price']
        slippage_pips = None
        if filled is not None and requested is not None:
            slippage_pips = round(abs(filled - requested) * self.pip_multiplier(trade.pair), 3)
        exceeded = (
            slippage_pips is not None
            and self.max_slippage_pips is not None
            and slippage_pips > self.max_slippage_pips
        )
        trade.execution = {
            'requested_price': requested,
            'filled_price': filled,
            'slippage_pips': slippage_pips,
            'slippage_exceeded': exceeded,
            'latency_ms': latency_ms,
            'broker': trade.broker,
            'order_id': trade.broker_ticket,
        }
        metrics.record_slippage(slippage_pips, exceeded)
        if exceeded:
            logger.warning(
                "Execution slippage above threshold for %s: %.3f pips (max %.3f)",
                trade.id, slippage_pips, self.max_slippage_pips,
            )
        return result

    def _build_order_payload(self, trade: Trade, signal: TradingSignal) -> Dict[str, Any]:
        symbol = trade.pair
        if self.market_rules is not None:
            symbol = self.market_rules.resolve_broker_symbol(trade.pair) or trade.pair
        return {
            'broker': signal.broker_preference or self.default_broker,
            'pair': trade.pair,
            'symbol': symbol,
            'direction': trade.direction.value,
            'side': 'buy' if trade.direction is Direction.BUY else 'sell',
            'units': trade.position_size,
            'volume': trade.position_size,
            'price': trade.entry_price,
            'stop_loss': trade.stop_loss,
            'take_profit': trade.take_profit,
            'comment': f"trade:{trade.id}",
            'trade_id': trade.id,
            'idempotency_key': trade.id,
            'source': 'execution-engine',
            'time_in_force': self.time_in_force,
        }

    async def _close_broker_position(self, trade: Trade, close_price: float, reason: str) -> BrokerResult:
        broker = trade.broker or trade.broker_route
        if not broker:
            # Never reached the broker, nothing to close remotely.
            return BrokerResult(success=True)
        payload = {
            'broker': broker,
            'symbol': trade.pair,
            'trade_id': trade.id,
            'ticket': trade.broker_ticket,
            'price': close_price,
            'reason': reason,
            'side': trade.direction.value,
            'units': trade.position_size,
            'comment': f"close:{trade.id}",
        }
        return await self._call_broker('close_position', self.broker_router.close_position, payload)

    async def sync_broker_protection(self, trade: Trade, reason: Optional[str] = None) -> Dict[str, Any]:
        if self.broker_router is None:
            return {'success': False, 'skipped': True, 'reason': 'No broker router'}
        broker = trade.broker or trade.broker_route
        if not broker:
            return {'success': False, 'skipped': True, 'reason': 'No broker assigned'}
        ticket = trade.broker_ticket
        if not ticket:
            return {'success': False, 'skipped': True, 'reason': 'No broker ticket on trade'}

        now = self.clock()
        if trade.last_broker_modify_at is not None and now - trade.last_broker_modify_at < self.modify_min_interval_s:
            return {'success': False, 'skipped': True, 'reason': 'Throttled'}
        if (trade.last_broker_stop_loss_sent is not None
                and abs(trade.last_broker_stop_loss_sent - trade.stop_loss) <= _EPSILON):
            return {'success': False, 'skipped': True, 'reason': 'SL unchanged'}

        payload = {
            'broker': broker,
            'ticket': ticket,
            'symbol': trade.pair,
            'stop_loss': trade.stop_loss,
            'take_profit': trade.take_profit,
            'trade_id': trade.id,
            'comment': f"modify:{trade.id}",
            'source': 'execution-engine',
            'reason': reason,
        }
        result = await self._call_broker('modify_position', self.broker_router.modify_position, payload)
        trade.last_broker_modify_at = now

        if result.success:
            trade.last_broker_stop_loss_sent = payload['stop_loss']
            trade.broker_modify_error = None
            self._audit('execution.trade.stop_modified', {
                'trade_id': trade.id,
                'pair': trade.pair,
                'reason': reason,
                'stop_loss': payload['stop_loss'],
            })
            return {'success': True, 'result': result.result}

        trade.broker_modify_error = result.error or 'Broker modify failed'
        self._audit('execution.trade.stop_modify_failed', {
            'trade_id': trade.id,
            'pair': trade.pair,
            'reason': reason,
            'error': trade.broker_modify_error,
        })
        return {'success': False, 'error': trade.broker_modify_error}

    def supports_reconciliation(self) -> bool:
        return self.broker_router is not None and bool(
            getattr(self.broker_router, 'supports_reconciliation', False)
        )

    async def sync_broker_fills(self) -> List[Dict[str, Any]]:
        if not self.supports_reconciliation():
            return []
        fills = await asyncio.wait_for(
            self.broker_router.run_reconciliation(), timeout=self.broker_timeout_s
        )
        fills = [dict(fill) for fill in fills or [] if isinstance(fill, Mapping)]
        matched = 0
        for fill in fills:
            client_id = fill.get('client_id') or fill.get('trade_id')
            trade = self.state.active_trades.get(client_id) if client_id else None
            if trade is None:
                continue
            trade.broker_fill = fill
            trade.fill_price = as_float(fill.get('fill_price', fill.get('price')))
            matched += 1
        if fills:
            self._audit('execution.broker.reconciled', {'fills': len(fills), 'matched': matched})
        logger.debug("Broker reconciliation: %s fills, %s matched", len(fills), matched)
        return fills

    async def _maybe_reconcile(self) -> None:
        if not self.supports_reconciliation():
            return
        now = self.clock()
        last = self.state.last_broker_sync_attempt
        if last is not None and now - last < self.reconciliation_interval_s:
            return
        # Stamped before the call so a failing bridge is retried once per interval.
        self.state.last_broker_sync_attempt = now
        try:
            await self.sync_broker_fills()
            self.state.last_broker_sync = now
        except asyncio.TimeoutError:
            logger.error("Broker reconciliation timed out after %ss", self.broker_timeout_s)
        except Exception as exc:
            logger.error("Broker reconciliation sync failed: %s", exc)

    # ----------------------------------------------------------------- misc

    def reset_daily_risk(self) -> float:
        previous = self.state.daily_risk
        self.state.daily_risk = 0.0
        logger.info("Daily risk reset (was %.4f)", previous)
        self._audit('execution.daily_risk.reset', {'previous': previous})
        self._call_hook(self.hooks.refresh_risk_snapshot)
        self._update_book_metrics()
        return previous

    def get_snapshot(self) -> Dict[str, Any]:
        active = list(self.state.active_trades.values())
        return {
            'active_trades': [trade.as_dict() for trade in active],
            'history_count': len(self.state.trading_history),
            'daily_risk': self.state.daily_risk,
            'last_broker_sync': self.state.last_broker_sync,
            'risk': self.risk_budget.snapshot(active, self.state.daily_risk),
        }

    def _update_book_metrics(self) -> None:
        metrics.update_book(len(self.state.active_trades), self.state.daily_risk)

    def _audit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.record(event, payload)
        except Exception as exc:
            logger.warning("Audit record %s failed: %s", event, exc)

    @staticmethod
    def _call_hook(hook, *args: Any) -> None:
        try:
            hook(*args)
        except Exception as exc:
            logger.error("Execution hook %s failed: %s", getattr(hook, '__name__', hook), exc)
