import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from api.alerts import AlertBus, AlertEvent, broker_failure_event
from api.metrics import metrics
from orchestration.job_queue import Job, JobQueue
from risk.risk_budget import RiskBudget
from strategy.execution import ExecutionEngine
from strategy.execution_types import EngineHooks, ExecutionResult, Trade
from strategy.signal_validity import DecisionContext, SignalValidityEngine
from strategy.signals import TradingSignal


logger = logging.getLogger(__name__)

JOB_BROKER_RECONCILE = 'broker.reconcile'
JOB_ALERT_PUBLISH = 'alert.publish'
JOB_DAILY_RESET = 'risk.daily_reset'


def next_utc_midnight(now: float) -> float:
    moment = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc) + timedelta(days=1)
    return midnight.timestamp()


class ExecutionSupervisor:
    """Glue between incoming signals, the execution engine and side-effect jobs."""

    def __init__(
        self,
        engine: ExecutionEngine,
        validity_engine: SignalValidityEngine,
        job_queue: JobQueue,
        alert_bus: AlertBus,
        risk_budget: Optional[RiskBudget] = None,
        tick_interval_s: float = 5.0,
        pnl_sink: Optional[Callable[[float], None]] = None,
        clock=time.time,
    ):
        self.engine = engine
        self.validity_engine = validity_engine
        self.job_queue = job_queue
        self.alert_bus = alert_bus
        self.risk_budget = risk_budget or engine.risk_budget
        self.tick_interval_s = max(0.1, float(tick_interval_s))
        self.pnl_sink = pnl_sink
        self.clock = clock

        self.running = False
        self.risk_snapshot: Dict[str, Any] = {}
        self._tick_task: Optional[asyncio.Task] = None

        engine.hooks = EngineHooks(
            on_trade_closed=self.handle_trade_closed,
            refresh_risk_snapshot=self.refresh_risk_snapshot,
        )
        job_queue.on_dead_letter = self.handle_dead_letter
        self.register_job_handlers()

    def register_job_handlers(self) -> None:
        self.job_queue.register_handler(JOB_BROKER_RECONCILE, self._handle_reconcile)
        self.job_queue.register_handler(JOB_ALERT_PUBLISH, self._handle_alert)
        self.job_queue.register_handler(JOB_DAILY_RESET, self._handle_daily_reset)

    # --------------------------------------------------------------- signals

    async def handle_signal(self, payload: Union[TradingSignal, Mapping[str, Any]]) -> ExecutionResult:
        signal = payload if isinstance(payload, TradingSignal) else TradingSignal.from_dict(payload)
        if not signal.pair:
            return ExecutionResult(False, reason='Signal is missing a pair', signal=signal, code='missing_pair')

        self.engine.update_market_context(
            signal.pair,
            news=signal.components.get('news'),
            data_quality=signal.market_data or None,
            at=signal.timestamp,
        )

        # A producer's isValid verdict stands; only unscored signals are evaluated here.
        if signal.is_valid is None:
            context = DecisionContext(
                active_trades=len(self.engine.state.active_trades),
                max_concurrent_trades=self.risk_budget.max_concurrent_trades,
                now=self.clock(),
            )
            validity = self.validity_engine.evaluate(signal, context)
            signal = dataclasses.replace(signal, is_valid=validity)
            metrics.record_decision(validity.decision.state.value)
            logger.info("Signal %s %s: %s", signal.pair, signal.direction.value, validity.reason)

        if signal.is_valid.is_valid:
            allowed, budget_reason = self.risk_budget.can_open(
                len(self.engine.state.active_trades),
                self.engine.state.daily_risk,
                signal.risk_management.risk_fraction,
            )
            if not allowed:
                logger.warning("Risk budget blocks %s: %s", signal.pair, budget_reason)
                metrics.record_trade_rejected(budget_reason)
                return ExecutionResult(
                    False, reason=f"Risk budget exhausted: {budget_reason}", signal=signal, code='risk_budget'
                )

        result = await self.engine.execute_trade(signal)
        if result.code == 'broker_failed':
            self._queue_broker_failure(signal.pair, result.reason, 'place_order')
        return result

    def _queue_broker_failure(self, pair: str, error: str, operation: str) -> None:
        event = broker_failure_event(pair, error, operation)
        self.job_queue.enqueue(JOB_ALERT_PUBLISH, {**event.as_dict(), 'dedupe_key': event.dedupe_key})
        self.job_queue.enqueue(JOB_BROKER_RECONCILE, {'reason': f'{operation}_failed', 'pair': pair})

    # ---------------------------------------------------------------- hooks

    def handle_trade_closed(self, trade: Trade) -> None:
        if self.pnl_sink is not None and trade.final_pnl is not None:
            self.pnl_sink(trade.final_pnl.amount)
        if trade.broker_close_error:
            self._queue_broker_failure(trade.pair, trade.broker_close_error, 'close_position')

    def refresh_risk_snapshot(self) -> None:
        state = self.engine.state
        self.risk_snapshot = self.risk_budget.snapshot(state.active_trades.values(), state.daily_risk)

    async def handle_dead_letter(self, job: Job) -> None:
        await self.alert_bus.dead_letter_alert(job.id, job.type, job.last_error)

    async def engage_kill_switch(self, reason: str) -> None:
        self.validity_engine.kill_switch.engage(reason)
        metrics.record_kill_switch(reason)
        await self.alert_bus.kill_switch_alert(reason)

    def release_kill_switch(self) -> None:
        self.validity_engine.kill_switch.release()

    # ----------------------------------------------------------------- jobs

    async def _handle_reconcile(self, payload: Dict[str, Any], job: Job) -> Dict[str, Any]:
        state = self.engine.state
        state.last_broker_sync_attempt = self.clock()
        fills = await self.engine.sync_broker_fills()
        state.last_broker_sync = state.last_broker_sync_attempt
        return {'fills': len(fills), 'reason': payload.get('reason')}

    async def _handle_alert(self, payload: Dict[str, Any], job: Job) -> Dict[str, Any]:
        delivered = await self.alert_bus.publish(AlertEvent.from_dict(payload))
        return {'delivered': delivered}

    async def _handle_daily_reset(self, payload: Dict[str, Any], job: Job) -> Dict[str, Any]:
        previous = self.engine.reset_daily_risk()
        self.schedule_daily_reset()
        return {'previous_daily_risk': previous}

    def schedule_daily_reset(self) -> Optional[Job]:
        run_at = next_utc_midnight(self.clock())
        day = datetime.fromtimestamp(run_at, tz=timezone.utc).strftime('%Y%m%d')
        return self.job_queue.enqueue(JOB_DAILY_RESET, {}, run_at=run_at, job_id=f'{JOB_DAILY_RESET}:{day}')

    # ----------------------------------------------------------------- loop

    async def start(self) -> None:
        if self._tick_task is not None:
            return
        self.running = True
        self.job_queue.start()
        self.schedule_daily_reset()
        self._tick_task = asyncio.create_task(self._run_ticks())

    @property
    def background_tasks(self) -> List[asyncio.Task]:
        return [self._tick_task] if self._tick_task is not None else []

    async def stop(self) -> None:
        self.running = False
        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        await self.job_queue.stop()

    async def _run_ticks(self) -> None:
        while self.running:
            try:
                await self.engine.manage_active_trades()
            except Exception as exc:
                logger.error("Trade management tick failed: %s", exc)
            try:
                await asyncio.sleep(self.tick_interval_s)
            except asyncio.CancelledError:
                break

    def get_status(self) -> Dict[str, Any]:
        return {
            'engine': self.engine.get_snapshot(),
            'jobs': self.job_queue.get_stats(),
            'kill_switch': self.validity_engine.kill_switch.snapshot(),
            'rejections': self.validity_engine.get_rejection_summary(),
            'risk': self.risk_snapshot,
            'alert_channels': self.alert_bus.available_channels(),
        }
