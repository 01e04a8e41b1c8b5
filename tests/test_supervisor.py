import asyncio
import sys
import time
from datetime import datetime, timezone

sys.path.insert(0, '.')

import pytest

from api.alerts import AlertBus
from main import TradingRuntime
from orchestration.job_queue import JobQueue, JobStatus
from orchestration.services import (
    JOB_ALERT_PUBLISH,
    JOB_BROKER_RECONCILE,
    JOB_DAILY_RESET,
    ExecutionSupervisor,
    next_utc_midnight,
)
from risk.risk_budget import RiskBudget
from strategy.brokers import BrokerRouter
from strategy.execution import ExecutionEngine
from strategy.signal_validity import SignalValidityEngine
from strategy.simulators.paper import PaperBrokerRouter


TUESDAY_TEN = datetime(2024, 1, 9, 10, 0, tzinfo=timezone.utc).timestamp()


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


class RefusingBroker(BrokerRouter):
    async def place_order(self, payload):
        return {'success': False, 'error': 'no liquidity'}

    async def close_position(self, payload):
        return {'success': True}

    async def modify_position(self, payload):
        return {'success': True}


def raw_signal(**overrides):
    data = {
        'pair': 'EURUSD',
        'direction': 'BUY',
        'strength': 95,
        'confidence': 95,
        'estimatedWinRate': 90,
        'entry': {'price': 1.1000, 'stopLoss': 1.0950, 'takeProfit': 1.1125, 'riskReward': 2.5},
        'riskManagement': {'positionSize': 10000, 'riskFraction': 0.02},
    }
    data.update(overrides)
    return data


def build_supervisor(broker=None, risk=None, clock=lambda: TUESDAY_TEN):
    budget = RiskBudget(risk or {})
    engine = ExecutionEngine(broker_router=broker, risk_budget=budget, clock=clock)
    alerts = Recorder()
    supervisor = ExecutionSupervisor(
        engine,
        SignalValidityEngine(clock=clock),
        JobQueue(retry_base_s=0.05, clock=clock),
        AlertBus(transport_overrides={'ops': alerts}),
        risk_budget=budget,
        clock=clock,
    )
    return supervisor, alerts


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.01)


def test_undecided_signal_is_evaluated_then_executed():
    async def _run():
        supervisor, _ = build_supervisor()
        result = await supervisor.handle_signal(raw_signal())
        assert result.success is True
        assert result.signal.is_valid.decision.state.value == 'ENTER'
        assert supervisor.engine.state.daily_risk == pytest.approx(0.02)
        assert supervisor.risk_snapshot['exposure_by_pair'] == {'EURUSD': 0.02}

    asyncio.run(_run())


def test_producer_rejection_is_not_overridden():
    async def _run():
        supervisor, _ = build_supervisor()
        result = await supervisor.handle_signal(raw_signal(isValid={'isValid': False, 'reason': 'upstream veto'}))
        assert result.success is False
        assert result.reason == 'upstream veto'
        assert result.code == 'invalid_signal'
        assert supervisor.engine.state.active_trades == {}
        assert supervisor.engine.state.daily_risk == 0.0

    asyncio.run(_run())


def test_producer_approval_is_executed_without_rescoring():
    async def _run():
        supervisor, _ = build_supervisor()
        result = await supervisor.handle_signal({
            'pair': 'EURUSD',
            'direction': 'BUY',
            'isValid': {'isValid': True},
            'entry': {'price': 1.1000, 'stopLoss': 1.0950, 'takeProfit': 1.1100},
            'riskManagement': {'positionSize': 10000, 'riskFraction': 0.02},
        })
        assert result.success is True
        assert result.signal.is_valid.decision is None
        assert supervisor.engine.state.daily_risk == pytest.approx(0.02)

    asyncio.run(_run())


def test_signal_telemetry_feeds_trade_supervision():
    async def _run():
        supervisor, _ = build_supervisor()
        await supervisor.handle_signal(raw_signal(
            timestamp=TUESDAY_TEN,
            components={'news': {'nextHighImpactMinutes': 15}},
            marketData={'recommendation': 'block'},
        ))
        context = supervisor.engine.state.market_context['EURUSD']
        assert context['news'] == {'nextHighImpactMinutes': 15}
        assert context['news_at'] == TUESDAY_TEN
        assert context['data_quality'] == {'recommendation': 'block'}

    asyncio.run(_run())


def test_kill_switch_blocks_and_alerts():
    async def _run():
        supervisor, alerts = build_supervisor()
        await supervisor.engage_kill_switch('drawdown limit')
        result = await supervisor.handle_signal(raw_signal())
        assert result.success is False
        assert result.reason.startswith('NO-TRADE (kill-switch)')
        assert supervisor.engine.state.active_trades == {}
        assert alerts.events[0].topic == 'kill_switch'
        assert alerts.events[0].severity == 'critical'

        supervisor.release_kill_switch()
        assert supervisor.get_status()['kill_switch']['engaged'] is False

    asyncio.run(_run())


def test_risk_budget_caps_daily_risk():
    async def _run():
        supervisor, _ = build_supervisor(risk={'max_daily_risk': 0.03})
        assert (await supervisor.handle_signal(raw_signal())).success is True
        second = await supervisor.handle_signal(raw_signal(pair='GBPUSD'))
        assert second.success is False
        assert second.reason == 'Risk budget exhausted: max_daily_risk'
        assert len(supervisor.engine.state.active_trades) == 1

    asyncio.run(_run())


def test_risk_budget_caps_concurrency():
    async def _run():
        supervisor, _ = build_supervisor(risk={'max_concurrent_trades': 1})
        decided = raw_signal(isValid={'isValid': True, 'decision': {'state': 'ENTER'}})
        assert (await supervisor.handle_signal(decided)).success is True
        second = await supervisor.handle_signal(dict(decided, pair='GBPUSD'))
        assert second.reason == 'Risk budget exhausted: max_concurrent_trades'

    asyncio.run(_run())


def test_broker_failure_queues_alert_and_reconcile():
    async def _run():
        supervisor, _ = build_supervisor(broker=RefusingBroker())
        result = await supervisor.handle_signal(raw_signal())
        assert result.reason == 'Broker execution failed: no liquidity'
        jobs = supervisor.job_queue.pending_jobs()
        assert [job.type for job in jobs] == [JOB_ALERT_PUBLISH, JOB_BROKER_RECONCILE]
        assert jobs[0].payload['dedupe_key'] == 'broker_failure|place_order|EURUSD'

    asyncio.run(_run())


def test_alert_job_publishes_through_bus():
    async def _run():
        supervisor, alerts = build_supervisor(broker=RefusingBroker())
        await supervisor.handle_signal(raw_signal())
        supervisor.job_queue.start()
        await supervisor.job_queue.join(timeout=5)
        await supervisor.job_queue.stop()
        assert [event.topic for event in alerts.events] == ['broker_failure']

    asyncio.run(_run())


def test_daily_reset_job_clears_risk_and_reschedules():
    async def _run():
        supervisor, _ = build_supervisor()
        supervisor.engine.state.daily_risk = 0.04
        queue = supervisor.job_queue
        queue.start()
        job = queue.enqueue(JOB_DAILY_RESET, {})
        await wait_until(lambda: job.status is JobStatus.COMPLETED)
        await queue.stop()

        assert supervisor.engine.state.daily_risk == 0.0
        assert job.result == {'previous_daily_risk': 0.04}
        upcoming = queue.pending_jobs()
        assert [j.type for j in upcoming] == [JOB_DAILY_RESET]
        assert upcoming[0].run_at == next_utc_midnight(TUESDAY_TEN)
        assert upcoming[0].id == 'risk.daily_reset:20240110'

    asyncio.run(_run())


def test_dead_letter_raises_alert():
    async def _run():
        supervisor, alerts = build_supervisor()
        supervisor.job_queue.start()
        supervisor.job_queue.enqueue('unregistered', {})
        await wait_until(lambda: alerts.events)
        await supervisor.job_queue.stop()
        assert alerts.events[0].topic == 'job_dead_letter'

    asyncio.run(_run())


def test_next_utc_midnight():
    assert next_utc_midnight(TUESDAY_TEN) == datetime(2024, 1, 10, tzinfo=timezone.utc).timestamp()


def test_runtime_trades_against_paper_book(tmp_path):
    async def _run():
        settings = {
            'execution': {'tick_interval_s': 1},
            'market_rules': {'block_closed': False, 'block_rollover': False},
            'risk': {'max_daily_risk': 0.1},
            'jobs': {},
            'alerts': {},
            'monitoring': {'audit_log': str(tmp_path / 'audit.jsonl')},
        }
        runtime = TradingRuntime(settings)
        assert isinstance(runtime.paper_broker, PaperBrokerRouter)
        runtime.paper_broker.set_price('EURUSD', 1.1000)

        decided = raw_signal(isValid={'isValid': True, 'decision': {'state': 'ENTER'}})
        result = await runtime.handle_signal(decided)
        assert result.success is True
        trade = result.trade
        assert trade.broker == 'paper'
        assert trade.broker_ticket.startswith('paper-')

        fills = await runtime.engine.sync_broker_fills()
        assert [fill['client_id'] for fill in fills] == [trade.id]
        assert trade.fill_price == 1.1000

        runtime.paper_broker.set_price('EURUSD', 1.1125)
        await runtime.engine.manage_active_trades()

        assert trade.status == 'closed'
        assert trade.close_reason == 'target_hit'
        assert trade.broker_close_acknowledged is True
        assert len(runtime.paper_broker.positions) == 0
        assert runtime.paper_broker.equity == pytest.approx(10000 + trade.final_pnl.amount)

        lines = (tmp_path / 'audit.jsonl').read_text().splitlines()
        assert any('execution.trade.closed' in line for line in lines)

    asyncio.run(_run())
