import sys
from datetime import datetime, timezone

sys.path.insert(0, '.')

from monitoring.audit import AuditLogger
from strategy.signal_validity import (
    DecisionContext,
    KillSwitch,
    SignalValidityEngine,
    build_profile,
    estimate_win_rate,
    session_modifier,
    smooth01,
)
from strategy.signals import DecisionState, TradingSignal


TUESDAY_TEN = datetime(2024, 1, 9, 10, 0, tzinfo=timezone.utc).timestamp()
TUESDAY_THIRTEEN = datetime(2024, 1, 9, 13, 0, tzinfo=timezone.utc).timestamp()


def strong_signal(**overrides):
    data = {
        'pair': 'EURUSD',
        'direction': 'BUY',
        'strength': 95,
        'confidence': 95,
        'estimatedWinRate': 90,
        'entry': {'price': 1.1000, 'stopLoss': 1.0950, 'takeProfit': 1.1125, 'riskReward': 2.5},
        'riskManagement': {'positionSize': 10000, 'riskFraction': 0.01},
    }
    data.update(overrides)
    return TradingSignal.from_dict(data)


def context(**overrides):
    values = {'now': TUESDAY_TEN}
    values.update(overrides)
    return DecisionContext(**values)


def test_strong_signal_enters():
    engine = SignalValidityEngine()
    validity = engine.evaluate(strong_signal(), context())
    assert validity.is_valid is True
    assert validity.decision.state is DecisionState.ENTER
    assert validity.decision.category == 'enter'
    assert validity.decision.blockers == []
    assert validity.reason.startswith('ENTER: score=')
    assert all(validity.checks.values())


def test_neutral_direction_waits_for_confirmation():
    engine = SignalValidityEngine()
    validity = engine.evaluate(strong_signal(direction='NEUTRAL'), context())
    assert validity.is_valid is False
    assert validity.decision.state is DecisionState.WAIT_MONITOR
    assert 'direction_confirmation' in validity.decision.missing
    assert validity.reason.startswith('WAIT:')


def test_weak_signal_waits_and_lists_missing():
    engine = SignalValidityEngine()
    validity = engine.evaluate(strong_signal(strength=50, confidence=50, estimatedWinRate=50), context())
    assert validity.decision.state is DecisionState.WAIT_MONITOR
    assert 'strength' in validity.decision.missing
    assert 'probability' in validity.decision.missing
    assert validity.decision.what_would_change


def test_kill_switch_blocks_everything():
    kill_switch = KillSwitch()
    kill_switch.engage('manual halt')
    engine = SignalValidityEngine(kill_switch=kill_switch)

    validity = engine.evaluate(strong_signal(), context())

    assert validity.is_valid is False
    assert validity.decision.state is DecisionState.NO_TRADE_BLOCKED
    assert validity.decision.category == 'killswitch'
    assert validity.checks['smart_kill_switch_ok'] is False
    assert validity.reason.startswith('NO-TRADE (kill-switch)')
    assert 'operator_kill_switch' in validity.decision.kill_switch['ids']

    kill_switch.release()
    assert engine.evaluate(strong_signal(), context(now=TUESDAY_TEN + 60)).is_valid is True


def test_failed_confluence_kill_layer_blocks():
    engine = SignalValidityEngine()
    signal = strong_signal(components={'confluence': {'layers': [
        {'id': 'smart_news_guard', 'status': 'FAIL'},
        {'id': 'some_other_layer', 'status': 'FAIL'},
    ]}})
    validity = engine.evaluate(signal, context())
    assert validity.decision.category == 'killswitch'
    assert validity.decision.kill_switch['ids'] == ['smart_news_guard']


def test_hard_checks_block_entry():
    engine = SignalValidityEngine()

    wide = engine.evaluate(strong_signal(marketData={'spreadPips': 5}), context())
    assert wide.decision.state is DecisionState.NO_TRADE_BLOCKED
    assert wide.decision.category == 'blocked'
    assert 'spread_ok' in wide.decision.blockers

    news = engine.evaluate(strong_signal(components={'news': {'nextHighImpactMinutes': 10}}), context())
    assert 'no_high_impact_news_soon' in news.decision.blockers

    full = engine.evaluate(strong_signal(), context(active_trades=5, max_concurrent_trades=5))
    assert 'within_risk_limit' in full.decision.blockers

    refused = engine.evaluate(
        strong_signal(riskManagement={'positionSize': 10000, 'canTrade': False}), context()
    )
    assert 'within_risk_limit' in refused.decision.blockers

    stale = engine.evaluate(strong_signal(marketData={'stale': True}), context())
    assert 'market_data_fresh' in stale.decision.blockers


def test_trading_window_only_when_enforced():
    engine = SignalValidityEngine({'enforce_trading_windows': True})
    assert engine.evaluate(strong_signal(), context()).checks['within_trading_window'] is True
    outside = engine.evaluate(strong_signal(), context(now=TUESDAY_THIRTEEN))
    assert outside.checks['within_trading_window'] is False
    assert outside.decision.state is DecisionState.NO_TRADE_BLOCKED

    crypto = engine.evaluate(strong_signal(pair='BTCUSD'), context(now=TUESDAY_THIRTEEN))
    assert crypto.checks['within_trading_window'] is True


def test_configured_trading_windows_skip_malformed_entries():
    engine = SignalValidityEngine({
        'enforce_trading_windows': True,
        'trading_windows_london': [{'start': 'noon', 'end': '13:30'}, ['12:30', '13:30']],
    })
    inside = engine.evaluate(strong_signal(), context(now=TUESDAY_THIRTEEN))
    assert inside.checks['within_trading_window'] is True
    assert engine.evaluate(strong_signal(), context()).checks['within_trading_window'] is False


def test_rejection_summary_and_audit(tmp_path):
    audit = AuditLogger(tmp_path / 'audit.jsonl')
    engine = SignalValidityEngine(audit_logger=audit)
    engine.evaluate(strong_signal(marketData={'spreadPips': 5}), context())
    engine.evaluate(strong_signal(pair='GBPUSD', marketData={'spreadPips': 6}), context())
    engine.evaluate(strong_signal(pair='AUDUSD'), context())

    summary = engine.get_rejection_summary()
    assert summary['total'] == 2
    assert summary['top_primary'][0] == {'reason': 'spread_ok', 'count': 2}
    assert summary['recent'][0]['pair'] == 'GBPUSD'
    assert len(audit.recent('trade.candidate.rejected')) == 2


def test_profiles_and_modifiers():
    assert build_profile('forex').enter_score == 72.0
    assert build_profile('crypto').enter_score == 78.0
    assert build_profile('forex', 'aggressive').enter_score == 25.0
    assert build_profile('forex', min_risk_reward=2.0).min_risk_reward == 2.0

    assert smooth01(-1) == 0.0
    assert smooth01(2) == 1.0
    assert smooth01(0.5) == 0.5

    asia = datetime(2024, 1, 9, 3, 0, tzinfo=timezone.utc).timestamp()
    late = datetime(2024, 1, 9, 22, 0, tzinfo=timezone.utc).timestamp()
    assert session_modifier('forex', TUESDAY_TEN) == 1.0
    assert session_modifier('forex', asia) == 0.95
    assert session_modifier('forex', late) == 0.9
    assert session_modifier('crypto', late) == 0.96

    assert estimate_win_rate(strong_signal(direction='NEUTRAL')) == 50.0
    assert 35.0 <= estimate_win_rate(strong_signal()) <= 90.0
