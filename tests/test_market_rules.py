import sys
from datetime import datetime, timezone

sys.path.insert(0, '.')

from strategy.instruments import classify_asset_class, get_instrument
from strategy.market_rules import MarketRules, to_minutes, within_window_utc


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc).timestamp()


SATURDAY_NOON = utc(2024, 1, 6, 12, 0)
SUNDAY_EVENING = utc(2024, 1, 7, 20, 0)
SUNDAY_LATE = utc(2024, 1, 7, 21, 30)
FRIDAY_LATE = utc(2024, 1, 12, 21, 30)
TUESDAY_TEN = utc(2024, 1, 9, 10, 0)


def test_forex_weekend_closure():
    rules = MarketRules()
    assert rules.is_market_open('EURUSD', SATURDAY_NOON) is False
    assert rules.is_market_open('EURUSD', SUNDAY_EVENING) is False
    assert rules.is_market_open('EURUSD', SUNDAY_LATE) is True
    assert rules.is_market_open('EURUSD', FRIDAY_LATE) is False
    assert rules.is_market_open('EURUSD', TUESDAY_TEN) is True


def test_crypto_never_closes():
    rules = MarketRules()
    assert rules.is_market_open('BTCUSD', SATURDAY_NOON) is True
    assert rules.validate_order({'symbol': 'BTCUSD'}, SATURDAY_NOON).allowed is True


def test_rollover_window_wraps_midnight():
    rules = MarketRules({'rollover_start_utc': '23:50', 'rollover_end_utc': '00:10'})
    assert rules.is_rollover_window(utc(2024, 1, 9, 23, 55)) is True
    assert rules.is_rollover_window(utc(2024, 1, 10, 0, 5)) is True
    assert rules.is_rollover_window(utc(2024, 1, 10, 0, 30)) is False

    default = MarketRules()
    assert default.is_rollover_window(utc(2024, 1, 9, 22, 0)) is True
    assert default.is_rollover_window(utc(2024, 1, 9, 22, 15)) is False


def test_validate_order_reports_first_failing_rule():
    rules = MarketRules({'broker_meta': {'symbol_allowlist': ['EURUSD', 'GBPUSD']}})
    assert rules.validate_order({}).reasons == ['symbol_required']
    assert rules.validate_order({'symbol': 'USDJPY'}, TUESDAY_TEN).reasons == ['symbol_not_allowed']
    assert rules.validate_order({'symbol': 'EURUSD'}, SATURDAY_NOON).reasons == ['market_closed']
    assert rules.validate_order({'pair': 'EURUSD'}, utc(2024, 1, 9, 22, 0)).reasons == ['rollover_window']
    check = rules.validate_order({'symbol': 'eurusd'}, TUESDAY_TEN)
    assert check.allowed is True
    assert check.reasons == []


def test_blocks_can_be_disabled():
    rules = MarketRules({'block_closed': False, 'block_rollover': False})
    assert rules.validate_order({'symbol': 'EURUSD'}, SATURDAY_NOON).allowed is True
    assert rules.validate_order({'symbol': 'EURUSD'}, utc(2024, 1, 9, 22, 0)).allowed is True


def test_symbol_map_and_suffix():
    rules = MarketRules({'broker_meta': {
        'symbol_map': {'GOLD': 'XAUUSD', 'EUR/USD': 'EURUSD'},
        'symbol_suffix': '.m',
        'symbol_allowlist': ['XAUUSD.m', 'EURUSD.m'],
    }})
    assert rules.normalize_symbol('gold') == 'XAUUSD'
    assert rules.normalize_symbol('EURUSD.M') == 'EURUSD'
    assert rules.normalize_symbol('eur/usd') == 'EURUSD'
    assert rules.resolve_broker_symbol('EURUSD') == 'EURUSD.M'
    assert rules.is_symbol_allowed('GOLD') is True
    assert rules.is_symbol_allowed('GBPUSD') is False
    assert rules.normalize_symbol('  ') is None


def test_precision_uses_catalog_then_heuristics():
    rules = MarketRules()
    assert rules.get_precision('USDJPY')['pip_size'] == 0.01
    assert rules.get_precision('EURUSD')['pip_size'] == 0.0001
    unknown = rules.get_precision('ZARJPY')
    assert unknown['pip_size'] == 0.01
    assert unknown['contract_size'] == 100000.0


def test_time_helpers():
    assert to_minutes('21:55') == 21 * 60 + 55
    assert to_minutes('25:99') == 24 * 60 - 1
    assert to_minutes('noon') is None
    assert to_minutes(None) is None
    assert within_window_utc(TUESDAY_TEN, '09:00', '11:00') is True
    assert within_window_utc(TUESDAY_TEN, 'bad', '11:00') is False


def test_instrument_catalog():
    assert classify_asset_class('XAUUSD') == 'metals'
    assert classify_asset_class('BTCUSD') == 'crypto'
    assert classify_asset_class('EURUSD') == 'forex'
    assert get_instrument('eurusd').pip_size == 0.0001
    assert get_instrument(None) is None
