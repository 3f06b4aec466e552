from datetime import datetime, timezone

from utils.helpers import (
    to_decimal_string, to_decimal, floor_to_decimals, extract_base_asset, is_finite_number,
    timestamp_to_datetime, datetime_to_timestamp, ensure_utc, classify_exchange_error,
    StrategyExecutionError, NetworkError, ErrorKind, TradingBotError,
)


def test_decimal_string_round_trip_within_precision():
    """Каноническая строка читается обратно с точностью 1e-8"""
    for value in (0.1, 1e-7, 123.456789012, 101.5, -3.25, 1e10, 0.00000001, 42):
        text = to_decimal_string(value)
        assert 'e' not in text.lower()
        if '.' in text:
            assert not text.endswith('0')
            assert not text.endswith('.')
        assert abs(float(text) - value) <= 1e-8


def test_decimal_string_examples():
    assert to_decimal_string(1e-7) == '0.0000001'
    assert to_decimal_string(101.50000000) == '101.5'
    assert to_decimal_string(100) == '100'
    assert to_decimal_string(-0.0) == '0'


def test_decimal_string_rejects_non_finite():
    assert to_decimal_string(float('nan')) == '0'
    assert to_decimal_string(float('inf'), default=None) is None
    assert to_decimal_string("abc", default=None) is None
    assert to_decimal(None, default=None) is None


def test_is_finite_number():
    assert is_finite_number(1.5)
    assert is_finite_number("2.5")
    assert not is_finite_number(True)
    assert not is_finite_number(float('nan'))
    assert not is_finite_number(None)


def test_floor_to_decimals_never_rounds_up():
    assert floor_to_decimals(0.123456789) == 0.12345678
    assert floor_to_decimals(1.999999999) == 1.99999999


def test_extract_base_asset():
    assert extract_base_asset("BTCUSDT") == "BTC"
    assert extract_base_asset("eth/usdt") == "ETH"
    assert extract_base_asset("BTCEUR") == "BTCEUR"


def test_timestamp_conversions_are_utc():
    dt = timestamp_to_datetime(1_704_067_200_000)
    assert dt == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert datetime_to_timestamp(dt) == 1_704_067_200_000
    assert ensure_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc


def test_strategy_execution_error_keeps_cause():
    cause = RuntimeError("boom")
    error = StrategyExecutionError("s-1", "tick failed", cause=cause)

    assert error.kind == ErrorKind.STRATEGY_EXECUTION
    assert error.__cause__ is cause
    assert error.to_dict() == {
        'kind': 'strategy_execution',
        'message': 'tick failed',
        'cause': 'boom',
        'context': {'strategy_id': 's-1'},
    }


def test_classify_exchange_error():
    assert isinstance(classify_exchange_error(ConnectionError("reset")), NetworkError)
    original = TradingBotError("already classified")
    assert classify_exchange_error(original) is original
