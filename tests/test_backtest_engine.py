from datetime import datetime, timedelta, timezone

import pytest

from services.backtest_engine import (
    BacktestConfig, BacktestEngine, BacktestError, HistoricalDataProvider,
    to_utc_datetime, validate_date_range,
)
from strategies import StrategyContext, StrategyRegistry

from tests.fakes import START, make_klines


NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def rising_market(market):
    # 2024-01-01 00:00 .. 2024-01-10 00:00 включительно, +0.5 за час
    market.klines["BTCUSDT"] = make_klines([100 + 0.5 * i for i in range(217)])
    return market


@pytest.fixture
def engine(exchange, rising_market, db, settings):
    provider = HistoricalDataProvider(exchange, db, batch_size=50, request_delay=0)
    return BacktestEngine(exchange, db, settings, data_provider=provider)


def test_date_range_validation_messages():
    with pytest.raises(BacktestError, match="Start date must be before end date"):
        validate_date_range(START, START, now=NOW)

    with pytest.raises(BacktestError, match="Date range cannot exceed 365 days"):
        validate_date_range(START - timedelta(days=400), START, now=NOW)

    with pytest.raises(BacktestError, match="End date cannot be in the future"):
        validate_date_range(START, NOW + timedelta(days=1), now=NOW)

    validate_date_range(START, START + timedelta(days=9), now=NOW)


def test_date_parsing():
    assert to_utc_datetime("2024-01-01T00:00:00Z") == START
    assert to_utc_datetime("2024-01-01") == START
    with pytest.raises(BacktestError):
        to_utc_datetime("first of january")


async def test_dca_backtest_end_to_end(engine, db, rising_market):
    config = BacktestConfig(
        strategy_type="dca",
        symbol="BTCUSDT",
        start_date="2024-01-01T00:00:00Z",
        end_date="2024-01-10T00:00:00Z",
        initial_balance=10_000,
        strategy_config={'purchaseInterval': 86_400_000, 'takeProfitPercent': 5},
    )

    result = await engine.run_backtest(config)

    metrics = result.metrics
    assert metrics.total_trades >= 2
    assert metrics.winning_trades == metrics.total_trades
    assert metrics.final_balance > 10_000
    assert result.trades[0].entry_price == pytest.approx(110.0)
    assert result.trades[0].reason in ("Take profit reached", "Average take profit reached")
    assert result.trades[-1].exit_time <= START + timedelta(days=9)

    # 217 свечей пачками по 50
    assert len(rising_market.kline_requests) == 5

    stored = await db.get_backtest_result(result.id)
    assert stored is not None
    assert stored.total_trades == metrics.total_trades
    assert stored.symbol == "BTCUSDT"


async def test_second_run_uses_cached_candles(engine, rising_market):
    def config():
        return BacktestConfig(strategy_type="dca", symbol="BTCUSDT",
                              start_date=START, end_date=START + timedelta(days=9))

    first = await engine.run_backtest(config())
    requests = len(rising_market.kline_requests)
    second = await engine.run_backtest(config())

    assert len(rising_market.kline_requests) == requests
    assert second.metrics.total_trades == first.metrics.total_trades


async def test_invalid_parameters_are_rejected(engine):
    with pytest.raises(BacktestError):
        await engine.run_backtest(BacktestConfig(strategy_type="dca", symbol="BTCUSDT",
                                                 start_date=START, end_date=START + timedelta(days=1),
                                                 initial_balance=0))


async def test_position_open_at_end_is_closed(engine, exchange, db, settings):
    context = StrategyContext(exchange=exchange, db=db, user_id="backtest", settings=settings)
    strategy = StrategyRegistry.create_strategy(
        "dca", "bt", "bt", {'symbol': "BTCUSDT", 'takeProfitPercent': 50}, context,
    )
    klines = make_klines([100.0] * 25 + [101.0])

    trades = engine.simulate(strategy, "BTCUSDT", klines, 1000.0)

    assert len(trades) == 1
    assert trades[0].reason == "End of backtest"
    assert trades[0].exit_price == 101.0
    # вход на 10% баланса с комиссией 0.1% на входе и выходе
    assert trades[0].fee == pytest.approx(0.1 + 1.01 * 0.1, rel=1e-3)
