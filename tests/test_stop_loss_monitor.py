import asyncio

import pytest

from core.position_closer import close_position_at_market
from data.models import Position, StrategyType
from services.stop_loss_monitor import StopLossMonitor, breach_reason


@pytest.fixture
def monitor(exchange, db, risk_calculator, settings):
    return StopLossMonitor(exchange, db, risk_calculator=risk_calculator, settings=settings)


async def _position(db, symbol="BTCUSDT", **kwargs):
    strategy = await db.create_strategy("default", StrategyType.MOMENTUM.value, "momentum", symbol=symbol)
    values = dict(quantity=0.5, entry_price=100.0)
    values.update(kwargs)
    return await db.create_position(strategy.id, symbol, "BUY", **values)


def test_stop_loss_checked_before_take_profit():
    position = Position(symbol="BTCUSDT", stop_loss=95, take_profit=90)
    assert breach_reason(position, 90) == "Stop loss triggered"

    position = Position(symbol="BTCUSDT", stop_loss=95, take_profit=105)
    assert breach_reason(position, 105) == "Take profit reached"
    assert breach_reason(position, 100) is None
    assert breach_reason(Position(symbol="BTCUSDT"), 1) is None


async def test_breach_closes_position_and_records_loss(monitor, db, market):
    position = await _position(db, stop_loss=95.0)
    market.prices["BTCUSDT"] = 90.0

    stats = await monitor.check_positions()

    assert stats.closed == 1
    assert stats.errors == 0

    closed = await db.get_position(position.id)
    assert closed.is_open is False
    assert float(closed.current_price) == pytest.approx(90.0)

    trades = await db.get_trades(strategy_id=position.strategy_id)
    assert len(trades) == 1
    assert trades[0]['side'] == "SELL"
    assert trades[0]['pnl'] == pytest.approx(-5.045)

    limits = await db.get_risk_limits("default")
    assert float(limits.daily_loss_amount) == pytest.approx(5.045)


async def test_no_breach_updates_market_price(monitor, db, market):
    position = await _position(db, stop_loss=95.0, take_profit=110.0)
    market.prices["BTCUSDT"] = 104.0

    stats = await monitor.check_positions()

    assert stats.updated == 1
    assert stats.closed == 0
    refreshed = await db.get_position(position.id)
    assert refreshed.is_open
    assert float(refreshed.current_price) == pytest.approx(104.0)
    assert float(refreshed.unrealized_pnl) == pytest.approx(2.0)


async def test_one_failing_position_does_not_stop_sweep(monitor, db, market):
    await _position(db, symbol="DOGEUSDT")
    healthy = await _position(db, stop_loss=95.0)
    market.prices["BTCUSDT"] = 101.0

    stats = await monitor.check_positions()

    assert stats.checked == 2
    assert stats.errors == 1
    assert stats.updated == 1
    assert float((await db.get_position(healthy.id)).current_price) == pytest.approx(101.0)


async def test_start_and_stop_loop(monitor):
    monitor.start()
    assert monitor.is_running

    await monitor.stop()
    assert not monitor.is_running


async def test_concurrent_exits_sell_position_once(exchange, db, market):
    position = await _position(db, take_profit=105.0)
    market.prices["BTCUSDT"] = 106.0

    results = await asyncio.gather(
        close_position_at_market(exchange, db, position.id, "Take profit reached"),
        close_position_at_market(exchange, db, position.id, "Grid sell level reached"),
    )

    assert sum(result is not None for result in results) == 1
    trades = await db.get_trades(strategy_id=position.strategy_id)
    assert [trade['side'] for trade in trades] == ["SELL"]
    assert (await exchange.get_balance("BTC")).free == pytest.approx(0.5)
    assert (await db.get_position(position.id)).is_open is False
