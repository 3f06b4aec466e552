from datetime import timedelta

import pytest

from data.models import StrategyType
from utils.helpers import DataIntegrityError, NotFoundError, get_current_utc_datetime

from tests.fakes import make_klines


async def _strategy(db, **kwargs):
    values = dict(user_id="default", strategy_type=StrategyType.DCA.value, name="dca", symbol="BTCUSDT")
    values.update(kwargs)
    return await db.create_strategy(**values)


@pytest.mark.parametrize("price", [0, -1, float('nan'), float('inf')])
async def test_save_trade_rejects_non_positive_price(db, price):
    strategy = await _strategy(db)

    with pytest.raises(DataIntegrityError):
        await db.save_trade(strategy_id=strategy.id, symbol="BTCUSDT", side="BUY",
                            order_type="MARKET", quantity=1, price=price)

    assert await db.count_trades() == 0


async def test_save_trade_normalizes_decimals(db):
    strategy = await _strategy(db)
    trade = await db.save_trade(strategy_id=strategy.id, symbol="BTCUSDT", side="BUY",
                                order_type="MARKET", quantity=0.123456789, price=101.5)

    stored = await db.get_trade(trade.id)
    assert str(stored.price) in ('101.5', '101.50000000')
    assert float(stored.quantity) == pytest.approx(0.12345679)

    trades = await db.get_trades(strategy_id=strategy.id)
    assert trades[0]['strategyName'] == "dca"


async def test_close_position_sets_closed_at_once(db):
    strategy = await _strategy(db)
    position = await db.create_position(strategy.id, "BTCUSDT", "BUY", 0.5, 100.0, stop_loss=95.0)

    closed = await db.close_position(position.id, 110.0)
    assert closed is not None
    assert closed.is_open is False
    assert closed.closed_at is not None

    assert await db.close_position(position.id, 120.0) is None
    reloaded = await db.get_position(position.id)
    assert float(reloaded.current_price) == 110.0


async def test_create_position_rejects_invalid_values(db):
    strategy = await _strategy(db)
    with pytest.raises(DataIntegrityError):
        await db.create_position(strategy.id, "BTCUSDT", "BUY", 1, 0)
    with pytest.raises(DataIntegrityError):
        await db.create_position(strategy.id, "BTCUSDT", "BUY", 0, 100)


async def test_update_position_market_refreshes_unrealized_pnl(db):
    strategy = await _strategy(db)
    position = await db.create_position(strategy.id, "BTCUSDT", "BUY", 2, 100.0)

    updated = await db.update_position_market(position.id, 105.0)
    assert float(updated.unrealized_pnl) == pytest.approx(10.0)
    assert float(updated.unrealized_pnl_percent) == pytest.approx(5.0)
    assert updated.market_value == pytest.approx(210.0)


async def test_open_positions_for_user(db):
    mine = await _strategy(db)
    other = await _strategy(db, user_id="someone-else")
    await db.create_position(mine.id, "BTCUSDT", "BUY", 1, 100)
    await db.create_position(other.id, "ETHUSDT", "BUY", 1, 10)

    positions = await db.get_open_positions_for_user("default")
    assert [p.symbol for p in positions] == ["BTCUSDT"]


async def test_update_strategy_rejects_unknown_fields(db):
    strategy = await _strategy(db)
    with pytest.raises(ValueError):
        await db.update_strategy(strategy.id, type="grid")
    with pytest.raises(NotFoundError):
        await db.update_strategy("missing", name="x")


async def test_delete_strategy_removes_positions_and_trades(db):
    strategy = await _strategy(db)
    position = await db.create_position(strategy.id, "BTCUSDT", "BUY", 1, 100)
    await db.save_trade(strategy_id=strategy.id, position_id=position.id, symbol="BTCUSDT",
                        side="BUY", order_type="MARKET", quantity=1, price=100)

    assert await db.delete_strategy(strategy.id) is True
    assert await db.get_strategy(strategy.id) is None
    assert await db.get_positions(strategy_id=strategy.id) == []
    assert await db.count_trades(strategy_id=strategy.id) == 0


async def test_realized_pnl_since(db):
    strategy = await _strategy(db)
    for pnl in (-5.0, 2.0):
        await db.save_trade(strategy_id=strategy.id, symbol="BTCUSDT", side="SELL",
                            order_type="MARKET", quantity=1, price=100, pnl=pnl)

    since = get_current_utc_datetime() - timedelta(hours=1)
    assert await db.get_realized_pnl_since("default", since) == pytest.approx(-3.0)


async def test_trading_pairs_upsert_by_symbol(db):
    await db.upsert_trading_pairs([{'symbol': "BTCUSDT", 'price': 100, 'score': 40, 'factors': {}}])
    await db.upsert_trading_pairs([{'symbol': "BTCUSDT", 'price': 110, 'score': 70, 'factors': {'rsi': 50}}])

    pairs = await db.get_trading_pairs()
    assert len(pairs) == 1
    assert float(pairs[0].score) == 70
    assert pairs[0].base_asset == "BTC"


async def test_risk_limits_daily_loss_accumulates(db):
    await db.upsert_risk_limits("default", max_concurrent_positions=3)
    await db.record_daily_loss("default", 10)
    limits = await db.record_daily_loss("default", 5)

    assert float(limits.daily_loss_amount) == pytest.approx(15)
    assert limits.max_concurrent_positions == 3
    assert await db.record_daily_loss("nobody", 1) is None


async def test_market_data_skips_existing_candles(db):
    klines = make_klines([100, 101, 102])
    assert await db.save_market_data("BTCUSDT", "1h", klines) == 3
    assert await db.save_market_data("BTCUSDT", "1h", klines) == 0

    rows = await db.get_market_data("BTCUSDT", "1h", klines[0].open_time, klines[-1].open_time)
    assert [float(row.close) for row in rows] == [100, 101, 102]
