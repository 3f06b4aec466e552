from datetime import timedelta

import pytest

from core.exchange import PairInfo
from data.models import StrategyType
from strategies import (
    StrategyRegistry, DCAStrategy, DCAConfig, GridStrategy, GridConfig, MomentumStrategy,
    MomentumConfig, MeanReversionStrategy, MeanReversionConfig, SignalContext, PositionView,
)
from strategies.dca import average_entry_price, aggregate_profit_percent
from strategies.grid import compute_grid_levels
from strategies.momentum import MomentumSignals, trailing_stop
from utils.helpers import ConfigurationError

from tests.fakes import START, make_klines


def _view(entry_price, quantity=1.0, **kwargs):
    return PositionView(id=kwargs.pop('id', 'p'), symbol="BTCUSDT", quantity=quantity,
                        entry_price=entry_price, **kwargs)


async def _record(db, strategy_type, config):
    return await db.create_strategy("default", strategy_type.value, strategy_type.value,
                                    symbol="BTCUSDT", config=config)


# ============================================================================
# CONFIG AND REGISTRY
# ============================================================================

def test_config_accepts_camel_case_and_ignores_unknown_keys():
    config = DCAConfig.from_dict({'amountPerPurchase': 50, 'maxPurchases': 3,
                                  'somethingElse': True, 'symbol': ''})
    assert config.amount_per_purchase == 50
    assert config.max_purchases == 3
    assert config.symbol is None
    assert config.to_dict()['amountPerPurchase'] == 50


def test_invalid_config_raises_configuration_error():
    with pytest.raises(ConfigurationError):
        DCAConfig.from_dict({'amountPerPurchase': -1})
    with pytest.raises(ConfigurationError):
        GridConfig.from_dict({'lowerPrice': 110, 'upperPrice': 90})


def test_registry_lists_all_variants():
    assert StrategyRegistry.list_strategies() == ["dca", "grid", "mean_reversion", "momentum"]
    assert StrategyRegistry.get_strategy_class("grid") is GridStrategy

    with pytest.raises(ConfigurationError):
        StrategyRegistry.validate_config("arbitrage", {})


def test_registry_info_contains_default_config():
    info = StrategyRegistry.get_all_strategies_info()
    assert info["dca"]["defaults"]["amountPerPurchase"] == 100.0


# ============================================================================
# SIGNAL FUNCTIONS
# ============================================================================

def test_trailing_stop_never_moves_down():
    stop = None
    history = []
    for price in (100, 105, 110, 104, 120, 90, 121):
        stop = trailing_stop(stop, entry_price=100, price=price, trailing_percent=5)
        history.append(stop or 0.0)

    assert history == sorted(history)
    assert stop == pytest.approx(121 * 0.95)


def test_dca_average_exit():
    lots = [_view(100.0, id='a'), _view(90.0, id='b')]
    assert average_entry_price(lots) == pytest.approx(95.0)
    assert aggregate_profit_percent(lots, 100.0) == pytest.approx(5.263, abs=1e-3)

    strategy_cls = StrategyRegistry.get_strategy_class("dca")
    config = DCAConfig(symbol="BTCUSDT", take_profit_percent=5.0)
    ctx = SignalContext(symbol="BTCUSDT", price=100.0, now=START, positions=lots)
    reason = strategy_cls.evaluate_exit(_Bare(config), lots[0], ctx)
    assert reason == "Average take profit reached"


def test_dca_entry_waits_for_interval():
    config = DCAConfig(symbol="BTCUSDT", purchase_interval=3_600_000, max_purchases=2)
    strategy = _Bare(config)
    ctx = SignalContext(symbol="BTCUSDT", price=100.0, now=START + timedelta(minutes=30),
                        last_entry_time=START)
    assert DCAStrategy.evaluate_entry(strategy, ctx) is False

    later = SignalContext(symbol="BTCUSDT", price=100.0, now=START + timedelta(hours=1),
                          last_entry_time=START)
    assert DCAStrategy.evaluate_entry(strategy, later) is True


def test_grid_levels_inside_range():
    grid = compute_grid_levels(price=100.0, levels=10, lower=90.0, upper=110.0)

    assert grid.spacing == pytest.approx(2.0)
    assert list(grid.buy_levels) == pytest.approx([90, 92, 94, 96, 98])
    assert list(grid.sell_levels) == pytest.approx([102, 104, 106, 108, 110])


def test_momentum_take_profit_exit_without_candles():
    strategy = _Bare(MomentumStrategy.config_class(symbol="BTCUSDT"))
    position = _view(100.0, take_profit=105.0, stop_loss=97.5)

    ctx = SignalContext(symbol="BTCUSDT", price=106.0, now=START, positions=[position])
    assert MomentumStrategy.evaluate_exit(strategy, position, ctx) == "Take profit reached"

    ctx = SignalContext(symbol="BTCUSDT", price=97.0, now=START, positions=[position])
    assert MomentumStrategy.evaluate_exit(strategy, position, ctx) == "Stop loss triggered"


class _Bare:
    """Минимальный носитель конфигурации для вызова сигнальных функций"""

    def __init__(self, config):
        self.config = config
        self.grid = None

    def interval_elapsed(self, now, last_entry):
        return DCAStrategy.interval_elapsed(self, now, last_entry)

    def compute_signals(self, ctx):
        return None


def _with_signals(strategy_cls, config):
    bare = _Bare(config)
    bare.compute_signals = lambda ctx: strategy_cls.compute_signals(bare, ctx)
    return bare


# Ровный участок, затем 20 свечей снижения: среднее 89.5, полоса ~77.97..101.03, RSI 0
FALLING = [100.0] * 80 + [100.0 - i for i in range(1, 21)]
# Зеркальный рост: среднее 110.5, полоса ~98.97..122.03, RSI 100
RISING = [100.0] * 80 + [100.0 + i for i in range(1, 21)]


def _zigzag_uptrend(length=100):
    """Шаги +2/-1: устойчивый рост с RSI около 67"""
    closes = [100.0]
    for i in range(length - 1):
        closes.append(closes[-1] + (2.0 if i % 2 == 0 else -1.0))
    return closes


def test_momentum_enters_on_six_of_seven_conditions():
    signals = MomentumSignals(price=110, ema_fast=105, ema_slow=100, macd=-1, signal=0,
                              histogram=-1, rsi=50, volume_ratio=2)
    conditions = signals.conditions(MomentumConfig())

    assert len(conditions) == 7
    assert conditions['macdBullish'] is False
    assert sum(conditions.values()) == 6

    signals.volume_ratio = 1.0
    assert sum(signals.conditions(MomentumConfig()).values()) == 5


def test_momentum_entry_from_candles():
    config = MomentumConfig(symbol="BTCUSDT")
    strategy = _with_signals(MomentumStrategy, config)
    closes = _zigzag_uptrend()
    candles = make_klines(closes, volumes=[100.0] * 99 + [300.0])

    ctx = SignalContext(symbol="BTCUSDT", price=closes[-1] + 9, now=START, candles=candles)
    assert MomentumStrategy.evaluate_entry(strategy, ctx) is True

    # Цена ниже обеих EMA: не больше пяти условий из семи
    below = SignalContext(symbol="BTCUSDT", price=50.0, now=START, candles=candles)
    assert MomentumStrategy.evaluate_entry(strategy, below) is False

    held = SignalContext(symbol="BTCUSDT", price=closes[-1] + 9, now=START, candles=candles,
                         positions=[_view(150.0)])
    assert MomentumStrategy.evaluate_entry(strategy, held) is False


def test_momentum_exits_when_price_drops_below_slow_ema():
    strategy = _with_signals(MomentumStrategy, MomentumConfig(symbol="BTCUSDT"))
    candles = make_klines(_zigzag_uptrend())
    position = _view(150.0)

    ctx = SignalContext(symbol="BTCUSDT", price=140.0, now=START, candles=candles,
                        positions=[position])
    assert MomentumStrategy.evaluate_exit(strategy, position, ctx) == "Price below slow EMA"


def test_mean_reversion_entry_requires_oversold_stretch():
    config = MeanReversionConfig(symbol="BTCUSDT")
    strategy = _with_signals(MeanReversionStrategy, config)
    candles = make_klines(FALLING)

    ctx = SignalContext(symbol="BTCUSDT", price=79.0, now=START, candles=candles)
    assert MeanReversionStrategy.evaluate_entry(strategy, ctx) is True

    too_close = _with_signals(MeanReversionStrategy,
                              MeanReversionConfig(symbol="BTCUSDT", min_revert_distance=20.0))
    assert MeanReversionStrategy.evaluate_entry(too_close, ctx) is False

    # Цена глубоко ниже среднего, но RSI нейтральный
    choppy = make_klines([100.0 + (i % 2) for i in range(100)])
    flat = SignalContext(symbol="BTCUSDT", price=90.0, now=START, candles=choppy)
    assert MeanReversionStrategy.evaluate_entry(strategy, flat) is False

    short = SignalContext(symbol="BTCUSDT", price=79.0, now=START, candles=candles[-10:])
    assert MeanReversionStrategy.evaluate_entry(strategy, short) is False


def test_mean_reversion_exit_reasons():
    strategy = _with_signals(MeanReversionStrategy, MeanReversionConfig(symbol="BTCUSDT"))
    position = _view(79.0)
    falling = make_klines(FALLING)

    def reason(price, candles):
        ctx = SignalContext(symbol="BTCUSDT", price=price, now=START, candles=candles,
                            positions=[position])
        return MeanReversionStrategy.evaluate_exit(strategy, position, ctx)

    assert reason(85.0, falling) is None
    assert reason(90.0, falling) == "Price reverted to mean"
    assert reason(102.0, falling) == "Upper band reached"
    assert reason(105.0, make_klines(RISING)) == "RSI overbought"


def test_mean_reversion_take_profit_targets_mean():
    strategy = _with_signals(MeanReversionStrategy, MeanReversionConfig(symbol="BTCUSDT"))
    ctx = SignalContext(symbol="BTCUSDT", price=79.0, now=START, candles=make_klines(FALLING))

    stop_loss, take_profit = MeanReversionStrategy.entry_levels(strategy, 79.0, ctx)
    assert stop_loss == pytest.approx(79.0 * 0.97)
    assert take_profit == pytest.approx(89.5)

    _, take_profit = MeanReversionStrategy.entry_levels(strategy, 88.0, ctx)
    assert take_profit == pytest.approx(88.0 * 1.02)


# ============================================================================
# LIVE EXECUTION ON PAPER EXCHANGE
# ============================================================================

async def test_dca_purchase_then_waits(strategy_context, db):
    record = await _record(db, StrategyType.DCA, {'amountPerPurchase': 100})
    strategy = DCAStrategy(record.id, record.name, {'symbol': "BTCUSDT", 'amountPerPurchase': 100},
                           strategy_context)

    first = await strategy.execute()
    assert first.success
    assert first.positions_opened == 1

    positions = await db.get_positions(strategy_id=record.id, is_open=True)
    assert len(positions) == 1
    assert float(positions[0].entry_price) == pytest.approx(100.0)
    assert float(positions[0].take_profit) == pytest.approx(105.0)

    second = await strategy.execute()
    assert second.success
    assert second.message == "Waiting for next purchase interval"

    stored = await db.get_strategy(record.id)
    assert stored.config['lastPurchaseTime'] > 0
    assert await db.count_trades(strategy_id=record.id) == 1


async def test_dca_restores_last_purchase_time(strategy_context, db):
    record = await _record(db, StrategyType.DCA, {'lastPurchaseTime': 1_704_067_200_000})
    strategy = DCAStrategy(record.id, record.name, record.config, strategy_context)

    await strategy.start()

    assert strategy.last_purchase_time == START
    assert (await db.get_strategy(record.id)).is_active


async def test_execute_without_symbol_is_skipped(strategy_context, db):
    record = await db.create_strategy("default", StrategyType.DCA.value, "auto")
    strategy = DCAStrategy(record.id, record.name, {}, strategy_context)

    result = await strategy.execute()

    assert not result.success
    assert result.message == "No symbol specified"


async def test_grid_buys_level_and_exits_at_next_sell_level(strategy_context, db, market):
    config = {'symbol': "BTCUSDT", 'lowerPrice': 90, 'upperPrice': 110,
              'gridLevels': 10, 'quantityPerGrid': 1}
    record = await _record(db, StrategyType.GRID, config)
    strategy = GridStrategy(record.id, record.name, config, strategy_context)
    await strategy.start()

    market.prices["BTCUSDT"] = 97.9
    bought = await strategy.execute()
    assert bought.success, bought.message
    assert bought.positions_opened == 1

    position = (await db.get_positions(strategy_id=record.id, is_open=True))[0]
    assert float(position.entry_price) == pytest.approx(98.0)
    assert float(position.take_profit) == pytest.approx(102.0)
    assert float(position.quantity) == pytest.approx(0.999)

    market.prices["BTCUSDT"] = 102.0
    sold = await strategy.execute()
    assert sold.positions_closed == 1
    assert await db.get_positions(strategy_id=record.id, is_open=True) == []


async def test_execute_returns_failure_instead_of_raising(strategy_context, db, market):
    record = await _record(db, StrategyType.DCA, {})
    strategy = DCAStrategy(record.id, record.name, {'symbol': "DOGEUSDT"}, strategy_context)

    result = await strategy.execute()

    assert not result.success
    assert "DOGEUSDT" in result.message


async def test_should_enter_and_should_exit(strategy_context, db, market):
    record = await _record(db, StrategyType.DCA, {})
    strategy = DCAStrategy(record.id, record.name, {'symbol': "BTCUSDT"}, strategy_context)
    pair = PairInfo(symbol="BTCUSDT", base_asset="BTC")

    assert await strategy.should_enter(pair) is True

    await strategy.execute()
    assert await strategy.should_enter(pair) is False

    position = (await db.get_positions(strategy_id=record.id, is_open=True))[0]
    assert await strategy.should_exit(position.id) is False

    market.prices["BTCUSDT"] = 106.0
    assert await strategy.should_exit(position.id) is True
    assert await strategy.should_exit("missing") is False


async def test_update_config_merges_and_persists(strategy_context, db):
    record = await _record(db, StrategyType.DCA, {'amountPerPurchase': 100, 'lastPurchaseTime': 123})
    strategy = DCAStrategy(record.id, record.name, record.config, strategy_context)

    await strategy.update_config({'maxPurchases': 4})

    assert strategy.config.max_purchases == 4
    assert strategy.config.amount_per_purchase == 100
    stored = (await db.get_strategy(record.id)).config
    assert stored['maxPurchases'] == 4
    assert stored['lastPurchaseTime'] == 123

    with pytest.raises(ConfigurationError):
        await strategy.update_config({'maxPurchases': 0})
    assert strategy.config.max_purchases == 4


async def test_auto_grid_is_rebuilt_for_new_symbol(strategy_context, db, market):
    config = {'lowerPrice': 90, 'upperPrice': 110, 'gridLevels': 10, 'quantityPerGrid': 1}
    record = await db.create_strategy("default", StrategyType.GRID.value, "auto grid", config=config)
    strategy = GridStrategy(record.id, record.name, config, strategy_context)

    btc = await strategy.execute(PairInfo(symbol="BTCUSDT", base_asset="BTC"))
    assert btc.message == "No grid levels triggered"
    assert strategy.grid.symbol == "BTCUSDT"

    # Уровни BTC (90..98) не должны срабатывать на цене ETH = 10
    eth = await strategy.execute(PairInfo(symbol="ETHUSDT", base_asset="ETH"))
    assert eth.success
    assert eth.message == "No grid levels triggered"
    assert strategy.grid.symbol == "ETHUSDT"
    assert strategy.grid.buy_levels == ()
    assert await db.get_positions(strategy_id=record.id, symbol="ETHUSDT") == []


async def test_grid_sell_level_needs_base_balance(strategy_context, db, market, exchange):
    config = {'symbol': "BTCUSDT", 'lowerPrice': 90, 'upperPrice': 110,
              'gridLevels': 10, 'quantityPerGrid': 2}
    record = await _record(db, StrategyType.GRID, config)
    strategy = GridStrategy(record.id, record.name, config, strategy_context)
    await strategy.start()

    market.prices["BTCUSDT"] = 104.0
    result = await strategy.execute()

    assert not result.success
    assert result.message == "Insufficient balance for sell order"
    assert await db.count_trades(strategy_id=record.id) == 0
    assert (await exchange.get_balance("BTC")).free == pytest.approx(1.0)


async def test_grid_sell_level_with_base_balance(strategy_context, db, market, exchange):
    config = {'symbol': "BTCUSDT", 'lowerPrice': 90, 'upperPrice': 110,
              'gridLevels': 10, 'quantityPerGrid': 0.5}
    record = await _record(db, StrategyType.GRID, config)
    strategy = GridStrategy(record.id, record.name, config, strategy_context)
    await strategy.start()

    market.prices["BTCUSDT"] = 104.0
    result = await strategy.execute()

    assert result.success, result.message
    assert result.message == "Grid sell at 102"
    assert await db.count_trades(strategy_id=record.id) == 1
    assert (await exchange.get_balance("BTC")).free == pytest.approx(0.5)


async def test_dca_closes_only_lot_at_its_target(strategy_context, db, market):
    record = await _record(db, StrategyType.DCA, {'takeProfitPercent': 5})
    strategy = DCAStrategy(record.id, record.name, {'symbol': "BTCUSDT", 'takeProfitPercent': 5},
                           strategy_context)
    cheap = await db.create_position(record.id, "BTCUSDT", "BUY", quantity=0.5,
                                     entry_price=100.0, take_profit=101.0)
    dear = await db.create_position(record.id, "BTCUSDT", "BUY", quantity=0.5,
                                    entry_price=110.0, take_profit=115.5)

    # Средняя 105, совокупный результат около -2.9%: общий выход не срабатывает
    market.prices["BTCUSDT"] = 102.0
    result = await strategy.execute()

    assert result.success, result.message
    assert result.message == "Closed 1 DCA lot(s)"
    assert result.positions_closed == 1

    assert not (await db.get_position(cheap.id)).is_open
    assert (await db.get_position(dear.id)).is_open
