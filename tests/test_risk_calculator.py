import pytest
from sqlalchemy import update

from data.models import RiskLimits, StrategyType
from services.risk_calculator import RiskCalculator, RiskLevel
from utils.helpers import ValidationError

from tests.fakes import START


async def _open_positions(db, count, symbol="ETHUSDT", user_id="default"):
    strategy = await db.create_strategy(user_id, StrategyType.GRID.value, "grid", symbol=symbol)
    for _ in range(count):
        await db.create_position(strategy.id, symbol, "BUY", 1, 10)
    return strategy


async def test_allows_small_trade(risk_calculator):
    result = await risk_calculator.check_trade_risk("default", "BTCUSDT", 1, 100)
    assert result.allowed
    assert result.risk_level == RiskLevel.LOW
    assert result.reason is None


async def test_both_limits_violated_reports_position_size(risk_calculator, db):
    """Размер позиции проверяется первым и дает причину отказа"""
    await _open_positions(db, 5)

    result = await risk_calculator.check_trade_risk("default", "BTCUSDT", 20, 100)

    assert not result.allowed
    assert result.risk_level == RiskLevel.HIGH
    assert result.reason.startswith("Position size")


async def test_concurrent_positions_limit(risk_calculator, db):
    await _open_positions(db, 5)

    result = await risk_calculator.check_trade_risk("default", "BTCUSDT", 1, 100)

    assert not result.allowed
    assert result.reason == "Maximum concurrent positions (5) reached"


async def test_daily_loss_limit_reads_accumulator(risk_calculator):
    await risk_calculator.record_realized_loss("default", -600)

    result = await risk_calculator.check_trade_risk("default", "BTCUSDT", 1, 100)

    assert not result.allowed
    assert result.reason == "Daily loss limit (5%) exceeded: 6.00%"


async def test_loss_from_previous_day_is_ignored(risk_calculator, db):
    await risk_calculator.record_realized_loss("default", -600)
    async with db.get_session() as session:
        await session.execute(update(RiskLimits).values(last_reset_date=START))

    assert await risk_calculator.get_daily_loss("default") == 0.0
    assert (await risk_calculator.check_trade_risk("default", "BTCUSDT", 1, 100)).allowed


async def test_position_in_same_asset_raises_risk_level_only(risk_calculator, db):
    await _open_positions(db, 1, symbol="BTCUSDT")

    result = await risk_calculator.check_trade_risk("default", "BTCUSDT", 1, 100)

    assert result.allowed
    assert result.risk_level == RiskLevel.MEDIUM


async def test_internal_error_denies(db, settings):
    class BrokenExchange:
        async def get_balance(self, asset):
            raise RuntimeError("balance endpoint down")

    calculator = RiskCalculator(BrokenExchange(), db, settings)
    result = await calculator.check_trade_risk("default", "BTCUSDT", 1, 100)

    assert not result.allowed
    assert result.risk_level == RiskLevel.HIGH
    assert "balance endpoint down" in result.reason


async def test_limits_fall_back_to_settings(risk_calculator, settings):
    limits = await risk_calculator.get_risk_limits("fresh-user")
    assert limits.max_position_size_percent == settings.MAX_POSITION_SIZE_PERCENT
    assert limits.max_concurrent_positions == settings.MAX_CONCURRENT_POSITIONS


async def test_update_risk_limits(risk_calculator):
    limits = await risk_calculator.update_risk_limits("default", max_position_size_percent=25,
                                                      max_concurrent_positions=2)
    assert limits.max_position_size_percent == 25
    assert limits.max_concurrent_positions == 2
    assert limits.stop_loss_percent == 2.5

    with pytest.raises(ValidationError):
        await risk_calculator.update_risk_limits("default", stop_loss_percent=150)
    with pytest.raises(ValidationError):
        await risk_calculator.update_risk_limits("default", max_concurrent_positions=0)


async def test_record_realized_loss_ignores_profit(risk_calculator, db):
    await risk_calculator.record_realized_loss("default", 12.0)
    assert await db.get_risk_limits("default") is None

    await risk_calculator.record_realized_loss("default", -7.5)
    limits = await db.get_risk_limits("default")
    assert float(limits.daily_loss_amount) == pytest.approx(7.5)


async def test_safe_position_size_is_capped(risk_calculator):
    size = await risk_calculator.calculate_safe_position_size("default", "BTCUSDT", 100, requested_percent=50)
    assert size.percentage == 10
    assert size.quantity == pytest.approx(10.0)


def test_price_levels():
    assert RiskCalculator.calculate_stop_loss(100, 2.5) == pytest.approx(97.5)
    assert RiskCalculator.calculate_take_profit(100, 5) == pytest.approx(105)
