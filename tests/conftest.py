"""
Общие фикстуры: настройки, SQLite в памяти, поддельный источник рыночных
данных и бумажная биржа поверх него.
"""

import pytest

from app.config.settings import Settings
from core.paper_exchange import PaperExchange
from data.database import Database
from services.risk_calculator import RiskCalculator
from strategies import StrategyContext

from tests.fakes import FakeMarketData


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite:///:memory:",
        AUTO_START_LOOPS=False,
        MARKET_STREAM_ENABLED=False,
        TRADING_FEE_PERCENT=0.1,
        PAPER_INITIAL_BALANCE=10_000.0,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings, database_url="sqlite+aiosqlite:///:memory:")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def market():
    return FakeMarketData(prices={"BTCUSDT": 100.0, "ETHUSDT": 10.0})


@pytest.fixture
def exchange(market):
    return PaperExchange(market, initial_balances={"USDT": 10_000.0, "BTC": 1.0}, fee_percent=0.1)


@pytest.fixture
def risk_calculator(exchange, db, settings):
    return RiskCalculator(exchange, db, settings)


@pytest.fixture
def strategy_context(exchange, db, risk_calculator, settings):
    return StrategyContext(exchange=exchange, db=db, user_id="default",
                           risk_calculator=risk_calculator, settings=settings)
