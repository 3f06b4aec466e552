"""
Spot Trading Engine Data Module
Инициализация модуля данных и экспорт основных классов
"""

from .database import Database
from .models import (
    Base, Strategy, Position, Trade, RiskLimits, TradingPair, MarketData, BacktestResult,
    StrategyType, OrderSide, OrderType, OrderStatus
)

# Версия модуля
__version__ = "1.0.0"

__all__ = [
    # Database
    "Database",

    # Models
    "Base",
    "Strategy",
    "Position",
    "Trade",
    "RiskLimits",
    "TradingPair",
    "MarketData",
    "BacktestResult",

    # Enums
    "StrategyType",
    "OrderSide",
    "OrderType",
    "OrderStatus",
]
