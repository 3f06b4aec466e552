"""
Spot Trading Engine Strategies Module
Базовый класс, реестр и встроенные варианты стратегий
"""

from .base_strategy import (
    BaseStrategy, StrategyConfig, StrategyContext, StrategyState,
    ExecutionResult, SignalContext, PositionView
)
from .strategy_registry import StrategyRegistry, register_strategy

# Импорт вариантов регистрирует их в реестре
from .grid import GridStrategy, GridConfig
from .dca import DCAStrategy, DCAConfig
from .momentum import MomentumStrategy, MomentumConfig
from .mean_reversion import MeanReversionStrategy, MeanReversionConfig

__version__ = "1.0.0"

__all__ = [
    "BaseStrategy",
    "StrategyConfig",
    "StrategyContext",
    "StrategyState",
    "ExecutionResult",
    "SignalContext",
    "PositionView",

    "StrategyRegistry",
    "register_strategy",

    "GridStrategy",
    "GridConfig",
    "DCAStrategy",
    "DCAConfig",
    "MomentumStrategy",
    "MomentumConfig",
    "MeanReversionStrategy",
    "MeanReversionConfig",
]
