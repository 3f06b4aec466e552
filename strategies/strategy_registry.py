"""
Spot Trading Engine Strategy Registry
Закрытый реестр вариантов стратегий: тег типа -> класс
"""

import inspect
from dataclasses import dataclass, fields
from typing import Dict, List, Type, Optional, Any, Union

from data.models import StrategyType
from utils.helpers import ConfigurationError
from utils.logger import setup_logger
from .base_strategy import BaseStrategy, StrategyConfig, StrategyContext, snake_to_camel


# ============================================================================
# TYPES AND DATACLASSES
# ============================================================================

@dataclass
class StrategyInfo:
    """Информация о зарегистрированном варианте"""
    name: str
    strategy_class: Type[BaseStrategy]
    description: str

    @property
    def default_config(self) -> Dict[str, Any]:
        return self.strategy_class.config_class().to_dict()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.name,
            'className': self.strategy_class.__name__,
            'description': self.description,
            'parameters': [
                snake_to_camel(f.name) for f in fields(self.strategy_class.config_class)
            ],
            'defaults': self.default_config,
        }


# ============================================================================
# STRATEGY REGISTRY CLASS
# ============================================================================

class StrategyRegistry:
    """
    Реестр торговых стратегий.

    Набор тегов закрыт (``StrategyType``): зарегистрировать можно только
    известный вариант, создать можно только зарегистрированный.
    """

    _strategies: Dict[str, StrategyInfo] = {}
    _logger = setup_logger(__name__ + ".StrategyRegistry")

    @classmethod
    def register(
        cls,
        name: str,
        strategy_class: Type[BaseStrategy],
        description: str = "",
        override: bool = False
    ) -> None:
        if name not in {item.value for item in StrategyType}:
            raise ValueError(f"Unknown strategy type: {name}")

        if not inspect.isclass(strategy_class) or not issubclass(strategy_class, BaseStrategy):
            raise ValueError("strategy_class must inherit from BaseStrategy")

        if name in cls._strategies and not override:
            raise ValueError(f"Strategy '{name}' already registered. Use override=True to replace.")

        cls._strategies[name] = StrategyInfo(
            name=name,
            strategy_class=strategy_class,
            description=description or (inspect.getdoc(strategy_class) or "").split("\n")[0],
        )
        cls._logger.debug(f"Registered strategy: {name} ({strategy_class.__name__})")

    @classmethod
    def get_strategy_class(cls, name: str) -> Optional[Type[BaseStrategy]]:
        strategy_info = cls._strategies.get(name)
        return strategy_info.strategy_class if strategy_info else None

    @classmethod
    def create_strategy(
        cls,
        name: str,
        strategy_id: str,
        display_name: str,
        config: Union[StrategyConfig, Dict[str, Any], None],
        context: StrategyContext,
    ) -> BaseStrategy:
        """
        Создание экземпляра стратегии.

        Raises:
            ConfigurationError: неизвестный тип или невалидная конфигурация
        """
        strategy_class = cls.get_strategy_class(name)
        if strategy_class is None:
            raise ConfigurationError(f"Unknown strategy type: {name}", strategy_type=name)

        strategy = strategy_class(strategy_id, display_name, config, context)
        cls._logger.info(f"🎯 Created strategy instance: {name} ({display_name})")
        return strategy

    @classmethod
    def validate_config(cls, name: str, config: Optional[Dict[str, Any]]) -> StrategyConfig:
        """Разбор конфигурации без создания стратегии"""
        strategy_class = cls.get_strategy_class(name)
        if strategy_class is None:
            raise ConfigurationError(f"Unknown strategy type: {name}", strategy_type=name)
        return strategy_class.config_class.from_dict(config or {})

    @classmethod
    def list_strategies(cls) -> List[str]:
        return sorted(cls._strategies)

    @classmethod
    def get_all_strategies_info(cls) -> Dict[str, Dict[str, Any]]:
        return {name: info.to_dict() for name, info in cls._strategies.items()}


# ============================================================================
# DECORATORS
# ============================================================================

def register_strategy(name: str, description: str = ""):
    """
    Декоратор регистрации варианта

    Usage:
        @register_strategy("grid")
        class GridStrategy(BaseStrategy):
            ...
    """
    def decorator(strategy_class: Type[BaseStrategy]) -> Type[BaseStrategy]:
        StrategyRegistry.register(name=name, strategy_class=strategy_class, description=description)
        return strategy_class

    return decorator
