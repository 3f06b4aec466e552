"""
Spot Trading Engine Base Strategy
Базовый класс торговых стратегий: состояние, конфигурация, журнал позиций
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Tuple, Type, TypeVar, Union

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient, Kline, PairInfo, OrderResult
from core.order_reconciliation import resolve_executed, order_fee
from core.position_closer import close_position_at_market, ExitResult
from data.database import Database
from data.models import Position, StrategyType, OrderSide, OrderType, OrderStatus
from utils.helpers import (
    ConfigurationError, get_current_utc_datetime, ensure_utc, extract_base_asset,
    floor_to_decimals, QUOTE_ASSET
)
from utils.logger import get_strategy_logger


# ============================================================================
# ENUMS AND TYPES
# ============================================================================

class StrategyState(str, Enum):
    """Состояния стратегии: других переходов, кроме start/stop, нет"""
    STOPPED = "stopped"
    ACTIVE = "active"


@dataclass
class ExecutionResult:
    """Результат одного тика стратегии"""
    success: bool
    message: str = ""
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    positions_opened: int = 0
    positions_closed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'orderId': self.order_id,
            'positionId': self.position_id,
            'positionsOpened': self.positions_opened,
            'positionsClosed': self.positions_closed,
        }


@dataclass(frozen=True)
class PositionView:
    """Срез позиции, на котором работают сигнальные функции (live и бэктест)"""
    id: str
    symbol: str
    quantity: float
    entry_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    opened_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, position: Position) -> "PositionView":
        return cls(
            id=position.id,
            symbol=position.symbol,
            quantity=float(position.quantity),
            entry_price=float(position.entry_price),
            stop_loss=float(position.stop_loss) if position.stop_loss is not None else None,
            take_profit=float(position.take_profit) if position.take_profit is not None else None,
            opened_at=ensure_utc(position.opened_at),
        )


@dataclass
class SignalContext:
    """
    Вход сигнальных функций: окно свечей, заканчивающееся текущей,
    текущая цена и время, открытые позиции стратегии по символу.
    """
    symbol: str
    price: float
    now: datetime
    candles: Sequence[Kline] = field(default_factory=list)
    positions: Sequence[PositionView] = field(default_factory=list)
    last_entry_time: Optional[datetime] = None

    @property
    def closes(self) -> List[float]:
        return [candle.close for candle in self.candles]

    @property
    def volumes(self) -> List[float]:
        return [candle.volume for candle in self.candles]


_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')


def camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub('_', name).lower()


def snake_to_camel(name: str) -> str:
    head, *tail = name.split('_')
    return head + ''.join(part.capitalize() for part in tail)


ConfigT = TypeVar('ConfigT', bound='StrategyConfig')


@dataclass(frozen=True)
class StrategyConfig:
    """
    Неизменяемая конфигурация стратегии.

    ``symbol`` пустой означает автовыбор пары на каждом тике.
    Ключи принимаются в camelCase (API, JSON в БД) или snake_case.
    """
    symbol: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.symbol is not None and not isinstance(self.symbol, str):
            raise ConfigurationError(f"Symbol must be a string, got {type(self.symbol).__name__}")

    @classmethod
    def from_dict(cls: Type[ConfigT], data: Optional[Dict[str, Any]]) -> ConfigT:
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            name = camel_to_snake(key)
            if name in known:
                values[name] = value
        if not values.get('symbol'):
            values['symbol'] = None
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid {cls.__name__}: {e}", cause=e) from e

    def to_dict(self) -> Dict[str, Any]:
        return {snake_to_camel(f.name): getattr(self, f.name) for f in fields(self)}

    def _require_positive(self, *names: str) -> None:
        for name in names:
            value = getattr(self, name)
            if value is None or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{type(self).__name__}.{name} must be positive, got {value!r}")


@dataclass
class StrategyContext:
    """Сервисы, которые получает каждая стратегия"""
    exchange: ExchangeClient
    db: Database
    user_id: str = "default"
    risk_calculator: Optional[Any] = None
    settings: Settings = field(default_factory=get_settings)


# ============================================================================
# BASE STRATEGY CLASS
# ============================================================================

class BaseStrategy(ABC):
    """
    Базовый класс стратегий.

    Наследник задает ``strategy_type``, ``config_class`` и реализует
    сигнальные функции ``evaluate_entry`` / ``evaluate_exit``: они чистые
    относительно ``SignalContext`` и поэтому используются и на живом рынке,
    и в бэктесте. ``execute`` никогда не пробрасывает исключения.
    """

    strategy_type: StrategyType
    config_class: Type[StrategyConfig] = StrategyConfig

    # свечи для сигналов (0 если стратегии они не нужны)
    signal_interval: str = "1h"
    signal_candles: int = 0

    def __init__(
        self,
        strategy_id: str,
        name: str,
        config: Union[StrategyConfig, Dict[str, Any], None],
        context: StrategyContext,
    ):
        self.strategy_id = strategy_id
        self.name = name
        self.context = context
        self.config = config if isinstance(config, self.config_class) else self.config_class.from_dict(
            config if isinstance(config, dict) else {}
        )
        self.state = StrategyState.STOPPED

        self.logger = get_strategy_logger(self.strategy_type.value, strategy_id)
        self.logger.info(f"🎯 Strategy initialized: {self.name} ({self.strategy_type.value}) "
                         f"symbol={self.config.symbol or 'auto'}")

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def exchange(self) -> ExchangeClient:
        return self.context.exchange

    @property
    def db(self) -> Database:
        return self.context.db

    @property
    def user_id(self) -> str:
        return self.context.user_id

    @property
    def is_active(self) -> bool:
        return self.state == StrategyState.ACTIVE

    @property
    def symbol(self) -> Optional[str]:
        return self.config.symbol

    # ========================================================================
    # CONTRACT
    # ========================================================================

    async def initialize(self) -> None:
        """Подготовка перед стартом; ошибки здесь не фатальны"""
        return None

    @abstractmethod
    async def run_tick(self, symbol: str, pair: Optional[PairInfo]) -> ExecutionResult:
        """Логика одного тика для уже определенного символа"""

    @abstractmethod
    def evaluate_entry(self, ctx: SignalContext) -> bool:
        """Есть ли сигнал на вход"""

    @abstractmethod
    def evaluate_exit(self, position: PositionView, ctx: SignalContext) -> Optional[str]:
        """Причина выхода из позиции или None"""

    def entry_levels(self, entry_price: float, ctx: SignalContext) -> Tuple[Optional[float], Optional[float]]:
        """(stop_loss, take_profit) для новой позиции"""
        return None, None

    async def on_position_opened(self, position: Position) -> None:
        return None

    async def on_position_closed(self, position_id: str, exit_result: ExitResult) -> None:
        return None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        """stopped -> active; сохраняет флаг активности"""
        if self.is_active:
            raise ConfigurationError(f"Strategy {self.strategy_id} is already active")

        try:
            await self.initialize()
        except Exception as e:
            self.logger.warning(f"⚠️ Initialization failed but continuing: {e}")

        self.state = StrategyState.ACTIVE
        await self.db.set_strategy_active(self.strategy_id, True)
        self.logger.info(f"▶️ Strategy started: {self.name}")

    async def stop(self) -> None:
        """active -> stopped; уже начатый тик доработает до конца"""
        self.state = StrategyState.STOPPED
        await self.db.set_strategy_active(self.strategy_id, False)
        self.logger.info(f"⏹️ Strategy stopped: {self.name}")

    async def update_config(self, config: Union[StrategyConfig, Dict[str, Any]]) -> None:
        """Замена конфигурации целиком (новый неизменяемый объект)"""
        if isinstance(config, dict):
            merged = {**self.config.to_dict(), **config}
            new_config = self.config_class.from_dict(merged)
        else:
            new_config = config

        record = await self.db.get_strategy(self.strategy_id)
        stored = dict(record.config or {}) if record else {}
        stored.update(new_config.to_dict())
        await self.db.update_strategy(self.strategy_id, config=stored)

        self.config = new_config
        self.logger.info(f"🔄 Config updated: {self.name}")

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def resolve_symbol(self, pair: Optional[PairInfo] = None) -> Optional[str]:
        return self.config.symbol or (pair.symbol if pair else None)

    async def execute(self, pair: Optional[PairInfo] = None) -> ExecutionResult:
        """
        Один тик. Если символ не задан и пара не передана, тик пропускается.
        Любая ошибка возвращается как неуспешный результат.
        """
        symbol = self.resolve_symbol(pair)
        if not symbol:
            return ExecutionResult(success=False, message="No symbol specified")

        try:
            return await self.run_tick(symbol, pair)
        except Exception as e:
            self.logger.error(f"❌ Error in {self.name} execution: {e}")
            return ExecutionResult(success=False, message=str(e))

    async def should_enter(self, pair: PairInfo) -> bool:
        symbol = self.resolve_symbol(pair)
        if not symbol:
            return False
        try:
            ctx = await self.build_context(symbol)
            return self.evaluate_entry(ctx)
        except Exception as e:
            self.logger.error(f"❌ Error checking entry condition: {e}")
            return False

    async def should_exit(self, position_id: str) -> bool:
        try:
            position = await self.db.get_position(position_id)
            if position is None or not position.is_open:
                return False
            ctx = await self.build_context(position.symbol)
            return self.evaluate_exit(PositionView.from_model(position), ctx) is not None
        except Exception as e:
            self.logger.error(f"❌ Error checking exit condition: {e}")
            return False

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def build_context(self, symbol: str, price: Optional[float] = None) -> SignalContext:
        candles: List[Kline] = []
        if self.signal_candles > 0:
            candles = await self.exchange.get_klines(symbol, self.signal_interval, self.signal_candles)

        if price is None:
            price = await self.exchange.get_price(symbol)

        positions = await self.get_open_positions(symbol)
        return SignalContext(
            symbol=symbol,
            price=price,
            now=get_current_utc_datetime(),
            candles=candles,
            positions=[PositionView.from_model(p) for p in positions],
            last_entry_time=self.last_entry_time(),
        )

    def last_entry_time(self) -> Optional[datetime]:
        return None

    async def get_positions(self) -> List[Position]:
        return await self.db.get_positions(strategy_id=self.strategy_id)

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        return await self.db.get_positions(strategy_id=self.strategy_id, is_open=True, symbol=symbol)

    async def check_risk(self, symbol: str, quantity: float, price: float) -> Optional[str]:
        """Причина отказа риск-модуля или None"""
        risk = self.context.risk_calculator
        if risk is None:
            return None
        result = await risk.check_trade_risk(self.user_id, symbol, quantity, price, OrderSide.BUY.value)
        return None if result.allowed else result.reason

    async def open_position(
        self,
        symbol: str,
        order: OrderResult,
        fallback_price: Optional[float] = None,
        levels: Optional[Any] = None,
    ) -> Tuple[Position, float]:
        """
        Запись входа по результату buy-ордера: позиция, затем сделка.

        Комиссия в базовом активе уменьшает количество позиции, чтобы
        последующая продажа не превышала фактический остаток.
        ``levels`` это функция цена -> (stop_loss, take_profit).
        """
        executed = await resolve_executed(self.exchange, order)
        price = executed.price if executed.price > 0 else (fallback_price or 0.0)
        if price <= 0 or executed.qty <= 0:
            raise ValueError(f"Invalid execution for order {order.order_id}: "
                             f"price={executed.price}, qty={executed.qty}")

        fee, fee_asset = order_fee(order, symbol)
        quantity = executed.qty
        if fee_asset == extract_base_asset(symbol):
            quantity -= fee
        quantity = floor_to_decimals(quantity)

        stop_loss, take_profit = levels(price) if levels else (None, None)

        position = await self.db.create_position(
            strategy_id=self.strategy_id,
            symbol=symbol,
            side=OrderSide.BUY.value,
            quantity=quantity,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        await self.db.save_trade(
            strategy_id=self.strategy_id,
            position_id=position.id,
            symbol=symbol,
            side=OrderSide.BUY.value,
            order_type=order.type.value if isinstance(order.type, OrderType) else str(order.type),
            quantity=executed.qty,
            price=price,
            fee=fee,
            fee_asset=fee_asset,
            exchange_order_id=order.order_id,
            status=order.status or OrderStatus.FILLED.value,
        )

        await self.on_position_opened(position)
        return position, price

    async def close_position(self, position_id: str, reason: str) -> Optional[ExitResult]:
        """Рыночный выход через общую процедуру и уведомление наследника"""
        exit_result = await close_position_at_market(self.exchange, self.db, position_id, reason)
        if exit_result is None:
            return None

        risk = self.context.risk_calculator
        if risk is not None:
            await risk.record_realized_loss(self.user_id, exit_result.pnl)

        await self.on_position_closed(position_id, exit_result)
        return exit_result

    async def exit_result(self, position_id: str, reason: str) -> ExecutionResult:
        exit_result = await self.close_position(position_id, reason)
        if exit_result is None:
            return ExecutionResult(success=False, message="Position not found or already closed")
        return ExecutionResult(
            success=True,
            message=f"Position closed with {exit_result.pnl_percent:.2f}% PnL ({reason})",
            order_id=exit_result.order_id,
            position_id=position_id,
            positions_closed=1,
        )

    async def quote_balance(self) -> float:
        balance = await self.exchange.get_balance(QUOTE_ASSET)
        return balance.free if balance else 0.0

    # ========================================================================
    # STATUS
    # ========================================================================

    def get_status(self) -> Dict[str, Any]:
        return {
            'id': self.strategy_id,
            'name': self.name,
            'type': self.strategy_type.value,
            'symbol': self.symbol,
            'state': self.state.value,
            'isActive': self.is_active,
            'config': self.config.to_dict(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.name}, {self.symbol or 'auto'})"

    def __repr__(self) -> str:
        return (f"<{self.__class__.__name__}(id={self.strategy_id}, "
                f"symbol={self.symbol}, state={self.state.value})>")
