"""
Spot Trading Engine Strategy Manager
Загрузка стратегий из хранилища, запуск/остановка и цикл исполнения
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Set

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient, PairInfo
from data.database import Database
from data.models import Strategy
from services.pair_selector import PairSelector
from strategies import BaseStrategy, StrategyContext, ExecutionResult, StrategyRegistry
from utils.helpers import (
    ConfigurationError, NotFoundError, StrategyExecutionError, get_current_utc_datetime, Timer
)
from utils.logger import setup_logger, log_trading_event


# ============================================================================
# EVENTS
# ============================================================================

class StrategyEventType(str, Enum):
    LOADED = "strategy:loaded"
    UNLOADED = "strategy:unloaded"
    STARTED = "strategy:started"
    STOPPED = "strategy:stopped"
    EXECUTED = "strategy:executed"
    ERROR = "strategy:error"


@dataclass
class StrategyEvent:
    type: StrategyEventType
    strategy_id: str
    timestamp: datetime = field(default_factory=get_current_utc_datetime)
    result: Optional[ExecutionResult] = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'strategyId': self.strategy_id,
            'timestamp': self.timestamp.isoformat(),
            'result': self.result.to_dict() if self.result else None,
            'error': str(self.error) if self.error else None,
        }


class StrategyEventObserver(ABC):
    """Подписчик на события менеджера стратегий"""

    @abstractmethod
    async def on_strategy_event(self, event: StrategyEvent) -> None:
        ...


class LoggingEventObserver(StrategyEventObserver):
    """Пишет события менеджера в торговый лог"""

    async def on_strategy_event(self, event: StrategyEvent) -> None:
        if event.type == StrategyEventType.EXECUTED:
            return
        log_trading_event(
            event.type.value.upper().replace(':', '_'),
            f"{event.type.value} {event.strategy_id}" + (f": {event.error}" if event.error else ""),
            strategy_id=event.strategy_id,
        )


# ============================================================================
# STRATEGY MANAGER
# ============================================================================

class StrategyManager:
    """
    Владеет загруженными экземплярами стратегий.

    Цикл исполнения раз в ``execution_interval_ms`` проходит по активным
    стратегиям последовательно; стратегии без символа получают одну общую
    лучшую пару этого тика. Исключение одной стратегии не мешает остальным.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        db: Database,
        pair_selector: Optional[PairSelector] = None,
        risk_calculator: Optional[Any] = None,
        settings: Optional[Settings] = None,
    ):
        self.exchange = exchange
        self.db = db
        self.pair_selector = pair_selector
        self.risk_calculator = risk_calculator
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.StrategyManager")

        self.execution_interval_ms = self.settings.STRATEGY_EXECUTION_INTERVAL
        self._strategies: Dict[str, BaseStrategy] = {}
        self._observers: List[StrategyEventObserver] = []

        self._is_running = False
        self._tasks: Set[asyncio.Task] = set()

    # ========================================================================
    # OBSERVERS
    # ========================================================================

    def add_observer(self, observer: StrategyEventObserver) -> None:
        self._observers.append(observer)

    async def _emit(self, event: StrategyEvent) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_strategy_event(event)
            except Exception as e:
                self.logger.error(f"❌ Observer {observer.__class__.__name__} failed on {event.type.value}: {e}")

    # ========================================================================
    # LOADING
    # ========================================================================

    def _context_for(self, record: Strategy) -> StrategyContext:
        return StrategyContext(
            exchange=self.exchange,
            db=self.db,
            user_id=record.user_id,
            risk_calculator=self.risk_calculator,
            settings=self.settings,
        )

    async def load_strategy(self, strategy_id: str) -> BaseStrategy:
        """
        Создание экземпляра по записи в БД. Символ из колонки имеет приоритет
        над полем конфигурации. Активная в БД стратегия сразу запускается.
        """
        if strategy_id in self._strategies:
            raise ConfigurationError(f"Strategy {strategy_id} already loaded", strategy_id=strategy_id)

        record = await self.db.get_strategy(strategy_id)
        if record is None:
            raise NotFoundError(f"Strategy {strategy_id} not found", strategy_id=strategy_id)

        config = dict(record.config or {})
        if record.symbol:
            config['symbol'] = record.symbol

        strategy = StrategyRegistry.create_strategy(
            record.type, record.id, record.name, config, self._context_for(record)
        )
        self._strategies[strategy_id] = strategy
        await self._emit(StrategyEvent(StrategyEventType.LOADED, strategy_id))

        if record.is_active:
            await strategy.start()
            await self._emit(StrategyEvent(StrategyEventType.STARTED, strategy_id))

        self.logger.info(f"✅ Strategy loaded: {strategy}")
        return strategy

    async def unload_strategy(self, strategy_id: str) -> None:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise NotFoundError(f"Strategy {strategy_id} not loaded", strategy_id=strategy_id)

        if strategy.is_active:
            await strategy.stop()
            await self._emit(StrategyEvent(StrategyEventType.STOPPED, strategy_id))

        del self._strategies[strategy_id]
        await self._emit(StrategyEvent(StrategyEventType.UNLOADED, strategy_id))
        self.logger.info(f"🗑️ Strategy unloaded: {strategy_id}")

    async def load_all_strategies_from_db(self, user_id: Optional[str] = None) -> int:
        """Загрузка всех сохраненных стратегий; ошибка одной не прерывает остальные"""
        loaded = 0
        for record in await self.db.list_strategies(user_id=user_id):
            if record.id in self._strategies:
                continue
            try:
                await self.load_strategy(record.id)
                loaded += 1
            except Exception as e:
                self.logger.error(f"❌ Failed to load strategy {record.id} ({record.type}): {e}")
        self.logger.info(f"📊 Loaded {loaded} strategies from database")
        return loaded

    # ========================================================================
    # START / STOP
    # ========================================================================

    def get_strategy(self, strategy_id: str) -> Optional[BaseStrategy]:
        return self._strategies.get(strategy_id)

    def get_loaded_strategies(self) -> List[BaseStrategy]:
        return list(self._strategies.values())

    async def _get_or_load(self, strategy_id: str) -> BaseStrategy:
        return self._strategies.get(strategy_id) or await self.load_strategy(strategy_id)

    async def start_strategy(self, strategy_id: str) -> BaseStrategy:
        strategy = await self._get_or_load(strategy_id)
        if not strategy.is_active:
            await strategy.start()
            await self._emit(StrategyEvent(StrategyEventType.STARTED, strategy_id))
        return strategy

    async def stop_strategy(self, strategy_id: str) -> None:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            # Не загружена: достаточно сбросить флаг в БД
            await self.db.set_strategy_active(strategy_id, False)
            return
        if strategy.is_active:
            await strategy.stop()
            await self._emit(StrategyEvent(StrategyEventType.STOPPED, strategy_id))

    async def reload_strategy(self, strategy_id: str) -> BaseStrategy:
        """Пересоздание экземпляра после изменения записи в БД"""
        if strategy_id in self._strategies:
            del self._strategies[strategy_id]
        return await self.load_strategy(strategy_id)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def set_execution_interval(self, interval_ms: int) -> None:
        if interval_ms <= 0:
            raise ConfigurationError(f"Execution interval must be positive: {interval_ms}")
        self.execution_interval_ms = interval_ms
        self.logger.info(f"🔄 Execution interval set to {interval_ms}ms")

    async def _shared_pair(self, strategies: List[BaseStrategy]) -> Optional[PairInfo]:
        if self.pair_selector is None or all(s.symbol for s in strategies):
            return None
        try:
            return await self.pair_selector.get_best_pair()
        except Exception as e:
            self.logger.error(f"❌ Failed to select best pair: {e}")
            return None

    async def execute_all(self) -> Dict[str, ExecutionResult]:
        """Один тик по всем активным стратегиям"""
        active = [strategy for strategy in self._strategies.values() if strategy.is_active]
        if not active:
            return {}

        pair = await self._shared_pair(active)
        results: Dict[str, ExecutionResult] = {}

        with Timer("strategy_tick"):
            for strategy in active:
                try:
                    result = await strategy.execute(pair)
                    results[strategy.strategy_id] = result
                    await self._emit(StrategyEvent(StrategyEventType.EXECUTED, strategy.strategy_id,
                                                   result=result))
                except Exception as e:
                    error = StrategyExecutionError(strategy.strategy_id, str(e), cause=e)
                    self.logger.error(f"❌ Strategy {strategy.strategy_id} failed: {e}")
                    results[strategy.strategy_id] = ExecutionResult(success=False, message=str(e))
                    await self._emit(StrategyEvent(StrategyEventType.ERROR, strategy.strategy_id, error=error))

        return results

    def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        task = asyncio.create_task(self._execution_loop(), name="strategy_execution")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self) -> None:
        self._is_running = False
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _execution_loop(self) -> None:
        self.logger.info(f"🔄 Strategy execution loop started (interval: {self.execution_interval_ms}ms)")

        while self._is_running:
            try:
                await self.execute_all()
                await asyncio.sleep(self.execution_interval_ms / 1000)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"❌ Strategy execution loop error: {e}")
                await asyncio.sleep(self.execution_interval_ms / 1000)

        self.logger.info("⏹️ Strategy execution loop stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            'isRunning': self._is_running,
            'executionInterval': self.execution_interval_ms,
            'loaded': len(self._strategies),
            'active': sum(1 for s in self._strategies.values() if s.is_active),
            'strategies': [s.get_status() for s in self._strategies.values()],
        }
