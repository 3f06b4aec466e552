"""
Spot Trading Engine Database
Async SQLAlchemy хранилище и журнал позиций/сделок
"""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

import aiosqlite
from sqlalchemy import select, update, delete, func, text, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.settings import Settings, get_settings
from data.models import (
    Base, Strategy, Position, Trade, RiskLimits, TradingPair, MarketData, BacktestResult,
    utc_now
)
from utils.helpers import (
    DataIntegrityError, NotFoundError, to_decimal, is_finite_number, ensure_utc,
    extract_base_asset, QUOTE_ASSET
)
from utils.logger import setup_logger, log_trading_event


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

SQLITE_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA cache_size=10000",
    "PRAGMA temp_store=memory",
    "PRAGMA foreign_keys=ON",
]

STRATEGY_UPDATABLE_FIELDS = {'name', 'symbol', 'config', 'is_active'}
RISK_LIMIT_FIELDS = {
    'max_position_size_percent', 'stop_loss_percent', 'take_profit_percent',
    'daily_loss_limit_percent', 'max_concurrent_positions',
}


# ============================================================================
# ОСНОВНОЙ КЛАСС БД
# ============================================================================

class Database:
    """
    Хранилище движка.

    Единственные методы, изменяющие позиции и сделки: ``create_position``,
    ``save_trade``, ``close_position`` и обновление рыночной цены позиции.
    Денежные значения нормализуются через ``to_decimal`` перед записью.
    """

    def __init__(self, settings: Optional[Settings] = None, database_url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.Database")

        self.async_database_url = database_url or self.settings.database_async_url

        self.async_engine = None
        self.async_session_factory: Optional[async_sessionmaker] = None

        self._initialized = False

    @property
    def is_memory(self) -> bool:
        return ':memory:' in self.async_database_url

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Создание engine, таблиц и применение настроек SQLite"""
        if self._initialized:
            return

        try:
            self.logger.info("🗄️ Initializing database connection...")

            if self.async_database_url.startswith('sqlite') and not self.is_memory:
                self._sqlite_path().parent.mkdir(parents=True, exist_ok=True)

            engine_kwargs: Dict[str, Any] = {'echo': self.settings.DATABASE_ECHO}
            if self.async_database_url.startswith('sqlite'):
                engine_kwargs['poolclass'] = StaticPool
                engine_kwargs['connect_args'] = {'check_same_thread': False}

            self.async_engine = create_async_engine(self.async_database_url, **engine_kwargs)
            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            await self._create_tables()
            await self._optimize_sqlite()

            self._initialized = True
            await self._check_connection()

            self.logger.info("✅ Database initialized successfully")

        except Exception as e:
            self.logger.error(f"❌ Failed to initialize database: {e}")
            raise

    async def close(self) -> None:
        if self.async_engine:
            await self.async_engine.dispose()
        self._initialized = False
        self.logger.info("✅ Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Сессия с commit при успехе и rollback при ошибке"""
        if not self._initialized:
            await self.init()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                self.logger.error(f"❌ Database session error: {e}")
                raise

    # ============================================================================
    # ПРИВАТНЫЕ МЕТОДЫ ИНИЦИАЛИЗАЦИИ
    # ============================================================================

    def _sqlite_path(self) -> Path:
        return Path(self.async_database_url.split(':///', 1)[-1])

    async def _create_tables(self) -> None:
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info(f"📊 Database tables: {', '.join(sorted(Base.metadata.tables))}")

    async def _optimize_sqlite(self) -> None:
        """PRAGMA для файловой SQLite базы"""
        if not self.async_database_url.startswith('sqlite') or self.is_memory:
            return
        try:
            async with aiosqlite.connect(str(self._sqlite_path())) as conn:
                for pragma in SQLITE_PRAGMA_SETTINGS:
                    await conn.execute(pragma)
                await conn.commit()
            self.logger.debug("🔧 SQLite optimizations applied")
        except Exception as e:
            self.logger.warning(f"⚠️ Failed to apply SQLite optimizations: {e}")

    async def _check_connection(self) -> None:
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self._check_connection()
            return {'healthy': True}
        except Exception as e:
            return {'healthy': False, 'error': str(e)}

    # ============================================================================
    # СТРАТЕГИИ
    # ============================================================================

    async def create_strategy(
        self,
        user_id: str,
        strategy_type: str,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        symbol: Optional[str] = None,
        is_active: bool = False,
    ) -> Strategy:
        async with self.get_session() as session:
            strategy = Strategy(
                user_id=user_id,
                type=strategy_type,
                name=name,
                symbol=symbol,
                config=config or {},
                is_active=is_active,
            )
            session.add(strategy)
            await session.flush()
            self.logger.info(f"💾 Strategy saved: {name} ({strategy_type}, id: {strategy.id})")
            return strategy

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        async with self.get_session() as session:
            return await session.get(Strategy, strategy_id)

    async def list_strategies(self, user_id: Optional[str] = None, active_only: bool = False) -> List[Strategy]:
        async with self.get_session() as session:
            query = select(Strategy).order_by(Strategy.created_at.desc())
            if user_id:
                query = query.where(Strategy.user_id == user_id)
            if active_only:
                query = query.where(Strategy.is_active.is_(True))
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_strategy(self, strategy_id: str, **fields) -> Strategy:
        """Обновление разрешенных полей; config заменяется целиком"""
        unknown = set(fields) - STRATEGY_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update strategy fields: {', '.join(sorted(unknown))}")

        async with self.get_session() as session:
            strategy = await session.get(Strategy, strategy_id)
            if strategy is None:
                raise NotFoundError(f"Strategy {strategy_id} not found")
            for key, value in fields.items():
                setattr(strategy, key, value)
            strategy.updated_at = utc_now()
            await session.flush()
            return strategy

    async def set_strategy_active(self, strategy_id: str, is_active: bool) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(Strategy)
                .where(Strategy.id == strategy_id)
                .values(is_active=is_active, updated_at=utc_now())
            )

    async def delete_strategy(self, strategy_id: str) -> bool:
        """
        Удаление стратегии вместе с ее сделками и позициями
        """
        async with self.get_session() as session:
            strategy = await session.get(Strategy, strategy_id)
            if strategy is None:
                return False
            await session.execute(delete(Trade).where(Trade.strategy_id == strategy_id))
            await session.execute(delete(Position).where(Position.strategy_id == strategy_id))
            await session.delete(strategy)
            self.logger.info(f"🗑️ Strategy deleted: {strategy_id}")
            return True

    # ============================================================================
    # ПОЗИЦИИ
    # ============================================================================

    async def create_position(
        self,
        strategy_id: str,
        symbol: str,
        side: str,
        quantity: float,
        entry_price: float,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> Position:
        """Открытие позиции; текущая цена равна цене входа"""
        if not is_finite_number(entry_price) or float(entry_price) <= 0:
            raise DataIntegrityError(f"Refuse to open position with non-positive entry price: {entry_price}",
                                     symbol=symbol)
        if not is_finite_number(quantity) or float(quantity) <= 0:
            raise DataIntegrityError(f"Refuse to open position with non-positive quantity: {quantity}",
                                     symbol=symbol)

        async with self.get_session() as session:
            position = Position(
                strategy_id=strategy_id,
                symbol=symbol,
                side=side,
                quantity=to_decimal(quantity),
                entry_price=to_decimal(entry_price),
                current_price=to_decimal(entry_price),
                stop_loss=to_decimal(stop_loss, default=None),
                take_profit=to_decimal(take_profit, default=None),
                unrealized_pnl=to_decimal(0),
                unrealized_pnl_percent=to_decimal(0),
                is_open=True,
                opened_at=utc_now(),
            )
            session.add(position)
            await session.flush()

        log_trading_event(
            "POSITION_OPENED", f"📈 Position opened: {side} {quantity} {symbol} @ {entry_price}",
            symbol=symbol, strategy_id=strategy_id, position_id=position.id,
        )
        return position

    async def close_position(self, position_id: str, close_price: float) -> Optional[Position]:
        """
        Закрытие позиции. Условие ``is_open`` проверяется в самом UPDATE,
        поэтому ``closed_at`` выставляется ровно один раз; для уже закрытой
        позиции возвращается None.
        """
        if not is_finite_number(close_price) or float(close_price) <= 0:
            raise DataIntegrityError(f"Refuse to close position with non-positive price: {close_price}",
                                     position_id=position_id)

        async with self.get_session() as session:
            result = await session.execute(
                update(Position)
                .where(and_(Position.id == position_id, Position.is_open.is_(True)))
                .values(
                    is_open=False,
                    closed_at=utc_now(),
                    current_price=to_decimal(close_price),
                    unrealized_pnl=to_decimal(0),
                    unrealized_pnl_percent=to_decimal(0),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.logger.debug(f"Position {position_id} already closed or missing")
                return None

            position = await session.get(Position, position_id, populate_existing=True)

        log_trading_event(
            "POSITION_CLOSED", f"📉 Position closed @ {close_price}",
            symbol=position.symbol, strategy_id=position.strategy_id, position_id=position_id,
        )
        return position

    async def update_position_market(self, position_id: str, current_price: float) -> Optional[Position]:
        """Обновление текущей цены и нереализованного P&L открытой позиции"""
        if not is_finite_number(current_price) or float(current_price) <= 0:
            return None

        async with self.get_session() as session:
            position = await session.get(Position, position_id)
            if position is None or not position.is_open:
                return None

            entry = float(position.entry_price)
            pnl = (float(current_price) - entry) * float(position.quantity)
            pnl_percent = (float(current_price) - entry) / entry * 100 if entry > 0 else 0.0

            position.current_price = to_decimal(current_price)
            position.unrealized_pnl = to_decimal(pnl)
            position.unrealized_pnl_percent = to_decimal(pnl_percent)
            await session.flush()
            return position

    async def update_position_levels(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> Optional[Position]:
        """Изменение стоп-лосса и/или тейк-профита открытой позиции"""
        async with self.get_session() as session:
            position = await session.get(Position, position_id)
            if position is None or not position.is_open:
                return None
            if stop_loss is not None:
                position.stop_loss = to_decimal(stop_loss, default=None)
            if take_profit is not None:
                position.take_profit = to_decimal(take_profit, default=None)
            await session.flush()
            return position

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self.get_session() as session:
            return await session.get(Position, position_id)

    async def get_positions(
        self,
        strategy_id: Optional[str] = None,
        is_open: Optional[bool] = None,
        symbol: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Position]:
        async with self.get_session() as session:
            query = select(Position).order_by(Position.opened_at.desc())
            if strategy_id:
                query = query.where(Position.strategy_id == strategy_id)
            if is_open is not None:
                query = query.where(Position.is_open.is_(is_open))
            if symbol:
                query = query.where(Position.symbol == symbol)
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_open_positions(self, strategy_id: Optional[str] = None) -> List[Position]:
        return await self.get_positions(strategy_id=strategy_id, is_open=True)

    async def get_open_positions_for_user(self, user_id: str) -> List[Position]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Position)
                .join(Strategy, Strategy.id == Position.strategy_id)
                .where(Strategy.user_id == user_id, Position.is_open.is_(True))
            )
            return list(result.scalars().all())

    # ============================================================================
    # СДЕЛКИ
    # ============================================================================

    async def save_trade(
        self,
        strategy_id: str,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        price: float,
        fee: float = 0.0,
        fee_asset: Optional[str] = None,
        pnl: float = 0.0,
        pnl_percent: float = 0.0,
        exchange_order_id: Optional[str] = None,
        status: str = "FILLED",
        position_id: Optional[str] = None,
    ) -> Trade:
        """
        Запись сделки. Цена должна быть конечной и строго положительной,
        иначе ``DataIntegrityError`` и ничего не сохраняется.
        """
        if not is_finite_number(price) or float(price) <= 0:
            raise DataIntegrityError(f"Refuse to save trade with non-positive price: {price}",
                                     symbol=symbol, strategy_id=strategy_id)

        async with self.get_session() as session:
            trade = Trade(
                position_id=position_id,
                strategy_id=strategy_id,
                symbol=symbol,
                side=side,
                order_type=order_type,
                quantity=to_decimal(quantity),
                price=to_decimal(price),
                fee=to_decimal(fee),
                fee_asset=fee_asset,
                pnl=to_decimal(pnl),
                pnl_percent=to_decimal(pnl_percent),
                exchange_order_id=str(exchange_order_id) if exchange_order_id is not None else None,
                status=status,
                executed_at=utc_now(),
            )
            session.add(trade)
            await session.flush()

        log_trading_event(
            "TRADE_SAVED", f"💾 Trade saved: {side} {quantity} {symbol} @ {price}",
            symbol=symbol, strategy_id=strategy_id, pnl=pnl,
        )
        return trade

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        async with self.get_session() as session:
            return await session.get(Trade, trade_id)

    async def get_trades(
        self,
        strategy_id: Optional[str] = None,
        symbol: Optional[str] = None,
        limit: int = 100,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Сделки с именем стратегии, новые первыми"""
        async with self.get_session() as session:
            query = (
                select(Trade, Strategy.name)
                .join(Strategy, Strategy.id == Trade.strategy_id, isouter=True)
                .order_by(Trade.executed_at.desc())
            )
            query = self._filter_trades(query, strategy_id, symbol, since)
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)

            trades = []
            for trade, strategy_name in result.all():
                data = trade.to_dict()
                data['strategyName'] = strategy_name
                trades.append(data)
            return trades

    async def count_trades(self, strategy_id: Optional[str] = None, symbol: Optional[str] = None) -> int:
        async with self.get_session() as session:
            query = self._filter_trades(select(func.count(Trade.id)), strategy_id, symbol, None)
            return int((await session.execute(query)).scalar_one())

    async def get_trade_records(
        self,
        strategy_id: Optional[str] = None,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[Trade]:
        """ORM-записи сделок в хронологическом порядке (для аналитики)"""
        async with self.get_session() as session:
            query = select(Trade).order_by(Trade.executed_at.asc())
            if user_id:
                query = query.join(Strategy, Strategy.id == Trade.strategy_id).where(Strategy.user_id == user_id)
            query = self._filter_trades(query, strategy_id, None, since)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_realized_pnl_since(self, user_id: str, since: datetime) -> float:
        """Сумма реализованного P&L сделок пользователя с момента ``since``"""
        async with self.get_session() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(Trade.pnl), 0))
                .join(Strategy, Strategy.id == Trade.strategy_id)
                .where(Strategy.user_id == user_id, Trade.executed_at >= since)
            )
            return float(result.scalar_one() or 0)

    @staticmethod
    def _filter_trades(query, strategy_id, symbol, since):
        if strategy_id:
            query = query.where(Trade.strategy_id == strategy_id)
        if symbol:
            query = query.where(Trade.symbol == symbol)
        if since is not None:
            query = query.where(Trade.executed_at >= since)
        return query

    # ============================================================================
    # РИСК-ЛИМИТЫ
    # ============================================================================

    async def get_risk_limits(self, user_id: str) -> Optional[RiskLimits]:
        async with self.get_session() as session:
            result = await session.execute(select(RiskLimits).where(RiskLimits.user_id == user_id))
            return result.scalar_one_or_none()

    async def upsert_risk_limits(self, user_id: str, **values) -> RiskLimits:
        unknown = set(values) - RISK_LIMIT_FIELDS
        if unknown:
            raise ValueError(f"Unknown risk limit fields: {', '.join(sorted(unknown))}")

        async with self.get_session() as session:
            result = await session.execute(select(RiskLimits).where(RiskLimits.user_id == user_id))
            limits = result.scalar_one_or_none()
            if limits is None:
                limits = RiskLimits(user_id=user_id, daily_loss_amount=to_decimal(0), last_reset_date=utc_now())
                session.add(limits)
            for key, value in values.items():
                setattr(limits, key, value)
            limits.updated_at = utc_now()
            await session.flush()
            return limits

    async def record_daily_loss(self, user_id: str, loss_amount: float) -> Optional[RiskLimits]:
        """
        Добавление убытка в дневной накопитель; при смене дня (UTC)
        накопитель сначала обнуляется.
        """
        async with self.get_session() as session:
            result = await session.execute(select(RiskLimits).where(RiskLimits.user_id == user_id))
            limits = result.scalar_one_or_none()
            if limits is None:
                return None

            now = utc_now()
            last_reset = ensure_utc(limits.last_reset_date)
            if last_reset is None or last_reset.date() != now.date():
                limits.daily_loss_amount = to_decimal(0)
                limits.last_reset_date = now

            current = float(limits.daily_loss_amount or 0)
            limits.daily_loss_amount = to_decimal(current + max(0.0, float(loss_amount)))
            await session.flush()
            return limits

    # ============================================================================
    # ТОРГОВЫЕ ПАРЫ
    # ============================================================================

    async def upsert_trading_pairs(self, pairs: Iterable[Dict[str, Any]]) -> int:
        """Upsert кеша пар по symbol"""
        count = 0
        async with self.get_session() as session:
            for pair in pairs:
                symbol = pair['symbol']
                result = await session.execute(select(TradingPair).where(TradingPair.symbol == symbol))
                record = result.scalar_one_or_none()
                if record is None:
                    record = TradingPair(
                        symbol=symbol,
                        base_asset=pair.get('base_asset') or extract_base_asset(symbol),
                        quote_asset=pair.get('quote_asset') or QUOTE_ASSET,
                    )
                    session.add(record)
                record.price = to_decimal(pair.get('price'), default=None)
                record.volume_24h = to_decimal(pair.get('volume_24h'), default=None)
                record.score = to_decimal(pair.get('score'), default=None)
                record.factors = pair.get('factors')
                record.is_active = True
                record.last_updated = utc_now()
                count += 1
        self.logger.debug(f"💾 Trading pairs upserted: {count}")
        return count

    async def get_trading_pair(self, symbol: str) -> Optional[TradingPair]:
        async with self.get_session() as session:
            result = await session.execute(select(TradingPair).where(TradingPair.symbol == symbol))
            return result.scalar_one_or_none()

    async def get_trading_pairs(self, limit: Optional[int] = None) -> List[TradingPair]:
        async with self.get_session() as session:
            query = (
                select(TradingPair)
                .where(TradingPair.is_active.is_(True))
                .order_by(TradingPair.score.desc())
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    # ============================================================================
    # РЫНОЧНЫЕ ДАННЫЕ
    # ============================================================================

    async def save_market_data(self, symbol: str, interval: str, klines: Iterable[Any]) -> int:
        """Сохранение свечей, уже существующие open_time пропускаются"""
        klines = list(klines)
        if not klines:
            return 0

        async with self.get_session() as session:
            open_times = [kline.open_time for kline in klines]
            result = await session.execute(
                select(MarketData.open_time).where(
                    MarketData.symbol == symbol,
                    MarketData.interval == interval,
                    MarketData.open_time.in_(open_times),
                )
            )
            existing = {ensure_utc(row) for row in result.scalars().all()}

            saved = 0
            for kline in klines:
                if ensure_utc(kline.open_time) in existing:
                    continue
                session.add(MarketData(
                    symbol=symbol,
                    interval=interval,
                    open_time=kline.open_time,
                    open=to_decimal(kline.open),
                    high=to_decimal(kline.high),
                    low=to_decimal(kline.low),
                    close=to_decimal(kline.close),
                    volume=to_decimal(kline.volume),
                ))
                saved += 1

        self.logger.debug(f"💾 Market data saved: {symbol} {interval} x{saved}")
        return saved

    async def get_market_data(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[MarketData]:
        async with self.get_session() as session:
            result = await session.execute(
                select(MarketData)
                .where(
                    MarketData.symbol == symbol,
                    MarketData.interval == interval,
                    MarketData.open_time >= start,
                    MarketData.open_time <= end,
                )
                .order_by(MarketData.open_time.asc())
            )
            return list(result.scalars().all())

    # ============================================================================
    # БЭКТЕСТЫ
    # ============================================================================

    async def save_backtest_result(self, result_data: Dict[str, Any]) -> BacktestResult:
        async with self.get_session() as session:
            record = BacktestResult(**result_data)
            session.add(record)
            await session.flush()
            self.logger.info(f"💾 Backtest result saved: {record.strategy_type} {record.symbol} (id: {record.id})")
            return record

    async def get_backtest_results(self, limit: int = 50, symbol: Optional[str] = None) -> List[BacktestResult]:
        async with self.get_session() as session:
            query = select(BacktestResult).order_by(BacktestResult.created_at.desc()).limit(limit)
            if symbol:
                query = query.where(BacktestResult.symbol == symbol)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_backtest_result(self, result_id: str) -> Optional[BacktestResult]:
        async with self.get_session() as session:
            return await session.get(BacktestResult, result_id)
