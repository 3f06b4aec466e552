"""
Spot Trading Engine Database Models
SQLAlchemy ORM модели: стратегии, позиции, сделки, риск-лимиты, пары, бэктесты
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Dict, Any, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Index,
    UniqueConstraint, CheckConstraint, JSON, DECIMAL
)
from sqlalchemy.orm import declarative_base, relationship, validates


# ============================================================================
# BASE CONFIGURATION
# ============================================================================

Base = declarative_base()


def generate_uuid():
    """Генерация UUID для записей"""
    return str(uuid.uuid4())


def utc_now():
    """Текущее время в UTC"""
    return datetime.now(timezone.utc)


def _num(value) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ============================================================================
# ENUMS
# ============================================================================

class StrategyType(str, PyEnum):
    """Поддерживаемые варианты стратегий"""
    GRID = "grid"
    DCA = "dca"
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean_reversion"


class OrderSide(str, PyEnum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, PyEnum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, PyEnum):
    """Статусы ордеров биржи"""
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


# ============================================================================
# СТРАТЕГИИ
# ============================================================================

class Strategy(Base):
    """
    Сохраненная стратегия пользователя.

    ``symbol`` пустой, если пара выбирается автоматически на каждом тике.
    """
    __tablename__ = 'strategies'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    symbol = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    positions = relationship("Position", back_populates="strategy")
    trades = relationship("Trade", back_populates="strategy")

    __table_args__ = (
        Index('idx_strategy_user_active', 'user_id', 'is_active'),
    )

    @validates('type')
    def validate_type(self, key, value):
        if value not in {item.value for item in StrategyType}:
            raise ValueError(f"Unknown strategy type: {value}")
        return value

    @validates('config')
    def validate_config(self, key, config):
        if not isinstance(config, dict):
            raise ValueError("Strategy config must be a dictionary")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'type': self.type,
            'name': self.name,
            'symbol': self.symbol,
            'isActive': self.is_active,
            'config': self.config or {},
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Strategy(id={self.id}, type={self.type}, symbol={self.symbol}, active={self.is_active})>"


# ============================================================================
# ПОЗИЦИИ И СДЕЛКИ
# ============================================================================

class Position(Base):
    """
    Позиция стратегии. После закрытия ``closed_at`` заполнен и ``is_open``
    больше не возвращается в True.
    """
    __tablename__ = 'positions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    strategy_id = Column(String(36), ForeignKey('strategies.id'), nullable=False, index=True)
    symbol = Column(String(50), nullable=False, index=True)
    side = Column(String(10), nullable=False)

    quantity = Column(DECIMAL(20, 8), nullable=False)
    entry_price = Column(DECIMAL(20, 8), nullable=False)
    current_price = Column(DECIMAL(20, 8), nullable=True)
    stop_loss = Column(DECIMAL(20, 8), nullable=True)
    take_profit = Column(DECIMAL(20, 8), nullable=True)
    unrealized_pnl = Column(DECIMAL(20, 8), default=0)
    unrealized_pnl_percent = Column(DECIMAL(12, 4), default=0)

    is_open = Column(Boolean, default=True, nullable=False)
    opened_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    strategy = relationship("Strategy", back_populates="positions")
    trades = relationship("Trade", back_populates="position")

    __table_args__ = (
        Index('idx_position_strategy_open', 'strategy_id', 'is_open'),
        CheckConstraint('quantity > 0', name='check_quantity_positive'),
        CheckConstraint('entry_price > 0', name='check_entry_price_positive'),
    )

    @property
    def market_value(self) -> float:
        price = self.current_price if self.current_price is not None else self.entry_price
        return float(price) * float(self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'strategyId': self.strategy_id,
            'symbol': self.symbol,
            'side': self.side,
            'quantity': _num(self.quantity),
            'entryPrice': _num(self.entry_price),
            'currentPrice': _num(self.current_price),
            'stopLoss': _num(self.stop_loss),
            'takeProfit': _num(self.take_profit),
            'unrealizedPnl': _num(self.unrealized_pnl),
            'unrealizedPnlPercent': _num(self.unrealized_pnl_percent),
            'isOpen': self.is_open,
            'openedAt': _iso(self.opened_at),
            'closedAt': _iso(self.closed_at),
        }

    def __repr__(self):
        return f"<Position(id={self.id}, symbol={self.symbol}, qty={self.quantity}, open={self.is_open})>"


class Trade(Base):
    """
    Исполненная сделка. Записи только добавляются.
    """
    __tablename__ = 'trades'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    position_id = Column(String(36), ForeignKey('positions.id'), nullable=True, index=True)
    strategy_id = Column(String(36), ForeignKey('strategies.id'), nullable=False, index=True)
    symbol = Column(String(50), nullable=False, index=True)
    side = Column(String(10), nullable=False)
    order_type = Column(String(20), nullable=False)

    quantity = Column(DECIMAL(20, 8), nullable=False)
    price = Column(DECIMAL(20, 8), nullable=False)
    fee = Column(DECIMAL(20, 8), default=0)
    fee_asset = Column(String(20), nullable=True)
    pnl = Column(DECIMAL(20, 8), default=0)
    pnl_percent = Column(DECIMAL(12, 4), default=0)

    exchange_order_id = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False)
    executed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    position = relationship("Position", back_populates="trades")
    strategy = relationship("Strategy", back_populates="trades")

    __table_args__ = (
        Index('idx_trade_strategy_time', 'strategy_id', 'executed_at'),
        CheckConstraint('price > 0', name='check_price_positive'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'positionId': self.position_id,
            'strategyId': self.strategy_id,
            'symbol': self.symbol,
            'side': self.side,
            'orderType': self.order_type,
            'quantity': _num(self.quantity),
            'price': _num(self.price),
            'fee': _num(self.fee),
            'feeAsset': self.fee_asset,
            'pnl': _num(self.pnl),
            'pnlPercent': _num(self.pnl_percent),
            'exchangeOrderId': self.exchange_order_id,
            'status': self.status,
            'executedAt': _iso(self.executed_at),
        }

    def __repr__(self):
        return f"<Trade(id={self.id}, symbol={self.symbol}, side={self.side}, price={self.price})>"


# ============================================================================
# РИСК-ЛИМИТЫ
# ============================================================================

class RiskLimits(Base):
    """
    Лимиты пользователя и накопитель дневного убытка
    """
    __tablename__ = 'risk_limits'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, unique=True)

    max_position_size_percent = Column(DECIMAL(6, 2), default=10, nullable=False)
    stop_loss_percent = Column(DECIMAL(6, 2), default=2.5, nullable=False)
    take_profit_percent = Column(DECIMAL(6, 2), default=5, nullable=False)
    daily_loss_limit_percent = Column(DECIMAL(6, 2), default=5, nullable=False)
    max_concurrent_positions = Column(Integer, default=5, nullable=False)

    daily_loss_amount = Column(DECIMAL(20, 8), default=0)
    last_reset_date = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('max_concurrent_positions > 0', name='check_max_positions_positive'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'maxPositionSizePercent': _num(self.max_position_size_percent),
            'stopLossPercent': _num(self.stop_loss_percent),
            'takeProfitPercent': _num(self.take_profit_percent),
            'dailyLossLimitPercent': _num(self.daily_loss_limit_percent),
            'maxConcurrentPositions': self.max_concurrent_positions,
            'dailyLossAmount': _num(self.daily_loss_amount),
            'lastResetDate': _iso(self.last_reset_date),
        }

    def __repr__(self):
        return f"<RiskLimits(user={self.user_id}, max_positions={self.max_concurrent_positions})>"


# ============================================================================
# РЫНОЧНЫЕ ДАННЫЕ
# ============================================================================

class TradingPair(Base):
    """
    Кеш оценки торговых пар, обновляется по расписанию
    """
    __tablename__ = 'trading_pairs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    symbol = Column(String(50), nullable=False, unique=True)
    base_asset = Column(String(20), nullable=False)
    quote_asset = Column(String(20), nullable=False)
    price = Column(DECIMAL(20, 8), nullable=True)
    volume_24h = Column(DECIMAL(24, 2), nullable=True)
    score = Column(DECIMAL(10, 4), nullable=True)
    factors = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    last_updated = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('score >= 0 AND score <= 100', name='check_score_range'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'baseAsset': self.base_asset,
            'quoteAsset': self.quote_asset,
            'price': _num(self.price),
            'volume24h': _num(self.volume_24h),
            'score': _num(self.score),
            'factors': self.factors or {},
            'lastUpdated': _iso(self.last_updated),
        }

    def __repr__(self):
        return f"<TradingPair(symbol={self.symbol}, score={self.score})>"


class MarketData(Base):
    """
    Сохраненные свечи для повторных бэктестов
    """
    __tablename__ = 'market_data'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(50), nullable=False)
    interval = Column(String(20), nullable=False)
    open_time = Column(DateTime(timezone=True), nullable=False)

    open = Column(DECIMAL(20, 8), nullable=False)
    high = Column(DECIMAL(20, 8), nullable=False)
    low = Column(DECIMAL(20, 8), nullable=False)
    close = Column(DECIMAL(20, 8), nullable=False)
    volume = Column(DECIMAL(24, 8), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'interval', 'open_time', name='unique_market_candle'),
        Index('idx_market_symbol_interval_time', 'symbol', 'interval', 'open_time'),
        CheckConstraint('high >= low', name='check_high_low'),
    )

    def __repr__(self):
        return f"<MarketData(symbol={self.symbol}, interval={self.interval}, open_time={self.open_time})>"


# ============================================================================
# БЭКТЕСТИНГ
# ============================================================================

class BacktestResult(Base):
    """
    Результат прогона бэктеста, после расчета не изменяется
    """
    __tablename__ = 'backtest_results'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    strategy_type = Column(String(50), nullable=False)
    symbol = Column(String(50), nullable=False, index=True)
    interval = Column(String(10), nullable=False, default='1h')
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)

    initial_balance = Column(DECIMAL(20, 8), nullable=False)
    final_balance = Column(DECIMAL(20, 8), nullable=False)
    total_return = Column(DECIMAL(20, 8), nullable=False)
    total_return_percent = Column(DECIMAL(12, 4), nullable=False)
    sharpe_ratio = Column(DECIMAL(12, 4), nullable=True)
    max_drawdown = Column(DECIMAL(20, 8), nullable=True)
    max_drawdown_percent = Column(DECIMAL(12, 4), nullable=True)
    win_rate = Column(DECIMAL(6, 2), nullable=True)
    total_trades = Column(Integer, nullable=False, default=0)
    winning_trades = Column(Integer, default=0)
    losing_trades = Column(Integer, default=0)

    config = Column(JSON, nullable=False, default=dict)
    trades = Column(JSON, nullable=True)
    equity_curve = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint('initial_balance > 0', name='check_initial_balance_positive'),
        CheckConstraint('end_date > start_date', name='check_date_range'),
    )

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'strategyType': self.strategy_type,
            'symbol': self.symbol,
            'interval': self.interval,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'initialBalance': _num(self.initial_balance),
            'finalBalance': _num(self.final_balance),
            'totalReturn': _num(self.total_return),
            'totalReturnPercent': _num(self.total_return_percent),
            'sharpeRatio': _num(self.sharpe_ratio),
            'maxDrawdown': _num(self.max_drawdown),
            'maxDrawdownPercent': _num(self.max_drawdown_percent),
            'winRate': _num(self.win_rate),
            'totalTrades': self.total_trades,
            'winningTrades': self.winning_trades,
            'losingTrades': self.losing_trades,
            'config': self.config or {},
            'createdAt': _iso(self.created_at),
        }
        if include_details:
            data['trades'] = self.trades or []
            data['equityCurve'] = self.equity_curve or []
        return data

    def __repr__(self):
        return f"<BacktestResult(id={self.id}, strategy={self.strategy_type}, symbol={self.symbol})>"
