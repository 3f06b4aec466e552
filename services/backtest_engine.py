"""
Spot Trading Engine Backtest Engine
Прогон сигнальных функций стратегии по историческим свечам
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Union

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient, Kline
from data.database import Database
from data.models import MarketData
from services.performance_analyzer import ClosedTrade, PerformanceMetrics, calculate_metrics
from strategies import BaseStrategy, StrategyContext, SignalContext, PositionView, StrategyRegistry
from utils.helpers import (
    ValidationError, ensure_utc, get_current_utc_datetime, datetime_to_timestamp,
    parse_timeframe_to_milliseconds, to_decimal, Timer
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

logger = setup_logger(__name__)

DEFAULT_INITIAL_BALANCE = 10000.0
DEFAULT_COMMISSION = 0.001  # 0.1%
WARMUP_CANDLES = 20
POSITION_FRACTION = 0.1
BALANCE_RESERVE = 10.0
MAX_KLINES_PER_REQUEST = 1000
REQUEST_DELAY = 0.1  # секунды между запросами истории
MAX_SIGNAL_WINDOW = 100


class BacktestError(ValidationError):
    """Невалидные параметры бэктеста"""


@dataclass
class BacktestConfig:
    strategy_type: str
    symbol: str
    start_date: datetime
    end_date: datetime
    initial_balance: float = DEFAULT_INITIAL_BALANCE
    strategy_config: Dict[str, Any] = field(default_factory=dict)
    interval: str = "1h"


@dataclass
class SimulatedPosition:
    id: str
    entry_price: float
    quantity: float
    entry_time: datetime
    entry_fee: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    def view(self, symbol: str) -> PositionView:
        return PositionView(
            id=self.id,
            symbol=symbol,
            quantity=self.quantity,
            entry_price=self.entry_price,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            opened_at=self.entry_time,
        )


@dataclass
class BacktestRunResult:
    id: Optional[str]
    config: BacktestConfig
    metrics: PerformanceMetrics
    trades: List[ClosedTrade]

    def to_dict(self) -> Dict[str, Any]:
        metrics = self.metrics.to_dict()
        return {
            'id': self.id,
            'strategyType': self.config.strategy_type,
            'symbol': self.config.symbol,
            'interval': self.config.interval,
            'startDate': ensure_utc(self.config.start_date).isoformat(),
            'endDate': ensure_utc(self.config.end_date).isoformat(),
            'config': self.config.strategy_config,
            **metrics,
            'trades': [trade.to_dict() for trade in self.trades],
        }


# ============================================================================
# VALIDATION
# ============================================================================

def to_utc_datetime(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except (AttributeError, ValueError) as e:
        raise BacktestError(f"Invalid date format: {value}", cause=e) from e


def validate_date_range(
    start_date: datetime,
    end_date: datetime,
    max_days: int = 365,
    now: Optional[datetime] = None,
) -> None:
    """Окно бэктеста: начало раньше конца, не длиннее ``max_days``, не в будущем"""
    start_date = ensure_utc(start_date)
    end_date = ensure_utc(end_date)

    if start_date >= end_date:
        raise BacktestError("Start date must be before end date")

    if end_date - start_date > timedelta(days=max_days):
        raise BacktestError(f"Date range cannot exceed {max_days} days")

    if end_date > (now or get_current_utc_datetime()):
        raise BacktestError("End date cannot be in the future")


# ============================================================================
# HISTORICAL DATA
# ============================================================================

class HistoricalDataProvider:
    """
    Исторические свечи постранично (до 1000 за запрос) с паузой между
    запросами. Загруженные свечи сохраняются в таблицу ``market_data``
    и переиспользуются, если кеш покрывает окно целиком.
    """

    def __init__(self, exchange: ExchangeClient, db: Optional[Database] = None,
                 batch_size: int = MAX_KLINES_PER_REQUEST, request_delay: float = REQUEST_DELAY):
        self.exchange = exchange
        self.db = db
        self.batch_size = min(batch_size, MAX_KLINES_PER_REQUEST)
        self.request_delay = request_delay
        self.logger = setup_logger(f"{__name__}.HistoricalDataProvider")

    async def get_historical_data(self, symbol: str, interval: str,
                                  start_date: datetime, end_date: datetime) -> List[Kline]:
        interval_ms = parse_timeframe_to_milliseconds(interval)
        start_ms = datetime_to_timestamp(start_date)
        end_ms = datetime_to_timestamp(end_date)
        expected = (end_ms - start_ms) // interval_ms

        cached = await self._load_cached(symbol, interval, start_date, end_date)
        if cached and len(cached) >= expected:
            self.logger.info(f"💾 Using {len(cached)} cached candles for {symbol} {interval}")
            return cached

        klines = await self._fetch(symbol, interval, start_ms, end_ms, interval_ms)

        if self.db is not None and klines:
            try:
                await self.db.save_market_data(symbol, interval, klines)
            except Exception as e:
                self.logger.warning(f"⚠️ Failed to cache market data for {symbol}: {e}")

        return klines

    async def _fetch(self, symbol: str, interval: str, start_ms: int, end_ms: int,
                     interval_ms: int) -> List[Kline]:
        klines: Dict[int, Kline] = {}
        current_start = start_ms

        while current_start < end_ms:
            batch = await self.exchange.get_klines(
                symbol, interval, self.batch_size, start_time=current_start, end_time=end_ms
            )
            if not batch:
                break

            for kline in batch:
                open_ms = datetime_to_timestamp(kline.open_time)
                if start_ms <= open_ms <= end_ms:
                    klines[open_ms] = kline

            if len(batch) < self.batch_size:
                break

            current_start = datetime_to_timestamp(batch[-1].open_time) + interval_ms
            await asyncio.sleep(self.request_delay)

        self.logger.info(f"📊 Fetched {len(klines)} candles for {symbol} {interval}")
        return [klines[key] for key in sorted(klines)]

    async def _load_cached(self, symbol: str, interval: str,
                           start_date: datetime, end_date: datetime) -> List[Kline]:
        if self.db is None:
            return []
        try:
            rows = await self.db.get_market_data(symbol, interval, start_date, end_date)
        except Exception as e:
            self.logger.warning(f"⚠️ Failed to read cached market data for {symbol}: {e}")
            return []
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: MarketData) -> Kline:
        return Kline(
            open_time=ensure_utc(row.open_time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )


# ============================================================================
# BACKTEST ENGINE CLASS
# ============================================================================

class BacktestEngine:
    """
    Симуляция на исторических свечах.

    С индекса 20 на каждой свече вызываются ``evaluate_exit`` по открытым
    позициям и ``evaluate_entry`` без позиций. Вход: min(10% баланса,
    баланс - 10) при балансе от 100, комиссия 0.1% на входе и выходе.
    Позиция, открытая на конец данных, закрывается по последней цене.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        data_provider: Optional[HistoricalDataProvider] = None,
    ):
        self.exchange = exchange
        self.db = db
        self.settings = settings or get_settings()
        self.data_provider = data_provider or HistoricalDataProvider(
            exchange, db, batch_size=self.settings.BACKTEST_BATCH_SIZE
        )
        self.fee_rate = self.settings.TRADING_FEE_PERCENT / 100
        self.logger = setup_logger(f"{__name__}.BacktestEngine")

    async def run_backtest(self, config: BacktestConfig) -> BacktestRunResult:
        config.start_date = to_utc_datetime(config.start_date)
        config.end_date = to_utc_datetime(config.end_date)
        validate_date_range(config.start_date, config.end_date, self.settings.BACKTEST_MAX_DAYS)

        if config.initial_balance <= 0:
            raise BacktestError(f"Initial balance must be positive: {config.initial_balance}")

        strategy = self._create_strategy(config)

        self.logger.info(f"🚀 Backtest {config.strategy_type} {config.symbol} {config.interval} "
                         f"{config.start_date.date()} -> {config.end_date.date()}")

        klines = await self.data_provider.get_historical_data(
            config.symbol, config.interval, config.start_date, config.end_date
        )

        with Timer("backtest_simulation"):
            trades = self.simulate(strategy, config.symbol, klines, config.initial_balance)

        metrics = calculate_metrics(trades, config.initial_balance)
        result = BacktestRunResult(id=None, config=config, metrics=metrics, trades=trades)

        if self.db is not None:
            record = await self.db.save_backtest_result(self._record_data(result))
            result.id = record.id

        self.logger.info(f"✅ Backtest finished: {metrics.total_trades} trades, "
                         f"return {metrics.total_return_percent:.2f}%")
        return result

    def _create_strategy(self, config: BacktestConfig) -> BaseStrategy:
        strategy_config = {**config.strategy_config, 'symbol': config.symbol}
        context = StrategyContext(exchange=self.exchange, db=self.db, user_id="backtest",
                                  settings=self.settings)
        return StrategyRegistry.create_strategy(
            config.strategy_type, f"backtest-{config.strategy_type}",
            f"Backtest {config.strategy_type}", strategy_config, context,
        )

    # ========================================================================
    # SIMULATION
    # ========================================================================

    def simulate(self, strategy: BaseStrategy, symbol: str, klines: List[Kline],
                 initial_balance: float) -> List[ClosedTrade]:
        balance = initial_balance
        trades: List[ClosedTrade] = []
        positions: List[SimulatedPosition] = []
        ids = itertools.count(1)
        last_entry_time: Optional[datetime] = None
        window = max(strategy.signal_candles, MAX_SIGNAL_WINDOW)

        for index in range(WARMUP_CANDLES, len(klines)):
            candle = klines[index]
            price = candle.close
            now = ensure_utc(candle.open_time)

            ctx = SignalContext(
                symbol=symbol,
                price=price,
                now=now,
                candles=klines[max(0, index - window + 1):index + 1],
                positions=[p.view(symbol) for p in positions],
                last_entry_time=last_entry_time,
            )

            for position in list(positions):
                reason = strategy.evaluate_exit(position.view(symbol), ctx)
                if reason is None:
                    continue
                trade, proceeds = self._close(symbol, position, price, now, reason)
                trades.append(trade)
                balance += proceeds
                positions.remove(position)

            if positions or balance < self.settings.BACKTEST_MIN_BALANCE:
                continue

            ctx.positions = []
            if not strategy.evaluate_entry(ctx):
                continue

            size = min(balance * POSITION_FRACTION, balance - BALANCE_RESERVE)
            entry_fee = size * self.fee_rate
            if size <= 0 or balance < size + entry_fee:
                continue

            stop_loss, take_profit = strategy.entry_levels(price, ctx)
            positions.append(SimulatedPosition(
                id=f"bt_{next(ids)}",
                entry_price=price,
                quantity=size / price,
                entry_time=now,
                entry_fee=entry_fee,
                stop_loss=stop_loss,
                take_profit=take_profit,
            ))
            balance -= size + entry_fee
            last_entry_time = now

        if klines:
            last = klines[-1]
            for position in positions:
                trade, proceeds = self._close(symbol, position, last.close,
                                              ensure_utc(last.open_time), "End of backtest")
                trades.append(trade)
                balance += proceeds

        return trades

    def _close(self, symbol: str, position: SimulatedPosition, price: float,
               now: datetime, reason: str):
        """Сделка выхода и сумма, возвращаемая на баланс"""
        exit_value = position.quantity * price
        exit_fee = exit_value * self.fee_rate
        pnl = (price - position.entry_price) * position.quantity

        trade = ClosedTrade(
            symbol=symbol,
            entry_time=position.entry_time,
            exit_time=now,
            entry_price=position.entry_price,
            exit_price=price,
            quantity=position.quantity,
            pnl=pnl,
            pnl_percent=(price - position.entry_price) / position.entry_price * 100,
            fee=position.entry_fee + exit_fee,
            reason=reason,
        )
        return trade, exit_value - exit_fee

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    @staticmethod
    def _record_data(result: BacktestRunResult) -> Dict[str, Any]:
        metrics = result.metrics
        config = result.config
        return {
            'strategy_type': config.strategy_type,
            'symbol': config.symbol,
            'interval': config.interval,
            'start_date': config.start_date,
            'end_date': config.end_date,
            'initial_balance': to_decimal(config.initial_balance),
            'final_balance': to_decimal(metrics.final_balance),
            'total_return': to_decimal(metrics.total_return),
            'total_return_percent': to_decimal(round(metrics.total_return_percent, 4)),
            'sharpe_ratio': to_decimal(round(metrics.sharpe_ratio, 4)),
            'max_drawdown': to_decimal(metrics.max_drawdown),
            'max_drawdown_percent': to_decimal(round(metrics.max_drawdown_percent, 4)),
            'win_rate': to_decimal(round(metrics.win_rate, 2)),
            'total_trades': metrics.total_trades,
            'winning_trades': metrics.winning_trades,
            'losing_trades': metrics.losing_trades,
            'config': config.strategy_config,
            'trades': [trade.to_dict() for trade in result.trades],
            'equity_curve': [point.to_dict() for point in metrics.equity_curve],
        }
