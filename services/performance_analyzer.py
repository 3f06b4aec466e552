"""
Spot Trading Engine Performance Analyzer
Метрики результата по списку закрытых сделок и начальному балансу
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Any, Optional, Sequence, Tuple

import numpy as np

from utils.helpers import get_current_utc_datetime, ensure_utc


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class ClosedTrade:
    """
    Закрытая сделка (вход + выход). ``pnl`` валовый, ``fee`` суммарная
    комиссия входа и выхода; чистый результат = pnl - fee.
    """
    symbol: str
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    fee: float = 0.0
    reason: str = ""

    @property
    def net_pnl(self) -> float:
        return self.pnl - self.fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'entryTime': ensure_utc(self.entry_time).isoformat(),
            'exitTime': ensure_utc(self.exit_time).isoformat(),
            'entryPrice': self.entry_price,
            'exitPrice': self.exit_price,
            'quantity': self.quantity,
            'pnl': self.pnl,
            'pnlPercent': self.pnl_percent,
            'fee': self.fee,
            'reason': self.reason,
        }


@dataclass
class EquityPoint:
    timestamp: datetime
    balance: float

    def to_dict(self) -> Dict[str, Any]:
        return {'timestamp': ensure_utc(self.timestamp).isoformat(), 'balance': self.balance}


@dataclass
class PerformanceMetrics:
    """Метрики производительности"""
    initial_balance: float = 0.0
    final_balance: float = 0.0
    total_return: float = 0.0
    total_return_percent: float = 0.0

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0

    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0

    average_trade: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    total_fees: float = 0.0

    equity_curve: List[EquityPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initialBalance': round(self.initial_balance, 8),
            'finalBalance': round(self.final_balance, 8),
            'totalReturn': round(self.total_return, 8),
            'totalReturnPercent': round(self.total_return_percent, 4),
            'totalTrades': self.total_trades,
            'winningTrades': self.winning_trades,
            'losingTrades': self.losing_trades,
            'winRate': round(self.win_rate, 4),
            'maxDrawdown': round(self.max_drawdown, 8),
            'maxDrawdownPercent': round(self.max_drawdown_percent, 4),
            'sharpeRatio': round(self.sharpe_ratio, 4),
            # inf не сериализуется в JSON
            'profitFactor': None if math.isinf(self.profit_factor) else round(self.profit_factor, 4),
            'averageTrade': round(self.average_trade, 8),
            'averageWin': round(self.average_win, 8),
            'averageLoss': round(self.average_loss, 8),
            'largestWin': round(self.largest_win, 8),
            'largestLoss': round(self.largest_loss, 8),
            'totalFees': round(self.total_fees, 8),
            'equityCurve': [point.to_dict() for point in self.equity_curve],
        }


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_max_drawdown(balances: Sequence[float]) -> Tuple[float, float]:
    """
    Максимальная просадка от пика: (абсолютная, в процентах от пика).
    [100, 120, 90, 130] -> (30, 25%).
    """
    if not balances:
        return 0.0, 0.0

    peak = balances[0]
    max_dd = 0.0
    max_dd_percent = 0.0

    for balance in balances:
        if balance > peak:
            peak = balance
        drawdown = peak - balance
        max_dd = max(max_dd, drawdown)
        if peak > 0:
            max_dd_percent = max(max_dd_percent, drawdown / peak * 100)

    return max_dd, max_dd_percent


def calculate_sharpe_ratio(returns: Sequence[float]) -> float:
    """Среднее / стандартное отклонение доходностей сделок (без безрисковой ставки)"""
    if len(returns) == 0:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = float(np.std(values))
    if std == 0 or math.isnan(std):
        return 0.0
    return float(np.mean(values)) / std


def calculate_profit_factor(trades: Sequence[ClosedTrade]) -> float:
    gross_profit = sum(t.net_pnl for t in trades if t.net_pnl > 0)
    gross_loss = abs(sum(t.net_pnl for t in trades if t.net_pnl < 0))
    if gross_loss == 0:
        return math.inf if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def build_equity_curve(trades: Sequence[ClosedTrade], initial_balance: float) -> List[EquityPoint]:
    """Начальная точка в момент первого входа, далее баланс после каждой сделки"""
    start = ensure_utc(trades[0].entry_time) if trades else get_current_utc_datetime()
    curve = [EquityPoint(timestamp=start, balance=initial_balance)]

    balance = initial_balance
    for trade in trades:
        balance += trade.net_pnl
        curve.append(EquityPoint(timestamp=ensure_utc(trade.exit_time), balance=balance))
    return curve


def calculate_metrics(trades: Sequence[ClosedTrade], initial_balance: float) -> PerformanceMetrics:
    """Полный набор метрик; пустой список дает нулевые метрики"""
    metrics = PerformanceMetrics(initial_balance=initial_balance, final_balance=initial_balance)
    metrics.equity_curve = build_equity_curve(trades, initial_balance)

    if not trades:
        return metrics

    net = [t.net_pnl for t in trades]
    wins = [value for value in net if value > 0]
    losses = [value for value in net if value <= 0]

    metrics.final_balance = metrics.equity_curve[-1].balance
    metrics.total_return = metrics.final_balance - initial_balance
    metrics.total_return_percent = (metrics.total_return / initial_balance * 100) if initial_balance else 0.0

    metrics.total_trades = len(trades)
    metrics.winning_trades = len(wins)
    metrics.losing_trades = len(losses)
    metrics.win_rate = metrics.winning_trades / metrics.total_trades * 100

    metrics.max_drawdown, metrics.max_drawdown_percent = calculate_max_drawdown(
        [point.balance for point in metrics.equity_curve]
    )
    metrics.sharpe_ratio = calculate_sharpe_ratio([t.pnl_percent for t in trades])
    metrics.profit_factor = calculate_profit_factor(trades)

    metrics.average_trade = sum(net) / len(net)
    metrics.average_win = sum(wins) / len(wins) if wins else 0.0
    metrics.average_loss = sum(abs(value) for value in losses) / len(losses) if losses else 0.0
    metrics.largest_win = max(wins) if wins else 0.0
    metrics.largest_loss = min(losses) if losses else 0.0
    metrics.total_fees = sum(t.fee for t in trades)

    return metrics


def trades_from_records(records: Sequence[Any]) -> List[ClosedTrade]:
    """
    Закрытые сделки из журнала: каждая продажа с позицией. P&L продажи
    в журнале уже за вычетом комиссии выхода.
    """
    trades = []
    for record in records:
        if record.side != "SELL" or record.position_id is None:
            continue
        price = float(record.price)
        pnl = float(record.pnl or 0)
        quantity = float(record.quantity)
        pnl_percent = float(record.pnl_percent or 0)
        entry_price = price / (1 + pnl_percent / 100) if pnl_percent > -100 else price
        executed_at = ensure_utc(record.executed_at)
        trades.append(ClosedTrade(
            symbol=record.symbol,
            entry_time=executed_at,
            exit_time=executed_at,
            entry_price=entry_price,
            exit_price=price,
            quantity=quantity,
            pnl=pnl,
            pnl_percent=pnl_percent,
        ))
    return trades


class PerformanceAnalyzer:
    """Обертка над чистыми функциями для сервиса и API"""

    def analyze_records(self, records: Sequence[Any], initial_balance: float,
                        since: Optional[datetime] = None) -> PerformanceMetrics:
        trades = trades_from_records(records)
        if since is not None:
            trades = [t for t in trades if t.exit_time >= ensure_utc(since)]
        return calculate_metrics(trades, initial_balance)
