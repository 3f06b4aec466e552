"""
Spot Trading Engine Position Closer
Единая процедура рыночного выхода из позиции для стратегий и монитора
"""

import asyncio
import weakref
from dataclasses import dataclass
from typing import Optional, Dict, Any

from core.exchange import ExchangeClient
from core.order_reconciliation import resolve_executed, calculate_pnl, order_fee
from data.database import Database
from data.models import Position, OrderSide, OrderType, OrderStatus
from utils.helpers import DataIntegrityError
from utils.logger import setup_logger, log_trading_event


logger = setup_logger(__name__)

# Блокировка на позицию живет, пока ее держит или ждет хотя бы один выход
_position_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _position_lock(position_id: str) -> asyncio.Lock:
    lock = _position_locks.get(position_id)
    if lock is None:
        lock = asyncio.Lock()
        _position_locks[position_id] = lock
    return lock


@dataclass
class ExitResult:
    position_id: str
    symbol: str
    order_id: str
    price: float
    quantity: float
    pnl: float
    pnl_percent: float
    fee: float
    reason: str
    closed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'positionId': self.position_id,
            'symbol': self.symbol,
            'orderId': self.order_id,
            'price': self.price,
            'quantity': self.quantity,
            'pnl': self.pnl,
            'pnlPercent': self.pnl_percent,
            'fee': self.fee,
            'reason': self.reason,
            'closed': self.closed,
        }


async def close_position_at_market(
    exchange: ExchangeClient,
    db: Database,
    position_id: str,
    reason: str,
) -> Optional[ExitResult]:
    """
    Рыночная продажа всего количества позиции, запись сделки и закрытие.

    Выполняется под блокировкой позиции: монитор и стратегия не продадут
    одну позицию дважды. Порядок: проверка ``is_open`` -> market sell ->
    цена исполнения (fills, поля ордера, запрос к бирже) -> P&L -> сделка
    с P&L за вычетом комиссии -> ``close_position``. Для уже закрытой
    позиции возвращает None.
    """
    async with _position_lock(position_id):
        return await _close_locked(exchange, db, position_id, reason)


async def _close_locked(
    exchange: ExchangeClient,
    db: Database,
    position_id: str,
    reason: str,
) -> Optional[ExitResult]:
    position: Optional[Position] = await db.get_position(position_id)
    if position is None or not position.is_open:
        logger.debug(f"Position {position_id} not found or already closed")
        return None

    quantity = float(position.quantity)
    entry_price = float(position.entry_price)

    result = await exchange.market_sell(position.symbol, quantity)
    executed = await resolve_executed(exchange, result)

    if executed.price <= 0:
        raise DataIntegrityError(
            f"Could not determine executed price for order {result.order_id}",
            symbol=position.symbol, position_id=position_id,
        )

    executed_qty = executed.qty if executed.qty > 0 else quantity
    pnl = calculate_pnl(entry_price, executed.price, executed_qty)
    fee, fee_asset = order_fee(result, position.symbol)

    await db.save_trade(
        strategy_id=position.strategy_id,
        position_id=position.id,
        symbol=position.symbol,
        side=OrderSide.SELL.value,
        order_type=OrderType.MARKET.value,
        quantity=executed_qty,
        price=executed.price,
        fee=fee,
        fee_asset=fee_asset,
        pnl=pnl.pnl - fee,
        pnl_percent=pnl.pnl_percent,
        exchange_order_id=result.order_id,
        status=result.status or OrderStatus.FILLED.value,
    )

    closed = await db.close_position(position.id, executed.price)
    if closed is None:
        logger.warning(f"⚠️ Position {position.id} was closed concurrently")

    log_trading_event(
        "POSITION_EXIT",
        f"🎯 {reason}: {position.symbol} @ {executed.price} ({pnl.pnl_percent:.2f}%)",
        symbol=position.symbol, strategy_id=position.strategy_id,
        position_id=position.id, pnl=pnl.pnl - fee,
    )

    return ExitResult(
        position_id=position.id,
        symbol=position.symbol,
        order_id=result.order_id,
        price=executed.price,
        quantity=executed_qty,
        pnl=pnl.pnl - fee,
        pnl_percent=pnl.pnl_percent,
        fee=fee,
        reason=reason,
        closed=closed is not None,
    )
