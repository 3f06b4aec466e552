"""
Spot Trading Engine Order Reconciliation
Определение фактической цены и количества исполнения по ответу биржи
"""

from dataclasses import dataclass
from typing import Optional

from core.exchange import ExchangeClient, OrderResult
from utils.helpers import is_finite_number, extract_base_asset
from utils.logger import setup_logger


logger = setup_logger(__name__)


@dataclass(frozen=True)
class ExecutedOrder:
    """Фактическое исполнение: средняя цена и суммарное количество"""
    price: float
    qty: float

    @property
    def is_valid(self) -> bool:
        return _positive(self.price) and _positive(self.qty)


@dataclass(frozen=True)
class PnlResult:
    pnl: float
    pnl_percent: float


def _positive(value) -> bool:
    return is_finite_number(value) and float(value) > 0


def extract_executed(result: OrderResult) -> ExecutedOrder:
    """
    Цена и количество из локальных данных ответа.

    1. Средневзвешенная по количеству цена и сумма количеств из fills.
    2. Иначе цена ордера и executed_qty (если они положительные).
    Невалидные значения остаются 0, вызывающий код обязан их проверить.
    """
    price = 0.0
    qty = 0.0

    if result.fills:
        total_qty = sum(float(fill.qty) for fill in result.fills)
        total_value = sum(float(fill.price) * float(fill.qty) for fill in result.fills)
        if total_qty > 0:
            qty = total_qty
            price = total_value / total_qty

    if not _positive(price) and _positive(result.price):
        price = float(result.price)

    if not _positive(qty) and _positive(result.executed_qty):
        qty = float(result.executed_qty)

    return ExecutedOrder(
        price=price if _positive(price) else 0.0,
        qty=qty if _positive(qty) else 0.0,
    )


async def resolve_executed(exchange: ExchangeClient, result: OrderResult) -> ExecutedOrder:
    """
    Как ``extract_executed``, но при невалидном результате запрашивает
    состояние ордера у биржи: цена = cumulative_quote_qty / executed_qty.

    Ошибка запроса не пробрасывается, возвращаются лучшие частичные значения.
    """
    local = extract_executed(result)
    if local.is_valid:
        return local

    if not result.symbol or not result.order_id:
        return local

    try:
        status = await exchange.get_order(result.symbol, result.order_id)
    except Exception as e:
        logger.warning(f"⚠️ Could not query order {result.order_id} for {result.symbol}: {e}")
        return local

    executed_qty = float(status.executed_qty) if _positive(status.executed_qty) else 0.0
    executed_price = 0.0
    if executed_qty > 0 and _positive(status.cumulative_quote_qty):
        executed_price = float(status.cumulative_quote_qty) / executed_qty

    return ExecutedOrder(
        price=executed_price or local.price,
        qty=executed_qty or local.qty,
    )


def calculate_pnl(entry_price: float, exit_price: float, quantity: float) -> PnlResult:
    """P&L длинной позиции и его процент от цены входа"""
    pnl = (exit_price - entry_price) * quantity
    pnl_percent = ((exit_price - entry_price) / entry_price) * 100 if entry_price > 0 else 0.0
    return PnlResult(pnl=pnl, pnl_percent=pnl_percent)


def order_fee(result: OrderResult, symbol: Optional[str] = None) -> tuple:
    """Суммарная комиссия ордера и ее актив"""
    fee = result.total_commission
    fee_asset = result.commission_asset or extract_base_asset(symbol or result.symbol)
    return fee, fee_asset
