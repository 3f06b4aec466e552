"""
Spot Trading Engine Paper Exchange
Бумажная торговля: реальные рыночные данные, исполнение ордеров в памяти
"""

import itertools
from typing import Optional, List, Dict

from core.exchange import (
    ExchangeClient, Kline, Balance, Fill, OrderRequest, OrderResult, OrderStatusInfo, TickerStats
)
from data.models import OrderSide, OrderType, OrderStatus
from utils.helpers import ExchangeError, extract_base_asset, floor_to_decimals, QUOTE_ASSET
from utils.logger import setup_logger


class PaperExchange(ExchangeClient):
    """
    Исполняет ордера локально по цене источника рыночных данных.

    Рыночные ордера исполняются по текущей цене, лимитные сразу по цене
    лимита. Комиссия удерживается в получаемом активе.
    """

    def __init__(
        self,
        market_data: ExchangeClient,
        initial_balances: Optional[Dict[str, float]] = None,
        fee_percent: float = 0.1,
    ):
        self.market_data = market_data
        self.fee_rate = fee_percent / 100
        self.logger = setup_logger(f"{__name__}.PaperExchange")

        self._balances: Dict[str, float] = dict(initial_balances or {QUOTE_ASSET: 10_000.0})
        self._orders: Dict[str, OrderStatusInfo] = {}
        self._order_ids = itertools.count(1)

        self.logger.info(f"📝 Paper exchange initialized with balances: {self._balances}")

    # ========================================================================
    # MARKET DATA
    # ========================================================================

    async def get_price(self, symbol: str) -> float:
        return await self.market_data.get_price(symbol)

    async def get_klines(self, symbol: str, interval: str = "1h", limit: int = 100,
                         start_time: Optional[int] = None, end_time: Optional[int] = None) -> List[Kline]:
        return await self.market_data.get_klines(symbol, interval, limit, start_time, end_time)

    async def get_top_volume_pairs(self, count: int = 30) -> List[TickerStats]:
        return await self.market_data.get_top_volume_pairs(count)

    # ========================================================================
    # ACCOUNT
    # ========================================================================

    async def get_balance(self, asset: str) -> Optional[Balance]:
        if asset not in self._balances:
            return None
        return Balance(asset=asset, free=self._balances[asset])

    async def get_balances(self) -> List[Balance]:
        return [Balance(asset=asset, free=free) for asset, free in self._balances.items() if free > 0]

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()

        base_asset = extract_base_asset(request.symbol)
        price = request.price if request.type == OrderType.LIMIT else await self.get_price(request.symbol)

        if request.quantity is not None:
            quantity = request.quantity
        else:
            quantity = floor_to_decimals(request.quote_order_qty / price)

        if quantity <= 0:
            raise ExchangeError(f"Order quantity must be positive: {request.symbol}")

        notional = quantity * price

        if request.side == OrderSide.BUY:
            if self._balances.get(QUOTE_ASSET, 0.0) < notional:
                raise ExchangeError(f"Insufficient {QUOTE_ASSET} balance for {request.symbol}")
            commission = quantity * self.fee_rate
            commission_asset = base_asset
            self._balances[QUOTE_ASSET] -= notional
            self._balances[base_asset] = self._balances.get(base_asset, 0.0) + quantity - commission
        else:
            if self._balances.get(base_asset, 0.0) < quantity:
                raise ExchangeError(f"Insufficient {base_asset} balance for {request.symbol}")
            commission = notional * self.fee_rate
            commission_asset = QUOTE_ASSET
            self._balances[base_asset] -= quantity
            self._balances[QUOTE_ASSET] = self._balances.get(QUOTE_ASSET, 0.0) + notional - commission

        order_id = str(next(self._order_ids))
        self._orders[order_id] = OrderStatusInfo(
            order_id=order_id,
            symbol=request.symbol,
            status=OrderStatus.FILLED.value,
            executed_qty=quantity,
            cumulative_quote_qty=notional,
            price=price,
        )

        self.logger.info(f"📝 Paper {request.side.value} {request.type.value} {request.symbol}: "
                         f"{quantity} @ {price}")

        return OrderResult(
            order_id=order_id,
            symbol=request.symbol,
            status=OrderStatus.FILLED.value,
            side=request.side,
            type=request.type,
            quantity=quantity,
            price=price,
            executed_qty=quantity,
            fills=[Fill(price=price, qty=quantity, commission=commission, commission_asset=commission_asset)],
        )

    async def get_order(self, symbol: str, order_id: str) -> OrderStatusInfo:
        if order_id not in self._orders:
            raise ExchangeError(f"Order {order_id} not found for {symbol}")
        return self._orders[order_id]

    async def close(self) -> None:
        await self.market_data.close()
