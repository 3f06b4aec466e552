"""
Spot Trading Engine Exchange Interface
Контракт биржи, которым пользуются стратегии, риск-модуль и бэктест
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

from data.models import OrderSide, OrderType
from utils.helpers import floor_to_decimals, timestamp_to_datetime, safe_float


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class Kline:
    """Свеча OHLCV"""
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: Optional[datetime] = None
    quote_volume: float = 0.0

    @classmethod
    def from_rest(cls, row: List[Any]) -> "Kline":
        """Строка массива ``/api/v3/klines``"""
        return cls(
            open_time=timestamp_to_datetime(int(row[0])),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=timestamp_to_datetime(int(row[6])) if len(row) > 6 else None,
            quote_volume=safe_float(row[7]) if len(row) > 7 else 0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'openTime': self.open_time.isoformat(),
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass
class Balance:
    asset: str
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked

    def to_dict(self) -> Dict[str, Any]:
        return {'asset': self.asset, 'free': self.free, 'locked': self.locked, 'total': self.total}


@dataclass
class Fill:
    """Частичное исполнение ордера"""
    price: float
    qty: float
    commission: float = 0.0
    commission_asset: str = ""


@dataclass
class OrderRequest:
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Optional[float] = None
    quote_order_qty: Optional[float] = None
    price: Optional[float] = None
    time_in_force: Optional[str] = None

    def validate(self) -> None:
        if self.quantity is None and self.quote_order_qty is None:
            raise ValueError("Either quantity or quote_order_qty is required")
        if self.type == OrderType.LIMIT and not self.price:
            raise ValueError("Limit order requires price")


@dataclass
class OrderResult:
    """Ответ биржи на размещение ордера"""
    order_id: str
    symbol: str
    status: str
    side: OrderSide
    type: OrderType
    quantity: float = 0.0
    price: float = 0.0
    executed_qty: float = 0.0
    fills: List[Fill] = field(default_factory=list)

    @property
    def total_commission(self) -> float:
        return sum(fill.commission for fill in self.fills)

    @property
    def commission_asset(self) -> Optional[str]:
        return self.fills[0].commission_asset if self.fills else None


@dataclass
class OrderStatusInfo:
    """Текущее состояние ордера на бирже"""
    order_id: str
    symbol: str
    status: str
    executed_qty: float
    cumulative_quote_qty: float
    price: float = 0.0


@dataclass
class TickerStats:
    """24-часовая статистика пары"""
    symbol: str
    price: float
    volume_24h: float
    quote_volume_24h: float
    price_change_percent: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0


@dataclass
class PairInfo:
    """Кандидат для торговли: пара с ценой, объемом и (после скоринга) оценкой"""
    symbol: str
    base_asset: str
    quote_asset: str = "USDT"
    price: float = 0.0
    volume_24h: float = 0.0
    score: Optional[float] = None
    factors: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'baseAsset': self.base_asset,
            'quoteAsset': self.quote_asset,
            'price': self.price,
            'volume24h': self.volume_24h,
            'score': self.score,
            'factors': dict(self.factors),
        }


# ============================================================================
# EXCHANGE CLIENT
# ============================================================================

class ExchangeClient(ABC):
    """
    Абстрактный клиент спотовой биржи.

    Вызовы бросают ``TransientExchangeError`` для временных сбоев и
    ``ExchangeError`` для окончательных отказов.
    """

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        ...

    @abstractmethod
    async def get_klines(
        self,
        symbol: str,
        interval: str = "1h",
        limit: int = 100,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Kline]:
        ...

    @abstractmethod
    async def get_balance(self, asset: str) -> Optional[Balance]:
        ...

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> OrderStatusInfo:
        ...

    @abstractmethod
    async def get_top_volume_pairs(self, count: int = 30) -> List[TickerStats]:
        ...

    async def get_balances(self) -> List[Balance]:
        """Все ненулевые балансы (если биржа это поддерживает)"""
        return []

    async def close(self) -> None:
        return None

    # ========================================================================
    # ORDER SHORTCUTS
    # ========================================================================

    async def market_buy(self, symbol: str, quote_order_qty: float) -> OrderResult:
        return await self.place_order(OrderRequest(
            symbol=symbol, side=OrderSide.BUY, type=OrderType.MARKET,
            quote_order_qty=quote_order_qty,
        ))

    async def market_sell(self, symbol: str, quantity: float) -> OrderResult:
        return await self.place_order(OrderRequest(
            symbol=symbol, side=OrderSide.SELL, type=OrderType.MARKET,
            quantity=quantity,
        ))

    async def limit_buy(self, symbol: str, quantity: float, price: float) -> OrderResult:
        return await self.place_order(OrderRequest(
            symbol=symbol, side=OrderSide.BUY, type=OrderType.LIMIT,
            quantity=quantity, price=price, time_in_force="GTC",
        ))

    async def limit_sell(self, symbol: str, quantity: float, price: float) -> OrderResult:
        return await self.place_order(OrderRequest(
            symbol=symbol, side=OrderSide.SELL, type=OrderType.LIMIT,
            quantity=quantity, price=price, time_in_force="GTC",
        ))
