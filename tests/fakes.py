"""Поддельный источник рыночных данных и генератор свечей для тестов"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.exchange import ExchangeClient, Kline, Balance, OrderRequest, OrderResult, OrderStatusInfo, TickerStats
from utils.helpers import ExchangeError, NetworkError, datetime_to_timestamp


START = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


def make_klines(closes: List[float], start: datetime = START, step: timedelta = HOUR,
                volume: float = 100.0, volumes: Optional[List[float]] = None) -> List[Kline]:
    """Свечи с заданными ценами закрытия, high/low +-1%"""
    klines = []
    for i, close in enumerate(closes):
        open_time = start + step * i
        klines.append(Kline(
            open_time=open_time,
            open=close,
            high=close * 1.01,
            low=close * 0.99,
            close=close,
            volume=volumes[i] if volumes else volume,
            close_time=open_time + step,
        ))
    return klines


class FakeMarketData(ExchangeClient):
    """Источник рыночных данных в памяти; ордера не поддерживает"""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.klines: Dict[str, List[Kline]] = {}
        self.tickers: List[TickerStats] = []
        self.failing_klines: set = set()
        self.kline_requests: List[dict] = []
        self.ticker_requests = 0

    async def get_price(self, symbol: str) -> float:
        if symbol not in self.prices:
            raise ExchangeError(f"Unknown symbol {symbol}")
        return self.prices[symbol]

    async def get_klines(self, symbol: str, interval: str = "1h", limit: int = 100,
                         start_time: Optional[int] = None, end_time: Optional[int] = None) -> List[Kline]:
        self.kline_requests.append({'symbol': symbol, 'interval': interval, 'limit': limit,
                                    'start_time': start_time, 'end_time': end_time})
        if symbol in self.failing_klines:
            raise NetworkError(f"Connection reset while fetching {symbol}")

        data = self.klines.get(symbol, [])
        if start_time is None and end_time is None:
            return data[-limit:]

        selected = [
            kline for kline in data
            if (start_time is None or datetime_to_timestamp(kline.open_time) >= start_time)
            and (end_time is None or datetime_to_timestamp(kline.open_time) <= end_time)
        ]
        return selected[:limit]

    async def get_balance(self, asset: str) -> Optional[Balance]:
        return None

    async def place_order(self, request: OrderRequest) -> OrderResult:
        raise ExchangeError("Orders are not supported by market data source")

    async def get_order(self, symbol: str, order_id: str) -> OrderStatusInfo:
        raise ExchangeError("Orders are not supported by market data source")

    async def get_top_volume_pairs(self, count: int = 30) -> List[TickerStats]:
        self.ticker_requests += 1
        ranked = sorted(self.tickers, key=lambda t: t.quote_volume_24h, reverse=True)
        return ranked[:count]
