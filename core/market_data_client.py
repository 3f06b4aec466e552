"""
Spot Trading Engine Market Data Client
aiohttp клиент публичного REST API биржи: цены, свечи, 24h статистика
"""

import asyncio
import json
from typing import Optional, List, Dict, Any

import aiohttp

from app.config.settings import Settings, get_settings
from core.exchange import (
    ExchangeClient, Kline, Balance, OrderRequest, OrderResult, OrderStatusInfo, TickerStats
)
from utils.helpers import (
    APIError, NetworkError, ConfigurationError, TransientExchangeError,
    clean_symbol, retry_async, safe_float, Timer
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

KLINES_MAX_LIMIT = 1000

ENDPOINTS = {
    'price': '/api/v3/ticker/price',
    'klines': '/api/v3/klines',
    'ticker_24h': '/api/v3/ticker/24hr',
    'ping': '/api/v3/ping',
}


class MarketDataClient(ExchangeClient):
    """
    Клиент публичных (неподписанных) endpoint'ов.

    Баланс и ордера требуют подписанных запросов, поэтому здесь они
    недоступны: для торговли клиент оборачивается в ``PaperExchange``
    или в подкласс с аутентификацией.
    """

    def __init__(self, settings: Optional[Settings] = None, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.MarketDataClient")

        self.base_url = self.settings.EXCHANGE_REST_URL.rstrip('/')
        self.timeout = self.settings.EXCHANGE_TIMEOUT
        self.max_retries = self.settings.EXCHANGE_MAX_RETRIES

        self._session = session
        self._owns_session = session is None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
        }

    async def __aenter__(self):
        await self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_session(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=20, ttl_dns_cache=300),
                headers={'User-Agent': 'SpotTradingEngine/1.0.0'}
            )
            self._owns_session = True

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
            self.logger.info("🔌 Market data session closed")
        self._session = None

    # ========================================================================
    # HTTP
    # ========================================================================

    async def _request_once(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        await self._create_session()
        url = f"{self.base_url}{endpoint}"

        try:
            with Timer(f"GET {endpoint}"):
                async with self._session.get(url, params=params or {}) as response:
                    body = await response.text()
                    status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Request to {endpoint} failed: {e}", cause=e) from e

        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError:
            data = {'msg': body[:200]}

        if status >= 400:
            message = data.get('msg', f"HTTP Error {status}") if isinstance(data, dict) else f"HTTP Error {status}"
            error = APIError(message, status_code=status, response_data=data if isinstance(data, dict) else {})
            if error.is_transient:
                raise TransientExchangeError(f"{endpoint}: {message}", cause=error)
            raise error

        return data

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET с повтором временных ошибок"""
        self.stats['total_requests'] += 1
        try:
            data = await retry_async(
                lambda: self._request_once(endpoint, params),
                max_retries=self.max_retries,
                delay=0.5,
                backoff=2.0,
                exceptions=(TransientExchangeError,),
            )
            self.stats['successful_requests'] += 1
            return data
        except Exception as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ API request failed: GET {endpoint} - {e}")
            raise

    # ========================================================================
    # MARKET DATA
    # ========================================================================

    async def get_price(self, symbol: str) -> float:
        symbol = clean_symbol(symbol)
        if not symbol:
            raise ValueError("Symbol must be a non-empty string")

        data = await self._get(ENDPOINTS['price'], {'symbol': symbol})
        price = safe_float(data.get('price') if isinstance(data, dict) else None)
        if price <= 0:
            raise APIError(f"Invalid price response for {symbol}: {data}")
        return price

    async def get_klines(
        self,
        symbol: str,
        interval: str = "1h",
        limit: int = 100,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Kline]:
        params: Dict[str, Any] = {
            'symbol': clean_symbol(symbol),
            'interval': interval,
            'limit': min(limit, KLINES_MAX_LIMIT),
        }
        if start_time is not None:
            params['startTime'] = start_time
        if end_time is not None:
            params['endTime'] = end_time

        data = await self._get(ENDPOINTS['klines'], params)
        if not isinstance(data, list):
            raise APIError(f"Invalid klines response for {symbol}")

        return [Kline.from_rest(row) for row in data]

    async def get_24h_tickers(self) -> List[Dict[str, Any]]:
        data = await self._get(ENDPOINTS['ticker_24h'])
        return data if isinstance(data, list) else []

    async def get_top_volume_pairs(self, count: int = 30) -> List[TickerStats]:
        """USDT пары, отсортированные по 24h объему в котируемой валюте"""
        tickers = []
        for ticker in await self.get_24h_tickers():
            symbol = ticker.get('symbol', '')
            if not symbol.endswith('USDT'):
                continue
            tickers.append(TickerStats(
                symbol=symbol,
                price=safe_float(ticker.get('lastPrice')),
                volume_24h=safe_float(ticker.get('volume')),
                quote_volume_24h=safe_float(ticker.get('quoteVolume')),
                price_change_percent=safe_float(ticker.get('priceChangePercent')),
                high_price=safe_float(ticker.get('highPrice')),
                low_price=safe_float(ticker.get('lowPrice')),
            ))

        tickers.sort(key=lambda t: t.quote_volume_24h, reverse=True)
        return tickers[:count]

    async def ping(self) -> bool:
        try:
            await self._get(ENDPOINTS['ping'])
            return True
        except Exception:
            return False

    # ========================================================================
    # SIGNED ENDPOINTS
    # ========================================================================

    async def get_balance(self, asset: str) -> Optional[Balance]:
        raise ConfigurationError("Balances require an authenticated exchange client")

    async def place_order(self, request: OrderRequest) -> OrderResult:
        raise ConfigurationError("Order placement requires an authenticated exchange client")

    async def get_order(self, symbol: str, order_id: str) -> OrderStatusInfo:
        raise ConfigurationError("Order queries require an authenticated exchange client")

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
