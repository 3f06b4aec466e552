"""
Spot Trading Engine Market Stream
WebSocket подписка на закрытые свечи и тикеры с переподключением
"""

import asyncio
import inspect
import itertools
import json
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Any, Optional, Callable, Set

import websockets
from websockets.exceptions import ConnectionClosed

from app.config.settings import Settings, get_settings
from core.exchange import Kline
from utils.helpers import StreamExhaustedError, timestamp_to_datetime, safe_float
from utils.logger import setup_logger


class StreamStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class StreamSubscription:
    symbol: str
    channel: str  # "kline" или "ticker"
    interval: Optional[str] = None

    @property
    def stream_name(self) -> str:
        if self.channel == "kline":
            return f"{self.symbol.lower()}@kline_{self.interval}"
        return f"{self.symbol.lower()}@ticker"


@dataclass
class TickerUpdate:
    symbol: str
    price: float
    quote_volume_24h: float


def backoff_delay(attempt: int, max_delay: float = 32) -> float:
    """Задержка перед попыткой ``attempt`` (с 0): 1, 2, 4 ... max_delay секунд"""
    return min(2 ** attempt, max_delay)


def parse_kline_event(data: Dict[str, Any]) -> Optional[Kline]:
    """Закрытая свеча из события ``kline``; незакрытая дает None"""
    k = data.get('k') or {}
    if not k.get('x'):
        return None
    return Kline(
        open_time=timestamp_to_datetime(int(k['t'])),
        open=safe_float(k.get('o')),
        high=safe_float(k.get('h')),
        low=safe_float(k.get('l')),
        close=safe_float(k.get('c')),
        volume=safe_float(k.get('v')),
        close_time=timestamp_to_datetime(int(k['T'])) if 'T' in k else None,
        quote_volume=safe_float(k.get('q')),
    )


def parse_ticker_event(data: Dict[str, Any]) -> TickerUpdate:
    return TickerUpdate(
        symbol=data.get('s', ''),
        price=safe_float(data.get('c')),
        quote_volume_24h=safe_float(data.get('q')),
    )


class MarketStream:
    """
    Поток рыночных данных.

    При обрыве соединения переподключается с задержкой min(2^n, 32) с;
    после ``WS_MAX_RETRIES`` неудачных попыток подряд поток переходит
    в состояние ``exhausted`` и вызывает обработчик исчерпания.
    """

    def __init__(self, settings: Optional[Settings] = None, url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.url = url or self.settings.EXCHANGE_WS_URL
        self.max_retries = self.settings.WS_MAX_RETRIES
        self.max_backoff = self.settings.WS_MAX_BACKOFF
        self.logger = setup_logger(f"{__name__}.MarketStream")

        self.status = StreamStatus.DISCONNECTED
        self._subscriptions: Set[StreamSubscription] = set()
        self._kline_callbacks: List[Callable] = []
        self._ticker_callbacks: List[Callable] = []
        self._exhausted_callbacks: List[Callable] = []

        self._ws = None
        self._request_ids = itertools.count(1)
        self._attempts = 0
        self._is_running = False
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {'messages_received': 0, 'reconnect_count': 0, 'errors': 0}

    # ========================================================================
    # SUBSCRIPTIONS AND CALLBACKS
    # ========================================================================

    async def subscribe_kline(self, symbol: str, interval: str) -> None:
        await self._subscribe(StreamSubscription(symbol=symbol, channel="kline", interval=interval))

    async def subscribe_ticker(self, symbol: str) -> None:
        await self._subscribe(StreamSubscription(symbol=symbol, channel="ticker"))

    async def _subscribe(self, subscription: StreamSubscription) -> None:
        self._subscriptions.add(subscription)
        if self._ws is not None and self.status == StreamStatus.CONNECTED:
            await self._send_subscribe([subscription.stream_name])

    def on_kline(self, callback: Callable) -> None:
        """callback(symbol, interval, kline), только закрытые свечи"""
        self._kline_callbacks.append(callback)

    def on_ticker(self, callback: Callable) -> None:
        self._ticker_callbacks.append(callback)

    def on_exhausted(self, callback: Callable) -> None:
        """callback(StreamExhaustedError)"""
        self._exhausted_callbacks.append(callback)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        task = asyncio.create_task(self._run(), name="market_stream")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self) -> None:
        self._is_running = False
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.status = StreamStatus.DISCONNECTED

    async def _run(self) -> None:
        while self._is_running:
            try:
                self.status = StreamStatus.CONNECTING
                self.logger.info(f"🔌 Connecting to market stream: {self.url}")

                async with websockets.connect(
                    self.url,
                    ping_interval=self.settings.WS_PING_INTERVAL,
                    max_size=2**20,
                ) as ws:
                    self._ws = ws
                    self.status = StreamStatus.CONNECTED
                    if self._attempts:
                        self.stats['reconnect_count'] += 1
                    self._attempts = 0
                    self.logger.info("✅ Connected to market stream")

                    if self._subscriptions:
                        await self._send_subscribe([s.stream_name for s in self._subscriptions])

                    async for message in ws:
                        await self._handle_message(message)

                self.logger.warning("⚠️ Market stream closed by server")

            except asyncio.CancelledError:
                break
            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                self.logger.warning(f"⚠️ Market stream connection error: {e}")
            except Exception as e:
                self.stats['errors'] += 1
                self.logger.error(f"❌ Market stream error: {e}")
            finally:
                self._ws = None

            if not self._is_running:
                break

            if self._attempts >= self.max_retries:
                await self._exhaust()
                break

            delay = backoff_delay(self._attempts, self.max_backoff)
            self._attempts += 1
            self.status = StreamStatus.RECONNECTING
            self.logger.info(f"🔄 Reconnecting in {delay}s (attempt {self._attempts}/{self.max_retries})")
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break

        if self.status != StreamStatus.EXHAUSTED:
            self.status = StreamStatus.DISCONNECTED

    async def _exhaust(self) -> None:
        self.status = StreamStatus.EXHAUSTED
        self._is_running = False
        error = StreamExhaustedError(
            f"Market stream reconnection attempts exhausted ({self.max_retries})", url=self.url
        )
        self.logger.error(f"❌ {error}")
        for callback in list(self._exhausted_callbacks):
            await self._invoke(callback, error)

    # ========================================================================
    # MESSAGES
    # ========================================================================

    async def _send_subscribe(self, streams: List[str]) -> None:
        payload = {"method": "SUBSCRIBE", "params": streams, "id": next(self._request_ids)}
        await self._ws.send(json.dumps(payload))
        self.logger.debug(f"Subscribed to {streams}")

    async def _handle_message(self, message: Any) -> None:
        self.stats['messages_received'] += 1
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            self.logger.warning(f"⚠️ Invalid stream message: {str(message)[:100]}")
            return

        # Комбинированный формат: {"stream": ..., "data": {...}}
        if isinstance(data, dict) and 'data' in data and 'stream' in data:
            data = data['data']
        if not isinstance(data, dict):
            return

        event = data.get('e')
        try:
            if event == 'kline':
                kline = parse_kline_event(data)
                if kline is not None:
                    interval = data['k'].get('i')
                    for callback in list(self._kline_callbacks):
                        await self._invoke(callback, data.get('s'), interval, kline)
            elif event == '24hrTicker':
                update = parse_ticker_event(data)
                for callback in list(self._ticker_callbacks):
                    await self._invoke(callback, update)
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.error(f"❌ Error dispatching {event} event: {e}")

    @staticmethod
    async def _invoke(callback: Callable, *args) -> None:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'status': self.status.value,
            'subscriptions': sorted(s.stream_name for s in self._subscriptions),
            'attempts': self._attempts,
        }
