import asyncio
import json

import pytest

from core import market_stream
from core.market_stream import (
    MarketStream, StreamStatus, backoff_delay, parse_kline_event, parse_ticker_event,
)
from utils.helpers import StreamExhaustedError

from tests.fakes import START


def _kline_event(closed=True):
    return {
        'e': 'kline',
        's': 'BTCUSDT',
        'k': {
            't': 1_704_067_200_000, 'T': 1_704_070_799_999, 'i': '1h',
            'o': '100.0', 'h': '101.0', 'l': '99.0', 'c': '100.5', 'v': '12.5', 'q': '1256.25',
            'x': closed,
        },
    }


def test_backoff_doubles_up_to_cap():
    assert [backoff_delay(attempt) for attempt in range(7)] == [1, 2, 4, 8, 16, 32, 32]
    assert backoff_delay(10, max_delay=5) == 5


def test_only_closed_klines_are_parsed():
    kline = parse_kline_event(_kline_event())
    assert kline.open_time == START
    assert kline.close == 100.5
    assert kline.quote_volume == 1256.25

    assert parse_kline_event(_kline_event(closed=False)) is None


def test_ticker_event():
    update = parse_ticker_event({'e': '24hrTicker', 's': 'ETHUSDT', 'c': '10.5', 'q': '99'})
    assert (update.symbol, update.price, update.quote_volume_24h) == ("ETHUSDT", 10.5, 99.0)


async def test_combined_messages_dispatch_to_callbacks(settings):
    stream = MarketStream(settings)
    received = []

    async def on_kline(symbol, interval, kline):
        received.append((symbol, interval, kline.close))

    stream.on_kline(on_kline)
    stream.on_ticker(lambda update: received.append(update.symbol))

    await stream._handle_message(json.dumps({'stream': 'btcusdt@kline_1h', 'data': _kline_event()}))
    await stream._handle_message(json.dumps(_kline_event(closed=False)))
    await stream._handle_message(json.dumps({'e': '24hrTicker', 's': 'ETHUSDT', 'c': '1', 'q': '2'}))
    await stream._handle_message("not json")

    assert received == [("BTCUSDT", "1h", 100.5), "ETHUSDT"]
    assert stream.stats['messages_received'] == 4


async def test_failing_callback_is_isolated(settings):
    stream = MarketStream(settings)

    def broken(symbol, interval, kline):
        raise RuntimeError("handler bug")

    stream.on_kline(broken)
    await stream._handle_message(json.dumps(_kline_event()))

    assert stream.stats['errors'] == 1


async def test_subscriptions_are_tracked(settings):
    stream = MarketStream(settings)
    await stream.subscribe_kline("BTCUSDT", "1h")
    await stream.subscribe_kline("BTCUSDT", "1h")
    await stream.subscribe_ticker("ETHUSDT")

    assert stream.get_stats()['subscriptions'] == ["btcusdt@kline_1h", "ethusdt@ticker"]


async def test_exhausted_after_max_retries(settings, monkeypatch):
    stream = MarketStream(settings.model_copy(update={"WS_MAX_RETRIES": 3}), url="ws://127.0.0.1:1/ws")
    attempts = []
    exhausted = asyncio.Event()
    errors = []

    def refuse(*args, **kwargs):
        attempts.append(args[0])
        raise OSError("connection refused")

    monkeypatch.setattr(market_stream.websockets, "connect", refuse)
    monkeypatch.setattr(market_stream, "backoff_delay", lambda attempt, max_delay=32: 0)

    def on_exhausted(error):
        errors.append(error)
        exhausted.set()

    stream.on_exhausted(on_exhausted)
    stream.start()
    await asyncio.wait_for(exhausted.wait(), timeout=5)

    # первая попытка и три переподключения
    assert len(attempts) == 4
    assert isinstance(errors[0], StreamExhaustedError)
    assert stream.status == StreamStatus.EXHAUSTED

    await stream.stop()


@pytest.mark.parametrize("channel,expected", [("kline", "btcusdt@kline_15m"), ("ticker", "btcusdt@ticker")])
def test_stream_names(channel, expected):
    subscription = market_stream.StreamSubscription(symbol="BTCUSDT", channel=channel, interval="15m")
    assert subscription.stream_name == expected
