import math

import pytest

from core.exchange import PairInfo, TickerStats
from services.pair_scorer import (
    PairScorer, composite_score, score_rsi, score_volume, SCORE_WEIGHTS,
)
from services.pair_selector import PairSelector, is_valid_usdt_pair

from tests.fakes import make_klines


def _pair(symbol):
    return PairInfo(symbol=symbol, base_asset=symbol[:-4], price=100.0, volume_24h=1_000_000)


@pytest.fixture
def scored_market(market):
    market.klines["BTCUSDT"] = make_klines([100 + i * 0.3 for i in range(100)], volume=150.0)
    market.klines["ETHUSDT"] = make_klines([50 - i * 0.1 for i in range(100)])
    market.tickers = [
        TickerStats(symbol="BTCUSDT", price=130.0, volume_24h=1000, quote_volume_24h=5_000_000),
        TickerStats(symbol="ETHUSDT", price=40.0, volume_24h=1000, quote_volume_24h=3_000_000),
        TickerStats(symbol="BTCEUR", price=120.0, volume_24h=1000, quote_volume_24h=9_000_000),
    ]
    return market


def test_weights_sum_to_one():
    assert sum(SCORE_WEIGHTS.values()) == pytest.approx(1.0)


def test_sub_scores():
    assert score_rsi(0) == pytest.approx(70.0)
    assert score_rsi(50) == 60.0
    assert score_rsi(100) == pytest.approx(30.0)
    assert score_rsi(math.nan) == 50.0
    assert score_volume(300, 100) == 100.0
    assert score_volume(10, 0) == 50.0
    assert composite_score({name: 200.0 for name in SCORE_WEIGHTS}) == 100.0
    assert composite_score({'rsi': math.nan}) == 0.0


async def test_score_within_bounds(exchange, scored_market):
    scorer = PairScorer(exchange)
    result = await scorer.score_pair(_pair("BTCUSDT"))

    assert 0 <= result.score <= 100
    assert set(result.factors) == set(SCORE_WEIGHTS)
    assert result.pair.score == result.score


async def test_failed_fetch_scores_zero(exchange, scored_market):
    scored_market.failing_klines.add("ETHUSDT")
    scorer = PairScorer(exchange)

    results = await scorer.score_pairs([_pair("ETHUSDT"), _pair("BTCUSDT")])

    assert [item.pair.symbol for item in results] == ["BTCUSDT", "ETHUSDT"]
    assert results[-1].score == 0.0
    assert all(value == 0.0 for value in results[-1].factors.values())


def test_only_usdt_pairs_are_candidates():
    assert is_valid_usdt_pair("BTCUSDT")
    assert not is_valid_usdt_pair("BTCEUR")
    assert not is_valid_usdt_pair("USDT")


async def test_selector_serves_cache_within_ttl(exchange, db, scored_market):
    selector = PairSelector(exchange, db, ttl_ms=60_000)

    best = await selector.get_best_pair()
    await selector.get_best_pairs(5)

    assert scored_market.ticker_requests == 1
    assert best.symbol in ("BTCUSDT", "ETHUSDT")
    assert {pair.symbol for pair in selector.get_cached_pairs()} == {"BTCUSDT", "ETHUSDT"}

    stored = await selector.get_stored_pairs()
    assert {pair.symbol for pair in stored} == {"BTCUSDT", "ETHUSDT"}


async def test_refresh_ignores_ttl(exchange, db, scored_market):
    selector = PairSelector(exchange, db, ttl_ms=60_000)
    await selector.update_pairs()
    await selector.refresh_pairs()

    assert scored_market.ticker_requests == 2


async def test_min_volume_filter(exchange, db, scored_market):
    selector = PairSelector(exchange, db, min_volume_24h=4_000_000)
    pairs = await selector.update_pairs()
    assert [pair.symbol for pair in pairs] == ["BTCUSDT"]


async def test_cache_warmed_from_storage(exchange, db, scored_market):
    await PairSelector(exchange, db).update_pairs()

    fresh = PairSelector(exchange, db)
    assert await fresh.load_pairs_from_db() == 2
    assert fresh.is_cache_valid()
    assert (await fresh.get_pair("ETHUSDT")).base_asset == "ETH"
