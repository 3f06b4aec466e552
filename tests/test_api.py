"""
HTTP API поверх контекста из тестовых фикстур. Lifespan не запускается:
база инициализирована фикстурой, фоновые циклы выключены.
"""

import httpx
import pytest

from app.main import AppContext, create_app

from tests.fakes import make_klines


@pytest.fixture
def context(settings, exchange, db):
    return AppContext.build(settings, exchange=exchange, db=db)


@pytest.fixture
async def client(context):
    transport = httpx.ASGITransport(app=create_app(context))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def _create(client, **overrides):
    payload = {'name': "btc dca", 'type': "dca", 'symbol': "BTCUSDT", 'config': {'amountPerPurchase': 50}}
    payload.update(overrides)
    response = await client.post("/api/strategies", json=payload)
    assert response.status_code == 201, response.text
    return response.json()['data']


# ============================================================================
# SYSTEM
# ============================================================================

async def test_health(client):
    response = await client.get("/api/health")
    body = response.json()

    assert response.status_code == 200
    assert body['success'] is True
    assert body['data']['status'] == "healthy"
    assert body['data']['manager']['isRunning'] is False


async def test_strategy_types(client):
    data = (await client.get("/api/strategy-types")).json()['data']
    assert [item['type'] for item in data] == ["dca", "grid", "mean_reversion", "momentum"]
    assert 'gridLevels' in data[1]['defaults']


# ============================================================================
# STRATEGIES
# ============================================================================

async def test_create_and_list(client):
    created = await _create(client)

    assert created['type'] == "dca"
    assert created['userId'] == "default"
    assert created['isActive'] is False
    assert created['isLoaded'] is False

    listed = (await client.get("/api/strategies")).json()['data']
    assert [item['id'] for item in listed] == [created['id']]


async def test_create_rejects_unknown_type(client):
    response = await client.post("/api/strategies", json={'name': "x", 'type': "arbitrage"})
    body = response.json()

    assert response.status_code == 400
    assert body['success'] is False
    assert body['kind'] == "configuration"


async def test_create_rejects_invalid_config(client):
    response = await client.post("/api/strategies", json={
        'name': "bad", 'type': "dca", 'config': {'amountPerPurchase': -5},
    })
    assert response.status_code == 400
    assert "amount_per_purchase" in response.json()['error']


async def test_create_requires_name(client):
    response = await client.post("/api/strategies", json={'type': "dca"})
    assert response.status_code == 400
    assert response.json()['kind'] == "validation"


async def test_unknown_strategy_is_404(client):
    for method, path in (("GET", "/api/strategies/missing"),
                         ("DELETE", "/api/strategies/missing"),
                         ("POST", "/api/strategies/missing/start")):
        response = await client.request(method, path)
        assert response.status_code == 404
        assert response.json()['kind'] == "not_found"


async def test_update_merges_config(client):
    created = await _create(client)

    response = await client.put(f"/api/strategies/{created['id']}",
                                json={'name': "renamed", 'config': {'maxPurchases': 3}})
    data = response.json()['data']

    assert response.status_code == 200
    assert data['name'] == "renamed"
    assert data['config'] == {'amountPerPurchase': 50, 'maxPurchases': 3}

    response = await client.put(f"/api/strategies/{created['id']}", json={'config': {'maxPurchases': 0}})
    assert response.status_code == 400


async def test_start_stop_and_delete(client, db):
    created = await _create(client)
    strategy_id = created['id']

    started = await client.post(f"/api/strategies/{strategy_id}/start")
    assert started.status_code == 200
    assert started.json()['data']['state'] == "active"
    assert (await db.get_strategy(strategy_id)).is_active

    blocked = await client.delete(f"/api/strategies/{strategy_id}")
    assert blocked.status_code == 400
    assert blocked.json()['error'] == "Stop the strategy before deleting it"

    stopped = await client.post(f"/api/strategies/{strategy_id}/stop")
    assert stopped.json()['data']['isActive'] is False
    assert stopped.json()['data']['state'] == "stopped"

    deleted = await client.delete(f"/api/strategies/{strategy_id}")
    assert deleted.json()['data'] == {'id': strategy_id, 'deleted': True}
    assert (await client.get(f"/api/strategies/{strategy_id}")).status_code == 404


# ============================================================================
# TRADES, POSITIONS, PORTFOLIO
# ============================================================================

async def test_trades_and_positions_after_tick(client, context):
    created = await _create(client)
    await client.post(f"/api/strategies/{created['id']}/start")
    await context.manager.execute_all()

    trades = (await client.get("/api/trades", params={'strategyId': created['id']})).json()['data']
    assert len(trades) == 1
    assert trades[0]['side'] == "BUY"
    assert trades[0]['strategyName'] == "btc dca"

    positions = (await client.get("/api/positions", params={'isOpen': "true"})).json()['data']
    assert len(positions) == 1

    by_symbol = (await client.get("/api/positions", params={'symbol': "ethusdt"})).json()['data']
    assert by_symbol == []
    limited = (await client.get("/api/positions", params={'symbol': "BTCUSDT", 'limit': 1})).json()['data']
    assert [item['id'] for item in limited] == [positions[0]['id']]
    assert (await client.get("/api/positions", params={'limit': 0})).status_code == 400

    summary = (await client.get("/api/portfolio/summary")).json()['data']
    assert summary['openPositions'] == 1
    assert summary['quoteBalance'] == pytest.approx(9950.0)
    assert summary['totalValue'] == pytest.approx(9950.0 + positions[0]['quantity'] * 100.0)


async def test_trades_limit_is_validated(client):
    assert (await client.get("/api/trades", params={'limit': 0})).status_code == 400
    assert (await client.get("/api/trades", params={'limit': 1001})).status_code == 400


async def test_portfolio_balances(client):
    balances = (await client.get("/api/portfolio/balances")).json()['data']
    assert {item['asset'] for item in balances} == {"USDT", "BTC"}


async def test_performance_without_trades(client):
    data = (await client.get("/api/performance", params={'days': 7})).json()['data']
    assert data['days'] == 7
    assert data['totalTrades'] == 0
    assert data['finalBalance'] == 10_000.0


# ============================================================================
# BACKTEST
# ============================================================================

async def test_backtest_rejects_inverted_dates(client):
    response = await client.post("/api/backtest", json={
        'strategyType': "dca", 'symbol': "BTCUSDT",
        'startDate': "2024-02-01T00:00:00Z", 'endDate': "2024-01-01T00:00:00Z",
    })
    assert response.status_code == 400
    assert response.json()['error'] == "Start date must be before end date"


async def test_backtest_run_and_fetch(client, market):
    market.klines["BTCUSDT"] = make_klines([100 + 0.5 * i for i in range(73)])

    response = await client.post("/api/backtest", json={
        'strategyType': "dca", 'symbol': "BTCUSDT",
        'startDate': "2024-01-01T00:00:00Z", 'endDate': "2024-01-04T00:00:00Z",
        'initialBalance': 5000, 'strategyConfig': {'takeProfitPercent': 1.0},
    })
    assert response.status_code == 200, response.text
    result = response.json()['data']
    assert result['initialBalance'] == 5000
    assert result['totalTrades'] >= 1
    assert result['config'] == {'takeProfitPercent': 1.0}

    fetched = (await client.get(f"/api/backtest/{result['id']}")).json()['data']
    assert fetched['id'] == result['id']

    listed = (await client.get("/api/backtest", params={'symbol': "BTCUSDT"})).json()['data']
    assert [item['id'] for item in listed] == [result['id']]

    assert (await client.get("/api/backtest/unknown")).status_code == 404


# ============================================================================
# PAIRS AND RISK LIMITS
# ============================================================================

async def test_unknown_pair_is_404(client):
    response = await client.get("/api/pairs/NOPEUSDT")
    assert response.status_code == 404


async def test_pairs_from_storage(client, db):
    await db.upsert_trading_pairs([{'symbol': "BTCUSDT", 'price': 100, 'score': 70, 'factors': {}}])

    pairs = (await client.get("/api/pairs")).json()['data']
    assert [pair['symbol'] for pair in pairs] == ["BTCUSDT"]
    assert (await client.get("/api/pairs/btcusdt")).json()['data']['score'] == 70


async def test_risk_limits_round_trip(client):
    defaults = (await client.get("/api/risk-limits")).json()['data']
    assert defaults['maxConcurrentPositions'] == 5

    response = await client.put("/api/risk-limits", json={'maxConcurrentPositions': 2, 'stopLossPercent': 4})
    data = response.json()['data']
    assert data['maxConcurrentPositions'] == 2
    assert data['stopLossPercent'] == 4
    assert data['maxPositionSizePercent'] == defaults['maxPositionSizePercent']

    invalid = await client.put("/api/risk-limits", json={'stopLossPercent': 500})
    assert invalid.status_code == 400
