import pytest

from core.exchange import Fill, OrderResult, OrderStatusInfo
from core.order_reconciliation import extract_executed, resolve_executed, calculate_pnl, order_fee
from data.models import OrderSide, OrderType


def _result(**kwargs) -> OrderResult:
    values = dict(order_id="1", symbol="BTCUSDT", status="FILLED", side=OrderSide.BUY, type=OrderType.MARKET)
    values.update(kwargs)
    return OrderResult(**values)


class StatusExchange:
    def __init__(self, status=None, error=None):
        self.status = status
        self.error = error
        self.queries = 0

    async def get_order(self, symbol, order_id):
        self.queries += 1
        if self.error:
            raise self.error
        return self.status


def test_fills_reconcile_to_weighted_average():
    result = _result(fills=[Fill(price=100, qty=1), Fill(price=102, qty=1)])
    executed = extract_executed(result)
    assert executed.price == pytest.approx(101)
    assert executed.qty == pytest.approx(2)
    assert executed.is_valid


def test_order_fields_used_without_fills():
    executed = extract_executed(_result(price=250.0, executed_qty=0.4))
    assert executed.price == 250.0
    assert executed.qty == 0.4


def test_invalid_values_are_zeroed():
    executed = extract_executed(_result(price=float('nan'), executed_qty=-1))
    assert executed.price == 0.0
    assert executed.qty == 0.0
    assert not executed.is_valid


async def test_resolve_queries_exchange_when_local_data_missing():
    exchange = StatusExchange(OrderStatusInfo(order_id="1", symbol="BTCUSDT", status="FILLED",
                                              executed_qty=2, cumulative_quote_qty=202))
    executed = await resolve_executed(exchange, _result())
    assert exchange.queries == 1
    assert executed.price == pytest.approx(101)
    assert executed.qty == 2


async def test_resolve_skips_query_when_fills_valid():
    exchange = StatusExchange(error=RuntimeError("should not be called"))
    executed = await resolve_executed(exchange, _result(fills=[Fill(price=10, qty=3)]))
    assert exchange.queries == 0
    assert executed.price == 10


async def test_resolve_returns_partial_values_when_query_fails():
    exchange = StatusExchange(error=RuntimeError("timeout"))
    executed = await resolve_executed(exchange, _result(executed_qty=1.5))
    assert executed.qty == 1.5
    assert executed.price == 0.0


def test_calculate_pnl():
    result = calculate_pnl(entry_price=100, exit_price=110, quantity=2)
    assert result.pnl == pytest.approx(20)
    assert result.pnl_percent == pytest.approx(10)
    assert calculate_pnl(0, 10, 1).pnl_percent == 0.0


def test_order_fee_defaults_to_base_asset():
    fee, asset = order_fee(_result(fills=[Fill(price=100, qty=1, commission=0.001, commission_asset="BTC"),
                                          Fill(price=100, qty=1, commission=0.002, commission_asset="BTC")]))
    assert fee == pytest.approx(0.003)
    assert asset == "BTC"
    assert order_fee(_result(), "ETHUSDT") == (0, "ETH")
