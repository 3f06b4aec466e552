"""
Spot Trading Engine Core Module
Ядро системы: контракт биржи, сверка исполнения, выход из позиций
"""

# ============================================================================
# EXCHANGE
# ============================================================================
from .exchange import (
    ExchangeClient,
    Kline,
    Balance,
    Fill,
    OrderRequest,
    OrderResult,
    OrderStatusInfo,
    TickerStats,
    PairInfo,
)

# ============================================================================
# ORDER RECONCILIATION
# ============================================================================
from .order_reconciliation import (
    ExecutedOrder,
    PnlResult,
    extract_executed,
    resolve_executed,
    calculate_pnl,
)

# Версия модуля
__version__ = "1.0.0"

__all__ = [
    # Exchange
    "ExchangeClient",
    "Kline",
    "Balance",
    "Fill",
    "OrderRequest",
    "OrderResult",
    "OrderStatusInfo",
    "TickerStats",
    "PairInfo",

    # Order Reconciliation
    "ExecutedOrder",
    "PnlResult",
    "extract_executed",
    "resolve_executed",
    "calculate_pnl",
]
