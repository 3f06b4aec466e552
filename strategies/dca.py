"""
Spot Trading Engine DCA Strategy
Покупки фиксированной суммой по расписанию и выход по средней цене входа
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from core.exchange import PairInfo
from data.models import Position, StrategyType
from strategies.base_strategy import (
    BaseStrategy, StrategyConfig, ExecutionResult, SignalContext, PositionView
)
from strategies.strategy_registry import register_strategy
from utils.helpers import (
    get_current_utc_datetime, timestamp_to_datetime, datetime_to_timestamp, ensure_utc
)


@dataclass(frozen=True)
class DCAConfig(StrategyConfig):
    amount_per_purchase: float = 100.0
    purchase_interval: int = 86_400_000
    max_purchases: int = 10
    take_profit_percent: float = 5.0
    stop_loss_percent: Optional[float] = None

    def validate(self) -> None:
        super().validate()
        self._require_positive('amount_per_purchase', 'purchase_interval', 'max_purchases',
                               'take_profit_percent')
        if self.stop_loss_percent is not None:
            self._require_positive('stop_loss_percent')


# ============================================================================
# AGGREGATE HELPERS
# ============================================================================

def average_entry_price(positions: Sequence[PositionView]) -> float:
    """Средняя цена входа, взвешенная по количеству"""
    total_qty = sum(p.quantity for p in positions)
    if total_qty <= 0:
        return 0.0
    return sum(p.entry_price * p.quantity for p in positions) / total_qty


def aggregate_profit_percent(positions: Sequence[PositionView], price: float) -> float:
    average = average_entry_price(positions)
    if average <= 0:
        return 0.0
    return (price - average) / average * 100


@register_strategy(StrategyType.DCA.value)
class DCAStrategy(BaseStrategy):
    """
    Покупка на ``amount_per_purchase`` USDT раз в ``purchase_interval`` мс,
    не более ``max_purchases`` лотов. Время последней покупки хранится
    в конфигурации стратегии в БД (``lastPurchaseTime``, мс).
    """

    strategy_type = StrategyType.DCA
    config_class = DCAConfig
    signal_candles = 0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_purchase_time: Optional[datetime] = None

    async def initialize(self) -> None:
        record = await self.db.get_strategy(self.strategy_id)
        if record and record.config:
            last_ms = record.config.get('lastPurchaseTime')
            if last_ms:
                self.last_purchase_time = timestamp_to_datetime(int(last_ms))
                self.logger.info(f"🔄 Restored last purchase time: {self.last_purchase_time.isoformat()}")

    def last_entry_time(self) -> Optional[datetime]:
        return self.last_purchase_time

    # ========================================================================
    # SIGNALS
    # ========================================================================

    def interval_elapsed(self, now: datetime, last_entry: Optional[datetime]) -> bool:
        if last_entry is None:
            return True
        elapsed = ensure_utc(now) - ensure_utc(last_entry)
        return elapsed >= timedelta(milliseconds=self.config.purchase_interval)

    def evaluate_entry(self, ctx: SignalContext) -> bool:
        return (self.interval_elapsed(ctx.now, ctx.last_entry_time)
                and len(ctx.positions) < self.config.max_purchases)

    def evaluate_exit(self, position: PositionView, ctx: SignalContext) -> Optional[str]:
        price = ctx.price
        if position.take_profit is not None and price >= position.take_profit:
            return "Take profit reached"
        if position.stop_loss is not None and price <= position.stop_loss:
            return "Stop loss triggered"

        lots = list(ctx.positions) or [position]
        if aggregate_profit_percent(lots, price) >= self.config.take_profit_percent:
            return "Average take profit reached"
        return None

    def entry_levels(self, entry_price: float, ctx: SignalContext):
        config: DCAConfig = self.config
        stop_loss = entry_price * (1 - config.stop_loss_percent / 100) if config.stop_loss_percent else None
        take_profit = entry_price * (1 + config.take_profit_percent / 100)
        return stop_loss, take_profit

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def run_tick(self, symbol: str, pair: Optional[PairInfo]) -> ExecutionResult:
        ctx = await self.build_context(symbol)

        if ctx.positions:
            closed = await self._check_exits(ctx)
            if closed:
                return ExecutionResult(success=True, message=f"Closed {closed} DCA lot(s)",
                                       positions_closed=closed)

        if not self.interval_elapsed(ctx.now, ctx.last_entry_time):
            return ExecutionResult(success=True, message="Waiting for next purchase interval")

        if len(ctx.positions) >= self.config.max_purchases:
            return ExecutionResult(success=False, message="Maximum purchases reached")

        amount = self.config.amount_per_purchase
        denial = await self.check_risk(symbol, amount / ctx.price, ctx.price)
        if denial:
            return ExecutionResult(success=False, message=f"Risk check failed: {denial}")

        order = await self.exchange.market_buy(symbol, amount)
        position, price = await self.open_position(
            symbol, order, fallback_price=ctx.price,
            levels=lambda entry: self.entry_levels(entry, ctx),
        )

        return ExecutionResult(
            success=True,
            message=f"DCA purchase #{len(ctx.positions) + 1} at {price:.8g}",
            order_id=order.order_id,
            position_id=position.id,
            positions_opened=1,
        )

    async def _check_exits(self, ctx: SignalContext) -> int:
        """Выход по лоту (TP/SL) либо по всем лотам сразу по средней цене"""
        if aggregate_profit_percent(ctx.positions, ctx.price) >= self.config.take_profit_percent:
            self.logger.info(f"🎯 Average take profit reached for {ctx.symbol}, closing all lots")
            lots = list(ctx.positions)
            reason = "Average take profit reached"
        else:
            lots = []
            for position in ctx.positions:
                if position.take_profit is not None and ctx.price >= position.take_profit:
                    lots.append(position)
                elif position.stop_loss is not None and ctx.price <= position.stop_loss:
                    lots.append(position)
            reason = "Lot exit"

        closed = 0
        for position in lots:
            lot_reason = self.evaluate_exit(position, ctx) or reason
            if await self.close_position(position.id, lot_reason):
                closed += 1
        return closed

    async def on_position_opened(self, position: Position) -> None:
        self.last_purchase_time = ensure_utc(position.opened_at) or get_current_utc_datetime()
        record = await self.db.get_strategy(self.strategy_id)
        stored = dict(record.config or {}) if record else {}
        stored['lastPurchaseTime'] = datetime_to_timestamp(self.last_purchase_time)
        await self.db.update_strategy(self.strategy_id, config=stored)

    def get_status(self):
        status = super().get_status()
        status['lastPurchaseTime'] = (
            datetime_to_timestamp(self.last_purchase_time) if self.last_purchase_time else None
        )
        return status
