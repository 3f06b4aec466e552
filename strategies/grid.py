"""
Spot Trading Engine Grid Strategy
Сетка лимитных уровней: покупки ниже цены, продажи выше
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from core.exchange import Kline, PairInfo
from core.order_reconciliation import resolve_executed, order_fee
from data.models import Position, StrategyType, OrderSide, OrderType, OrderStatus
from strategies.base_strategy import (
    BaseStrategy, StrategyConfig, ExecutionResult, SignalContext, PositionView
)
from strategies.strategy_registry import register_strategy
from utils.helpers import ConfigurationError, extract_base_asset, floor_to_decimals


# Допуски срабатывания и "занятости" уровня
TRIGGER_TOLERANCE = 0.001
TOUCH_TOLERANCE = 0.01
RANGE_CANDLES = 30
RANGE_INTERVAL = "1d"


@dataclass(frozen=True)
class GridConfig(StrategyConfig):
    grid_levels: int = 10
    grid_spacing: float = 1.0
    upper_price: Optional[float] = None
    lower_price: Optional[float] = None
    quantity_per_grid: float = 0.001
    max_positions: int = 5

    def validate(self) -> None:
        super().validate()
        self._require_positive('grid_levels', 'grid_spacing', 'quantity_per_grid', 'max_positions')
        if self.upper_price is not None and self.lower_price is not None:
            if self.lower_price <= 0 or self.upper_price <= self.lower_price:
                raise ConfigurationError(
                    f"Grid range is invalid: lower={self.lower_price}, upper={self.upper_price}"
                )


@dataclass(frozen=True)
class GridLevels:
    """Рассчитанная сетка"""
    buy_levels: Tuple[float, ...]
    sell_levels: Tuple[float, ...]
    lower: float
    upper: float
    spacing: float
    symbol: str = ""


def compute_grid_levels(
    price: float,
    levels: int,
    lower: float,
    upper: float,
    symbol: str = "",
) -> GridLevels:
    """
    Шаг = (upper - lower) / levels; ``levels // 2`` уровней покупки ниже
    цены и столько же продажи выше, только внутри диапазона.
    """
    spacing = (upper - lower) / levels
    half = levels // 2

    buy_levels = []
    sell_levels = []
    for i in range(1, half + 1):
        buy = price - spacing * i
        if lower <= buy < price:
            buy_levels.append(buy)
        sell = price + spacing * i
        if price < sell <= upper:
            sell_levels.append(sell)

    return GridLevels(
        buy_levels=tuple(sorted(buy_levels)),
        sell_levels=tuple(sorted(sell_levels)),
        lower=lower,
        upper=upper,
        spacing=spacing,
        symbol=symbol,
    )


def range_from_candles(candles: List[Kline]) -> Tuple[float, float]:
    """Диапазон по дневным свечам: (min low * 0.95, max high * 1.05)"""
    lower = min(candle.low for candle in candles) * 0.95
    upper = max(candle.high for candle in candles) * 1.05
    return lower, upper


def is_level_touched(level: float, positions: List[PositionView]) -> bool:
    return any(abs(p.entry_price - level) / level < TOUCH_TOLERANCE for p in positions)


def next_sell_level(entry_price: float, sell_levels: Tuple[float, ...]) -> Optional[float]:
    higher = [level for level in sell_levels if level > entry_price]
    return min(higher) if higher else None


@register_strategy(StrategyType.GRID.value)
class GridStrategy(BaseStrategy):
    """
    Сетка считается при инициализации (или лениво на первом тике).
    Каждый тик: выходы по открытым позициям, лимит позиций, затем первый
    сработавший свободный уровень.
    """

    strategy_type = StrategyType.GRID
    config_class = GridConfig
    signal_candles = 0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.grid: Optional[GridLevels] = None

    async def initialize(self) -> None:
        if not self.symbol:
            return
        price = await self.exchange.get_price(self.symbol)
        await self.setup_grid(self.symbol, price)

    async def setup_grid(self, symbol: str, price: float) -> GridLevels:
        config: GridConfig = self.config
        if config.upper_price is not None and config.lower_price is not None:
            lower, upper = config.lower_price, config.upper_price
        else:
            candles = await self.exchange.get_klines(symbol, RANGE_INTERVAL, RANGE_CANDLES)
            if not candles:
                raise ConfigurationError(f"No daily candles to build grid for {symbol}")
            lower, upper = range_from_candles(candles)

        self.grid = compute_grid_levels(price, config.grid_levels, lower, upper, symbol=symbol)
        self.logger.info(
            f"📊 Grid for {symbol}: {len(self.grid.buy_levels)} buy / "
            f"{len(self.grid.sell_levels)} sell levels, range {lower:.8g}-{upper:.8g}"
        )
        return self.grid

    def grid_for(self, ctx: SignalContext) -> GridLevels:
        """Сетка для бэктеста: диапазон по окну свечей"""
        if not self.has_grid_for(ctx.symbol):
            config: GridConfig = self.config
            if config.upper_price is not None and config.lower_price is not None:
                lower, upper = config.lower_price, config.upper_price
            else:
                lower, upper = range_from_candles(list(ctx.candles)[-RANGE_CANDLES:])
            self.grid = compute_grid_levels(ctx.price, config.grid_levels, lower, upper, symbol=ctx.symbol)
        return self.grid

    def has_grid_for(self, symbol: str) -> bool:
        """Сетка строится под конкретный символ; при смене пары пересчитывается"""
        return self.grid is not None and self.grid.symbol == symbol

    # ========================================================================
    # SIGNALS
    # ========================================================================

    def triggered_level(self, ctx: SignalContext) -> Optional[Tuple[OrderSide, float]]:
        grid = self.grid_for(ctx)
        positions = list(ctx.positions)

        for level in grid.buy_levels:
            if ctx.price <= level * (1 + TRIGGER_TOLERANCE) and not is_level_touched(level, positions):
                return OrderSide.BUY, level

        for level in grid.sell_levels:
            if ctx.price >= level * (1 - TRIGGER_TOLERANCE) and not is_level_touched(level, positions):
                return OrderSide.SELL, level

        return None

    def evaluate_entry(self, ctx: SignalContext) -> bool:
        if len(ctx.positions) >= self.config.max_positions:
            return False
        triggered = self.triggered_level(ctx)
        return triggered is not None and triggered[0] == OrderSide.BUY

    def evaluate_exit(self, position: PositionView, ctx: SignalContext) -> Optional[str]:
        price = ctx.price
        if position.take_profit is not None and price >= position.take_profit:
            return "Take profit reached"

        if self.has_grid_for(position.symbol):
            target = next_sell_level(position.entry_price, self.grid.sell_levels)
            if target is not None and price >= target * (1 - TRIGGER_TOLERANCE):
                return "Grid sell level reached"

        if position.stop_loss is not None and price <= position.stop_loss:
            return "Stop loss triggered"
        return None

    def entry_levels(self, entry_price: float, ctx: SignalContext):
        grid = self.grid_for(ctx)
        return None, next_sell_level(entry_price, grid.sell_levels)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def run_tick(self, symbol: str, pair: Optional[PairInfo]) -> ExecutionResult:
        if not self.has_grid_for(symbol):
            await self.setup_grid(symbol, await self.exchange.get_price(symbol))

        ctx = await self.build_context(symbol)

        closed = 0
        for position in ctx.positions:
            reason = self.evaluate_exit(position, ctx)
            if reason and await self.close_position(position.id, reason):
                closed += 1
        if closed:
            return ExecutionResult(success=True, message=f"Closed {closed} grid position(s)",
                                   positions_closed=closed)

        if len(ctx.positions) >= self.config.max_positions:
            return ExecutionResult(success=False, message="Maximum positions reached")

        triggered = self.triggered_level(ctx)
        if triggered is None:
            return ExecutionResult(success=True, message="No grid levels triggered")

        side, level = triggered
        if side == OrderSide.BUY:
            return await self._buy_level(symbol, level)
        return await self._sell_level(symbol, level)

    async def _buy_level(self, symbol: str, level: float) -> ExecutionResult:
        quantity = self.config.quantity_per_grid

        denial = await self.check_risk(symbol, quantity, level)
        if denial:
            return ExecutionResult(success=False, message=f"Risk check failed: {denial}")

        order = await self.exchange.limit_buy(symbol, quantity, level)
        position, price = await self.open_position(symbol, order, fallback_price=level)

        return ExecutionResult(
            success=True,
            message=f"Grid buy at {price:.8g}",
            order_id=order.order_id,
            position_id=position.id,
            positions_opened=1,
        )

    async def _sell_level(self, symbol: str, level: float) -> ExecutionResult:
        quantity = self.config.quantity_per_grid
        base_balance = await self.exchange.get_balance(extract_base_asset(symbol))
        if not base_balance or base_balance.free < quantity:
            return ExecutionResult(success=False, message="Insufficient balance for sell order")

        order = await self.exchange.limit_sell(symbol, quantity, level)
        executed = await resolve_executed(self.exchange, order)
        price = executed.price if executed.price > 0 else level
        fee, fee_asset = order_fee(order, symbol)

        await self.db.save_trade(
            strategy_id=self.strategy_id,
            symbol=symbol,
            side=OrderSide.SELL.value,
            order_type=OrderType.LIMIT.value,
            quantity=executed.qty or quantity,
            price=price,
            fee=fee,
            fee_asset=fee_asset,
            exchange_order_id=order.order_id,
            status=order.status or OrderStatus.FILLED.value,
        )
        return ExecutionResult(success=True, message=f"Grid sell at {price:.8g}", order_id=order.order_id)

    async def on_position_opened(self, position: Position) -> None:
        if not self.has_grid_for(position.symbol):
            return
        target = next_sell_level(float(position.entry_price), self.grid.sell_levels)
        if target is not None:
            await self.db.update_position_levels(position.id, take_profit=floor_to_decimals(target))
            self.logger.debug(f"Take profit for {position.id} set to next sell level {target:.8g}")

    def get_status(self):
        status = super().get_status()
        if self.grid is not None:
            status['grid'] = {
                'buyLevels': list(self.grid.buy_levels),
                'sellLevels': list(self.grid.sell_levels),
                'lower': self.grid.lower,
                'upper': self.grid.upper,
                'spacing': self.grid.spacing,
                'symbol': self.grid.symbol,
            }
        return status

