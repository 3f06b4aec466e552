"""
Spot Trading Engine Mean Reversion Strategy
Покупка при сильном отклонении вниз от среднего, выход при возврате к нему
"""

from dataclasses import dataclass
from typing import Optional

from core.exchange import PairInfo
from data.models import StrategyType
from strategies.base_strategy import (
    BaseStrategy, StrategyConfig, ExecutionResult, SignalContext, PositionView
)
from strategies.strategy_registry import register_strategy
from utils import indicators


# Крайние зоны полосы Боллинджера, %
LOWER_ZONE = 10
UPPER_ZONE = 90


@dataclass(frozen=True)
class MeanReversionConfig(StrategyConfig):
    rsi_period: int = 14
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    bb_period: int = 20
    bb_std_dev: float = 2.0
    sma_period: int = 20
    position_size: float = 5.0
    take_profit_percent: float = 2.0
    stop_loss_percent: float = 3.0
    min_revert_distance: float = 1.0

    def validate(self) -> None:
        super().validate()
        self._require_positive('rsi_period', 'bb_period', 'bb_std_dev', 'sma_period',
                               'position_size', 'take_profit_percent', 'stop_loss_percent')
        if self.min_revert_distance < 0:
            self._require_positive('min_revert_distance')


@dataclass
class ReversionSignals:
    price: float
    mean: float
    upper: float
    lower: float
    rsi: float

    @property
    def distance_percent(self) -> float:
        """Отклонение от среднего в процентах (отрицательное ниже среднего)"""
        return (self.price - self.mean) / self.mean * 100 if self.mean else 0.0

    @property
    def position_in_band(self) -> float:
        """Положение цены в полосе: 0 у нижней границы, 100 у верхней"""
        width = self.upper - self.lower
        if width == 0:
            return 50.0
        return (self.price - self.lower) / width * 100


@register_strategy(StrategyType.MEAN_REVERSION.value)
class MeanReversionStrategy(BaseStrategy):

    strategy_type = StrategyType.MEAN_REVERSION
    config_class = MeanReversionConfig
    signal_interval = "1h"
    signal_candles = 100

    def compute_signals(self, ctx: SignalContext) -> Optional[ReversionSignals]:
        config: MeanReversionConfig = self.config
        closes = ctx.closes
        if len(closes) < max(config.bb_period, config.sma_period, config.rsi_period + 1):
            return None

        bands = indicators.bollinger_bands(closes, config.bb_period, config.bb_std_dev)
        middle = indicators.last_value(bands.middle)
        mean = middle if not indicators.is_nan(middle) else indicators.last_value(
            indicators.sma(closes, config.sma_period)
        )

        signals = ReversionSignals(
            price=ctx.price,
            mean=mean,
            upper=indicators.last_value(bands.upper),
            lower=indicators.last_value(bands.lower),
            rsi=indicators.last_value(indicators.rsi(closes, config.rsi_period)),
        )
        if any(indicators.is_nan(v) for v in (signals.mean, signals.upper, signals.lower, signals.rsi)):
            return None
        return signals

    def evaluate_entry(self, ctx: SignalContext) -> bool:
        if ctx.positions:
            return False
        signals = self.compute_signals(ctx)
        if signals is None:
            return False

        config: MeanReversionConfig = self.config
        return (
            signals.price < signals.mean
            and signals.rsi < config.rsi_oversold
            and (signals.price <= signals.lower or signals.position_in_band < LOWER_ZONE)
            and abs(signals.distance_percent) >= config.min_revert_distance
        )

    def evaluate_exit(self, position: PositionView, ctx: SignalContext) -> Optional[str]:
        price = ctx.price
        if position.take_profit is not None and price >= position.take_profit:
            return "Take profit reached"
        if position.stop_loss is not None and price <= position.stop_loss:
            return "Stop loss triggered"

        signals = self.compute_signals(ctx)
        if signals is None:
            return None
        if price >= signals.upper or signals.position_in_band > UPPER_ZONE:
            return "Upper band reached"
        if price >= signals.mean:
            return "Price reverted to mean"
        if signals.rsi >= self.config.rsi_overbought:
            return "RSI overbought"
        return None

    def entry_levels(self, entry_price: float, ctx: SignalContext):
        config: MeanReversionConfig = self.config
        signals = self.compute_signals(ctx)
        target = entry_price * (1 + config.take_profit_percent / 100)
        if signals is not None:
            target = max(signals.mean, target)
        return entry_price * (1 - config.stop_loss_percent / 100), target

    async def run_tick(self, symbol: str, pair: Optional[PairInfo]) -> ExecutionResult:
        ctx = await self.build_context(symbol)

        if ctx.positions:
            position = ctx.positions[0]
            reason = self.evaluate_exit(position, ctx)
            if reason:
                return await self.exit_result(position.id, reason)
            return ExecutionResult(success=True, message="Position held, exit conditions checked")

        if not self.evaluate_entry(ctx):
            return ExecutionResult(success=True, message="Entry conditions not met")

        free = await self.quote_balance()
        if free <= 0:
            return ExecutionResult(success=False, message="Insufficient USDT balance")

        order_value = free * self.config.position_size / 100
        denial = await self.check_risk(symbol, order_value / ctx.price, ctx.price)
        if denial:
            return ExecutionResult(success=False, message=f"Risk check failed: {denial}")

        order = await self.exchange.market_buy(symbol, order_value)
        position, price = await self.open_position(
            symbol, order, fallback_price=ctx.price,
            levels=lambda entry: self.entry_levels(entry, ctx),
        )
        self.logger.info(f"🎯 Mean reversion entry {symbol} @ {price:.8g}")

        return ExecutionResult(
            success=True,
            message=f"Mean reversion entry at {price:.8g}",
            order_id=order.order_id,
            position_id=position.id,
            positions_opened=1,
        )
