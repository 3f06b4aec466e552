"""
Spot Trading Engine Momentum Strategy
Вход по совокупности трендовых сигналов (EMA, MACD, RSI, объем)
"""

from dataclasses import dataclass
from typing import Dict, Optional

from core.exchange import PairInfo
from data.models import StrategyType
from strategies.base_strategy import (
    BaseStrategy, StrategyConfig, ExecutionResult, SignalContext, PositionView
)
from strategies.strategy_registry import register_strategy
from utils import indicators


MIN_CONDITIONS = 6


@dataclass(frozen=True)
class MomentumConfig(StrategyConfig):
    rsi_period: int = 14
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    ema_fast: int = 12
    ema_slow: int = 26
    volume_period: int = 20
    min_volume_ratio: float = 1.2
    position_size: float = 5.0
    take_profit_percent: float = 5.0
    stop_loss_percent: float = 2.5
    trailing_stop_percent: Optional[float] = None

    def validate(self) -> None:
        super().validate()
        self._require_positive('rsi_period', 'ema_fast', 'ema_slow', 'volume_period',
                               'position_size', 'take_profit_percent', 'stop_loss_percent')
        if self.trailing_stop_percent is not None:
            self._require_positive('trailing_stop_percent')


@dataclass
class MomentumSignals:
    price: float
    ema_fast: float
    ema_slow: float
    macd: float
    signal: float
    histogram: float
    rsi: float
    volume_ratio: float

    def conditions(self, config: MomentumConfig) -> Dict[str, bool]:
        return {
            'priceAboveFastEma': self.price > self.ema_fast,
            'priceAboveSlowEma': self.price > self.ema_slow,
            'fastAboveSlow': self.ema_fast > self.ema_slow,
            'macdBullish': self.macd > self.signal and self.histogram > 0,
            'rsiBelowOverbought': self.rsi < config.rsi_overbought,
            'rsiAboveOversold': self.rsi > config.rsi_oversold,
            'volumeConfirmed': self.volume_ratio >= config.min_volume_ratio,
        }


def trailing_stop(current_stop: Optional[float], entry_price: float, price: float,
                  trailing_percent: float) -> Optional[float]:
    """
    Трейлинг-стоп пересчитывается только в прибыли и никогда не опускается.
    """
    if price <= entry_price:
        return current_stop
    candidate = price * (1 - trailing_percent / 100)
    return max(current_stop or 0.0, candidate)


@register_strategy(StrategyType.MOMENTUM.value)
class MomentumStrategy(BaseStrategy):
    """Момент-стратегия по 100 часовым свечам"""

    strategy_type = StrategyType.MOMENTUM
    config_class = MomentumConfig
    signal_interval = "1h"
    signal_candles = 100

    def compute_signals(self, ctx: SignalContext) -> Optional[MomentumSignals]:
        config: MomentumConfig = self.config
        closes = ctx.closes
        volumes = ctx.volumes
        if len(closes) < config.ema_slow:
            return None

        macd_result = indicators.macd(closes, config.ema_fast, config.ema_slow, 9)
        avg_volume = indicators.average_volume(volumes, config.volume_period)

        signals = MomentumSignals(
            price=ctx.price,
            ema_fast=indicators.last_value(indicators.ema(closes, config.ema_fast)),
            ema_slow=indicators.last_value(indicators.ema(closes, config.ema_slow)),
            macd=indicators.last_value(macd_result.macd),
            signal=indicators.last_value(macd_result.signal),
            histogram=indicators.last_value(macd_result.histogram),
            rsi=indicators.last_value(indicators.rsi(closes, config.rsi_period)),
            volume_ratio=volumes[-1] / avg_volume if avg_volume > 0 else 0.0,
        )
        if any(indicators.is_nan(value) for value in (signals.ema_fast, signals.ema_slow, signals.rsi)):
            return None
        return signals

    def evaluate_entry(self, ctx: SignalContext) -> bool:
        if ctx.positions:
            return False
        signals = self.compute_signals(ctx)
        if signals is None:
            return False
        met = sum(signals.conditions(self.config).values())
        return met >= MIN_CONDITIONS

    def evaluate_exit(self, position: PositionView, ctx: SignalContext) -> Optional[str]:
        price = ctx.price
        if position.take_profit is not None and price >= position.take_profit:
            return "Take profit reached"
        if position.stop_loss is not None and price <= position.stop_loss:
            return "Stop loss triggered"

        signals = self.compute_signals(ctx)
        if signals is None:
            return None
        if price < signals.ema_slow:
            return "Price below slow EMA"
        if signals.macd < signals.signal:
            return "MACD bearish crossover"
        if signals.rsi > self.config.rsi_overbought:
            return "RSI overbought"
        return None

    def entry_levels(self, entry_price: float, ctx: SignalContext):
        config: MomentumConfig = self.config
        return (entry_price * (1 - config.stop_loss_percent / 100),
                entry_price * (1 + config.take_profit_percent / 100))

    async def run_tick(self, symbol: str, pair: Optional[PairInfo]) -> ExecutionResult:
        ctx = await self.build_context(symbol)

        if ctx.positions:
            position = ctx.positions[0]
            reason = self.evaluate_exit(position, ctx)
            if reason:
                return await self.exit_result(position.id, reason)

            if self.config.trailing_stop_percent:
                new_stop = trailing_stop(position.stop_loss, position.entry_price, ctx.price,
                                         self.config.trailing_stop_percent)
                if new_stop is not None and new_stop != position.stop_loss:
                    await self.db.update_position_levels(position.id, stop_loss=new_stop)
                    self.logger.info(f"🔄 Trailing stop for {symbol} moved to {new_stop:.8g}")

            return ExecutionResult(success=True, message="Position held, exit conditions checked")

        if not self.evaluate_entry(ctx):
            return ExecutionResult(success=True, message="Entry conditions not met")

        return await self.enter_market(symbol, ctx)

    async def enter_market(self, symbol: str, ctx: SignalContext) -> ExecutionResult:
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
        self.logger.info(f"🚀 Momentum entry {symbol} @ {price:.8g}")

        return ExecutionResult(
            success=True,
            message=f"Momentum entry at {price:.8g}",
            order_id=order.order_id,
            position_id=position.id,
            positions_opened=1,
        )
