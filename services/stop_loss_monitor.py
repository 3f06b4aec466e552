"""
Spot Trading Engine Stop-Loss Monitor
Периодическая проверка стоп-лоссов и тейк-профитов всех открытых позиций
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Set, Dict, Any

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient
from core.position_closer import close_position_at_market
from data.database import Database
from data.models import Position
from utils.logger import setup_logger


@dataclass
class SweepStats:
    checked: int = 0
    closed: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'checked': self.checked, 'closed': self.closed, 'updated': self.updated, 'errors': self.errors}


def breach_reason(position: Position, price: float) -> Optional[str]:
    """Стоп-лосс проверяется раньше тейк-профита"""
    if position.stop_loss is not None and price <= float(position.stop_loss):
        return "Stop loss triggered"
    if position.take_profit is not None and price >= float(position.take_profit):
        return "Take profit reached"
    return None


class StopLossMonitor:
    """
    Независимый от стратегий цикл. Пробитие уровня закрывает позицию той же
    процедурой рыночного выхода, что и у стратегий; иначе обновляются текущая
    цена и нереализованный P&L. Ошибка по одной позиции не прерывает обход.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        db: Database,
        risk_calculator: Optional[Any] = None,
        settings: Optional[Settings] = None,
    ):
        self.exchange = exchange
        self.db = db
        self.risk_calculator = risk_calculator
        self.settings = settings or get_settings()
        self.interval_ms = self.settings.STOP_LOSS_MONITOR_INTERVAL
        self.logger = setup_logger(f"{__name__}.StopLossMonitor")

        self._is_running = False
        self._tasks: Set[asyncio.Task] = set()
        self.last_sweep: Optional[SweepStats] = None

    async def check_positions(self) -> SweepStats:
        """Один обход всех открытых позиций"""
        stats = SweepStats()
        positions = await self.db.get_open_positions()

        for position in positions:
            stats.checked += 1
            try:
                price = await self.exchange.get_price(position.symbol)
                reason = breach_reason(position, price)

                if reason is None:
                    await self.db.update_position_market(position.id, price)
                    stats.updated += 1
                    continue

                self.logger.warning(f"🛑 {reason} for {position.symbol} @ {price} (position {position.id})")
                exit_result = await close_position_at_market(self.exchange, self.db, position.id, reason)
                if exit_result is None:
                    continue
                stats.closed += 1

                if self.risk_calculator is not None:
                    strategy = await self.db.get_strategy(position.strategy_id)
                    if strategy is not None:
                        await self.risk_calculator.record_realized_loss(strategy.user_id, exit_result.pnl)

            except Exception as e:
                stats.errors += 1
                self.logger.error(f"❌ Error checking position {position.id} ({position.symbol}): {e}")

        self.last_sweep = stats
        if stats.closed or stats.errors:
            self.logger.info(f"📊 Monitor sweep: {stats.to_dict()}")
        return stats

    # ========================================================================
    # LOOP
    # ========================================================================

    def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        task = asyncio.create_task(self._monitor_loop(), name="stop_loss_monitor")
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

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _monitor_loop(self) -> None:
        self.logger.info(f"🔄 Stop-loss monitor started (interval: {self.interval_ms}ms)")

        while self._is_running:
            try:
                await self.check_positions()
                await asyncio.sleep(self.interval_ms / 1000)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"❌ Stop-loss monitor error: {e}")
                await asyncio.sleep(self.interval_ms / 1000)

        self.logger.info("⏹️ Stop-loss monitor stopped")
