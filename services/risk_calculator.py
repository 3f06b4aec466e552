"""
Spot Trading Engine Risk Calculator
Предторговые проверки риска, лимиты пользователя и расчет размера позиции
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient
from data.database import Database
from utils.helpers import (
    ValidationError, ensure_utc, extract_base_asset, floor_to_decimals, QUOTE_ASSET
)
from utils.logger import setup_logger


# ============================================================================
# TYPES
# ============================================================================

class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class RiskCheckResult:
    allowed: bool
    risk_level: RiskLevel
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'allowed': self.allowed, 'reason': self.reason, 'riskLevel': self.risk_level.value}


@dataclass(frozen=True)
class RiskLimitValues:
    """Действующие лимиты пользователя (сохраненные или по умолчанию)"""
    max_position_size_percent: float
    stop_loss_percent: float
    take_profit_percent: float
    daily_loss_limit_percent: float
    max_concurrent_positions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'maxPositionSizePercent': self.max_position_size_percent,
            'stopLossPercent': self.stop_loss_percent,
            'takeProfitPercent': self.take_profit_percent,
            'dailyLossLimitPercent': self.daily_loss_limit_percent,
            'maxConcurrentPositions': self.max_concurrent_positions,
        }


@dataclass
class PositionSizeResult:
    quantity: float
    value: float
    percentage: float


# ============================================================================
# RISK CALCULATOR
# ============================================================================

class RiskCalculator:
    """
    Проверки выполняются по порядку до первого отказа:

    1. размер позиции относительно общего баланса USDT;
    2. число одновременно открытых позиций;
    3. дневной накопитель реализованного убытка (обнуляется раз в сутки UTC);
    4. позиции в том же базовом активе (только помечаются).

    Отказ это обычный результат, а не исключение. Внутренняя ошибка
    любой проверки дает отказ с высоким уровнем риска.
    """

    def __init__(self, exchange: ExchangeClient, db: Database, settings: Optional[Settings] = None):
        self.exchange = exchange
        self.db = db
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.RiskCalculator")

    async def check_trade_risk(
        self,
        user_id: str,
        symbol: str,
        quantity: float,
        price: float,
        side: str = "BUY",
    ) -> RiskCheckResult:
        try:
            limits = await self.get_risk_limits(user_id)

            for check in (
                self._check_position_size(quantity, price, limits),
                self._check_concurrent_positions(user_id, limits),
                self._check_daily_loss_limit(user_id, limits),
            ):
                result = await check
                if not result.allowed:
                    self.logger.warning(f"🛑 Trade denied for {symbol} ({side}): {result.reason}")
                    return result

            return await self._check_correlation(user_id, symbol)

        except Exception as e:
            self.logger.error(f"❌ Error checking trade risk for {symbol}: {e}")
            return RiskCheckResult(allowed=False, risk_level=RiskLevel.HIGH, reason=str(e))

    # ========================================================================
    # INDIVIDUAL CHECKS
    # ========================================================================

    async def _check_position_size(self, quantity: float, price: float,
                                   limits: RiskLimitValues) -> RiskCheckResult:
        balance = await self.exchange.get_balance(QUOTE_ASSET)
        if not balance or balance.total == 0:
            return RiskCheckResult(allowed=False, risk_level=RiskLevel.HIGH, reason="Insufficient balance")

        position_percent = (quantity * price) / balance.total * 100
        if position_percent > limits.max_position_size_percent:
            return RiskCheckResult(
                allowed=False,
                risk_level=RiskLevel.HIGH,
                reason=(f"Position size {position_percent:.2f}% exceeds maximum "
                        f"{limits.max_position_size_percent:g}%"),
            )
        return RiskCheckResult(allowed=True, risk_level=RiskLevel.MEDIUM)

    async def _check_concurrent_positions(self, user_id: str, limits: RiskLimitValues) -> RiskCheckResult:
        open_positions = await self.db.get_open_positions_for_user(user_id)
        if len(open_positions) >= limits.max_concurrent_positions:
            return RiskCheckResult(
                allowed=False,
                risk_level=RiskLevel.HIGH,
                reason=f"Maximum concurrent positions ({limits.max_concurrent_positions}) reached",
            )
        return RiskCheckResult(allowed=True, risk_level=RiskLevel.MEDIUM)

    async def _check_daily_loss_limit(self, user_id: str, limits: RiskLimitValues) -> RiskCheckResult:
        daily_loss = await self.get_daily_loss(user_id)

        balance = await self.exchange.get_balance(QUOTE_ASSET)
        if not balance or balance.total == 0:
            return RiskCheckResult(allowed=True, risk_level=RiskLevel.MEDIUM)

        loss_percent = daily_loss / balance.total * 100
        if loss_percent >= limits.daily_loss_limit_percent:
            return RiskCheckResult(
                allowed=False,
                risk_level=RiskLevel.HIGH,
                reason=(f"Daily loss limit ({limits.daily_loss_limit_percent:g}%) exceeded: "
                        f"{loss_percent:.2f}%"),
            )
        return RiskCheckResult(allowed=True, risk_level=RiskLevel.MEDIUM)

    async def _check_correlation(self, user_id: str, symbol: str) -> RiskCheckResult:
        base_asset = extract_base_asset(symbol)
        open_positions = await self.db.get_open_positions_for_user(user_id)

        for position in open_positions:
            if position.symbol == symbol:
                return RiskCheckResult(allowed=True, risk_level=RiskLevel.MEDIUM)
            if extract_base_asset(position.symbol) == base_asset:
                return RiskCheckResult(
                    allowed=True,
                    risk_level=RiskLevel.MEDIUM,
                    reason="Position in correlated asset detected",
                )

        return RiskCheckResult(allowed=True, risk_level=RiskLevel.LOW)

    # ========================================================================
    # LIMITS
    # ========================================================================

    async def get_risk_limits(self, user_id: str) -> RiskLimitValues:
        """Сохраненные лимиты пользователя; незаданные поля берутся из настроек"""
        defaults = self.settings.get_risk_defaults()
        record = await self.db.get_risk_limits(user_id)
        if record is None:
            return RiskLimitValues(**defaults)

        def pick(name: str):
            value = getattr(record, name)
            return value if value is not None else defaults[name]

        return RiskLimitValues(
            max_position_size_percent=float(pick('max_position_size_percent')),
            stop_loss_percent=float(pick('stop_loss_percent')),
            take_profit_percent=float(pick('take_profit_percent')),
            daily_loss_limit_percent=float(pick('daily_loss_limit_percent')),
            max_concurrent_positions=int(pick('max_concurrent_positions')),
        )

    async def update_risk_limits(self, user_id: str, **values) -> RiskLimitValues:
        for name, value in values.items():
            if value is None:
                continue
            if name == 'max_concurrent_positions':
                if int(value) <= 0:
                    raise ValidationError("max_concurrent_positions must be positive")
            elif not 0 < float(value) <= 100:
                raise ValidationError(f"{name} must be between 0 and 100")

        await self.db.upsert_risk_limits(
            user_id, **{name: value for name, value in values.items() if value is not None}
        )
        self.logger.info(f"🔄 Risk limits updated for user {user_id}: {values}")
        return await self.get_risk_limits(user_id)

    async def get_daily_loss(self, user_id: str) -> float:
        """Дневной накопитель убытка; накопленное в прошлые сутки (UTC) не считается"""
        record = await self.db.get_risk_limits(user_id)
        if record is None or record.last_reset_date is None:
            return 0.0
        if ensure_utc(record.last_reset_date) < self._start_of_day():
            return 0.0
        return float(record.daily_loss_amount or 0)

    async def record_realized_loss(self, user_id: str, pnl: float) -> None:
        """Учет реализованного убытка в дневном накопителе пользователя"""
        if pnl >= 0:
            return
        if await self.db.get_risk_limits(user_id) is None:
            await self.db.upsert_risk_limits(user_id)
        await self.db.record_daily_loss(user_id, abs(pnl))

    # ========================================================================
    # PRICE LEVELS AND SIZING
    # ========================================================================

    @staticmethod
    def calculate_stop_loss(entry_price: float, stop_loss_percent: float) -> float:
        return entry_price * (1 - stop_loss_percent / 100)

    @staticmethod
    def calculate_take_profit(entry_price: float, take_profit_percent: float) -> float:
        return entry_price * (1 + take_profit_percent / 100)

    async def calculate_position_size(
        self,
        symbol: str,
        price: float,
        risk_percent: Optional[float] = None,
    ) -> PositionSizeResult:
        """Количество на ``risk_percent`` свободного USDT, округленное вниз до 8 знаков"""
        percent = risk_percent if risk_percent is not None else self.settings.MAX_POSITION_SIZE_PERCENT

        balance = await self.exchange.get_balance(QUOTE_ASSET)
        if not balance or balance.free == 0:
            raise ValidationError(f"Insufficient {QUOTE_ASSET} balance", symbol=symbol)
        if price <= 0:
            raise ValidationError(f"Price must be positive: {price}", symbol=symbol)

        value = balance.free * percent / 100
        return PositionSizeResult(
            quantity=floor_to_decimals(value / price),
            value=value,
            percentage=percent,
        )

    async def calculate_safe_position_size(
        self,
        user_id: str,
        symbol: str,
        price: float,
        requested_percent: Optional[float] = None,
    ) -> PositionSizeResult:
        """Как ``calculate_position_size``, но не выше лимита пользователя"""
        limits = await self.get_risk_limits(user_id)
        percent = requested_percent or limits.max_position_size_percent
        return await self.calculate_position_size(
            symbol, price, min(percent, limits.max_position_size_percent)
        )

    @staticmethod
    def _start_of_day() -> datetime:
        now = datetime.now(timezone.utc)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
