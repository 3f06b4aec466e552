"""
Spot Trading Engine Helper Functions
Время, числа и денежная нормализация, async-утилиты и иерархия ошибок
"""

import asyncio
import inspect
import math
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, ROUND_DOWN, localcontext
from enum import Enum
from typing import Any, Dict, Optional, Union, Callable, TypeVar

from utils.logger import setup_logger


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

T = TypeVar('T')
Number = Union[int, float, Decimal]

logger = setup_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# Максимальная точность денежных значений
DECIMAL_PLACES = 8
_QUANT = Decimal(1).scaleb(-DECIMAL_PLACES)

TIMEFRAME_TO_MILLISECONDS = {
    '1m': 60_000,
    '5m': 5 * 60_000,
    '15m': 15 * 60_000,
    '1h': 60 * 60_000,
    '4h': 4 * 60 * 60_000,
    '1d': 24 * 60 * 60_000,
}

QUOTE_ASSET = "USDT"


# ============================================================================
# TIME UTILITIES
# ============================================================================

def get_current_utc_datetime() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_to_datetime(timestamp: Union[int, float]) -> datetime:
    """Миллисекунды (или секунды) в aware datetime UTC"""
    if timestamp > 1e11:
        timestamp = timestamp / 1000
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def datetime_to_timestamp(dt: datetime) -> int:
    """aware/naive datetime в миллисекунды (naive считается UTC)"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite возвращает naive datetime, приводим к UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timeframe_to_milliseconds(timeframe: str) -> int:
    if timeframe not in TIMEFRAME_TO_MILLISECONDS:
        raise ValidationError(f"Unsupported interval: {timeframe}")
    return TIMEFRAME_TO_MILLISECONDS[timeframe]


# ============================================================================
# NUMERIC UTILITIES
# ============================================================================

def safe_float(value: Any, default: float = 0.0) -> float:
    """Безопасная конвертация в float"""
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (ValueError, TypeError, InvalidOperation):
        return default


def is_finite_number(value: Any) -> bool:
    """Число (или строка-число), не NaN и не бесконечность"""
    if isinstance(value, bool) or value is None:
        return False
    try:
        return math.isfinite(float(value))
    except (ValueError, TypeError, OverflowError):
        return False


def safe_decimal(value: Any, default: Optional[Decimal] = Decimal('0')) -> Optional[Decimal]:
    """Безопасная конвертация в Decimal, не конечные значения дают default"""
    if not is_finite_number(value):
        return default
    try:
        return Decimal(str(value))
    except (ValueError, TypeError, InvalidOperation):
        return default


def to_decimal_string(value: Any, default: Optional[str] = "0") -> Optional[str]:
    """
    Каноническая строка денежного значения.

    Округление до 8 знаков, фиксированная запись без экспоненты и без
    хвостовых нулей. NaN, бесконечность и нечисловой ввод дают ``default``.

    >>> to_decimal_string(1e-7)
    '0.0000001'
    >>> to_decimal_string(101.50000000)
    '101.5'
    """
    number = safe_decimal(value, default=None)
    if number is None:
        return default

    with localcontext() as ctx:
        ctx.prec = 60
        quantized = number.quantize(_QUANT, rounding=ROUND_HALF_UP)

    text = format(quantized, 'f')
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    if text in ('-0', ''):
        text = '0'
    return text


def to_decimal(value: Any, default: Optional[str] = "0") -> Optional[Decimal]:
    """Нормализованное значение для DECIMAL-колонок"""
    text = to_decimal_string(value, default)
    return Decimal(text) if text is not None else None


def floor_to_decimals(value: Number, places: int = DECIMAL_PLACES) -> float:
    """Округление вниз, чтобы не превысить доступный баланс"""
    number = safe_decimal(value)
    with localcontext() as ctx:
        ctx.prec = 60
        return float(number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN))


def clamp(value: Number, min_value: Number, max_value: Number) -> float:
    """Ограничение значения в диапазоне"""
    return max(float(min_value), min(float(value), float(max_value)))


# ============================================================================
# SYMBOL UTILITIES
# ============================================================================

def clean_symbol(symbol: str) -> str:
    return symbol.strip().upper().replace('/', '').replace('-', '')


def extract_base_asset(symbol: str, quote_asset: str = QUOTE_ASSET) -> str:
    """BTCUSDT -> BTC"""
    symbol = clean_symbol(symbol)
    if symbol.endswith(quote_asset):
        return symbol[:-len(quote_asset)]
    return symbol


# ============================================================================
# ASYNC UTILITIES
# ============================================================================

async def retry_async(
    func: Callable,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: Optional[float] = None,
    exceptions: tuple = (Exception,)
) -> Any:
    """Повторные попытки для асинхронных функций с экспоненциальной задержкой"""
    for attempt in range(max_retries + 1):
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
            return result
        except exceptions as e:
            if attempt == max_retries:
                logger.error(f"❌ Max retries ({max_retries}) exceeded for {getattr(func, '__name__', func)}")
                raise

            wait_time = delay * (backoff ** attempt)
            if max_delay is not None:
                wait_time = min(wait_time, max_delay)
            logger.warning(f"⚠️ Attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
            await asyncio.sleep(wait_time)


class Timer:
    """Контекстный менеджер для измерения времени выполнения"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        logger.debug(f"⏱️ {self.name} took {self.elapsed:.4f}s")

    @property
    def elapsed(self) -> float:
        if self.start_time is not None and self.end_time is not None:
            return self.end_time - self.start_time
        return 0.0


# ============================================================================
# EXCEPTION HANDLING
# ============================================================================

class ErrorKind(str, Enum):
    """Классы ошибок движка"""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXCHANGE = "exchange"
    TRANSIENT_EXCHANGE = "transient_exchange"
    STREAM_EXHAUSTED = "stream_exhausted"
    DATA_INTEGRITY = "data_integrity"
    STRATEGY_EXECUTION = "strategy_execution"


class TradingBotError(Exception):
    """
    Базовое исключение движка.

    Каждый подкласс задает свой ``kind``; исходная ошибка хранится в ``cause``
    и в ``__cause__`` (цепочка ``raise ... from``).
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = context
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind.value, 'message': self.message}
        if self.cause is not None:
            data['cause'] = str(self.cause)
        if self.context:
            data['context'] = self.context
        return data


class ConfigurationError(TradingBotError):
    """Некорректная конфигурация: фатально при старте, отклоняется при создании"""
    kind = ErrorKind.CONFIGURATION


class ValidationError(TradingBotError):
    """Некорректные входные данные запроса"""
    kind = ErrorKind.VALIDATION


class NotFoundError(TradingBotError):
    """Сущность не найдена"""
    kind = ErrorKind.NOT_FOUND


class ExchangeError(TradingBotError):
    """Ошибка биржи, повтор бессмысленен (отклоненный ордер, неизвестный символ)"""
    kind = ErrorKind.EXCHANGE


class TransientExchangeError(ExchangeError):
    """Временная ошибка биржи: rate limit, рассинхрон часов, сеть"""
    kind = ErrorKind.TRANSIENT_EXCHANGE


class NetworkError(TransientExchangeError):
    """Сетевая ошибка"""


class APIError(ExchangeError):
    """Ошибка HTTP API биржи"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_data: Optional[Dict] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause, status_code=status_code)
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def is_transient(self) -> bool:
        return self.status_code in (418, 429) or (self.status_code or 0) >= 500


class StreamExhaustedError(TransientExchangeError):
    """Поток рыночных данных исчерпал попытки переподключения"""
    kind = ErrorKind.STREAM_EXHAUSTED


class DataIntegrityError(TradingBotError):
    """Данные не прошли проверку перед сохранением (цена <= 0, не конечное число)"""
    kind = ErrorKind.DATA_INTEGRITY


class StrategyExecutionError(TradingBotError):
    """Сбой тика стратегии, перехваченный на границе стратегии"""
    kind = ErrorKind.STRATEGY_EXECUTION

    def __init__(self, strategy_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause, strategy_id=strategy_id)
        self.strategy_id = strategy_id


def classify_exchange_error(error: BaseException) -> TradingBotError:
    """
    Приведение произвольной ошибки вызова биржи к таксономии
    """
    if isinstance(error, TradingBotError):
        return error
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError)):
        return NetworkError(f"Network error: {error}", cause=error)
    return ExchangeError(f"Exchange error: {error}", cause=error)
