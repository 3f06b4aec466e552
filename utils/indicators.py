"""
Spot Trading Engine Technical Indicators
Технические индикаторы для скоринга пар и сигналов стратегий

Все функции чистые: на вход последовательность цен, на выход список
той же длины, где недостающие для окна значения равны NaN.
"""

import math
from dataclasses import dataclass
from typing import Union, List, Sequence, Dict, Any

import numpy as np
import pandas as pd


# ============================================================================
# TYPES
# ============================================================================

PriceData = Union[Sequence[float], np.ndarray, pd.Series]


@dataclass
class MACDResult:
    macd: List[float]
    signal: List[float]
    histogram: List[float]

    def latest(self) -> Dict[str, float]:
        return {
            'macd': last_value(self.macd),
            'signal': last_value(self.signal),
            'histogram': last_value(self.histogram),
        }


@dataclass
class BollingerBands:
    upper: List[float]
    middle: List[float]
    lower: List[float]

    def latest(self) -> Dict[str, float]:
        return {
            'upper': last_value(self.upper),
            'middle': last_value(self.middle),
            'lower': last_value(self.lower),
        }


@dataclass
class SupportResistance:
    support: float
    resistance: float

    def to_dict(self) -> Dict[str, Any]:
        return {'support': self.support, 'resistance': self.resistance}


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def _to_array(data: PriceData) -> np.ndarray:
    return np.asarray(data, dtype=float)


def last_value(values: Sequence[float], offset: int = 1) -> float:
    """Значение с конца (offset=1 последнее), NaN если его нет"""
    if len(values) < offset:
        return math.nan
    return float(values[-offset])


def is_nan(value: float) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


# ============================================================================
# TREND INDICATORS
# ============================================================================

def sma(prices: PriceData, period: int) -> List[float]:
    """
    Simple Moving Average. Первые ``period - 1`` значений равны NaN.
    """
    series = pd.Series(_to_array(prices))
    return series.rolling(window=period, min_periods=period).mean().tolist()


def ema(prices: PriceData, period: int) -> List[float]:
    """
    Exponential Moving Average.

    Первые ``period`` точек содержат накопительное среднее (разогрев без NaN),
    далее классическая рекурсия с множителем ``2 / (period + 1)``.
    """
    arr = _to_array(prices)
    if arr.size == 0:
        return []

    multiplier = 2.0 / (period + 1)
    result = np.empty_like(arr)

    warmup = min(period, arr.size)
    result[:warmup] = np.cumsum(arr[:warmup]) / np.arange(1, warmup + 1)

    for i in range(warmup, arr.size):
        result[i] = (arr[i] - result[i - 1]) * multiplier + result[i - 1]

    return result.tolist()


def macd(
    prices: PriceData,
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9
) -> MACDResult:
    """
    MACD: разница быстрой и медленной EMA, сигнальная линия как EMA
    от определенных значений MACD, гистограмма = MACD - signal.
    """
    fast = np.asarray(ema(prices, fast_period), dtype=float)
    slow = np.asarray(ema(prices, slow_period), dtype=float)

    if fast.size == 0:
        return MACDResult(macd=[], signal=[], histogram=[])

    macd_line = fast - slow
    defined = macd_line[~np.isnan(macd_line)]

    signal_line = np.full(macd_line.size, np.nan)
    if defined.size:
        signal_line[macd_line.size - defined.size:] = ema(defined, signal_period)

    histogram = macd_line - signal_line

    return MACDResult(
        macd=macd_line.tolist(),
        signal=signal_line.tolist(),
        histogram=histogram.tolist(),
    )


# ============================================================================
# MOMENTUM INDICATORS
# ============================================================================

def rsi(prices: PriceData, period: int = 14) -> List[float]:
    """
    Relative Strength Index по простым средним приростов и потерь
    за последние ``period`` изменений. Без потерь RSI = 100.
    """
    arr = _to_array(prices)
    result = [math.nan] * arr.size
    if arr.size <= period:
        return result

    changes = np.diff(arr)

    for i in range(period, arr.size):
        window = changes[i - period:i]
        avg_gain = window[window > 0].sum() / period
        avg_loss = -window[window < 0].sum() / period

        if avg_loss == 0:
            result[i] = 100.0
        else:
            rs = avg_gain / avg_loss
            result[i] = 100.0 - (100.0 / (1.0 + rs))

    return result


# ============================================================================
# VOLATILITY INDICATORS
# ============================================================================

def bollinger_bands(prices: PriceData, period: int = 20, std_dev: float = 2.0) -> BollingerBands:
    """
    Полосы Боллинджера на SMA и стандартном отклонении генеральной совокупности
    """
    series = pd.Series(_to_array(prices))
    rolling = series.rolling(window=period, min_periods=period)

    middle = rolling.mean()
    deviation = rolling.std(ddof=0)

    return BollingerBands(
        upper=(middle + deviation * std_dev).tolist(),
        middle=middle.tolist(),
        lower=(middle - deviation * std_dev).tolist(),
    )


# ============================================================================
# SUPPORT / RESISTANCE AND VOLUME
# ============================================================================

def support_resistance(highs: PriceData, lows: PriceData) -> SupportResistance:
    """
    Уровни поддержки и сопротивления по локальным экстремумам.

    Окно равно 10% длины ряда; стартовые значения берутся из первой свечи.
    """
    high_arr = _to_array(highs)
    low_arr = _to_array(lows)

    if high_arr.size == 0 or low_arr.size == 0:
        return SupportResistance(support=math.nan, resistance=math.nan)

    window = high_arr.size // 10
    resistance = float(high_arr[0])
    support = float(low_arr[0])

    for i in range(window, high_arr.size - window):
        high_window = high_arr[i - window:i + window + 1]
        low_window = low_arr[i - window:i + window + 1]

        if high_arr[i] >= high_window.max() and high_arr[i] > resistance:
            resistance = float(high_arr[i])

        if low_arr[i] <= low_window.min() and low_arr[i] < support:
            support = float(low_arr[i])

    return SupportResistance(support=support, resistance=resistance)


def average_volume(volumes: PriceData, period: int = 20) -> float:
    """Средний объем последних ``period`` свечей, 0 для пустого ряда"""
    arr = _to_array(volumes)
    if arr.size == 0:
        return 0.0
    return float(arr[-period:].mean())
