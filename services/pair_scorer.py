"""
Spot Trading Engine Pair Scorer
Многофакторная техническая оценка торговых пар (0-100)
"""

import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Any

from core.exchange import ExchangeClient, PairInfo
from utils import indicators
from utils.helpers import clamp
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

SCORE_WEIGHTS: Dict[str, float] = {
    'rsi': 0.15,
    'macd': 0.20,
    'bollinger': 0.15,
    'volume': 0.15,
    'momentum': 0.20,
    'volatility': 0.15,
}

SCORING_INTERVAL = "1h"
SCORING_CANDLES = 100


def empty_factors() -> Dict[str, float]:
    return {name: 0.0 for name in SCORE_WEIGHTS}


@dataclass
class PairScore:
    pair: PairInfo
    score: float
    factors: Dict[str, float] = field(default_factory=empty_factors)

    def to_dict(self) -> Dict[str, Any]:
        return {'symbol': self.pair.symbol, 'score': self.score, 'factors': dict(self.factors)}


# ============================================================================
# SUB-SCORES
# ============================================================================

def score_rsi(value: float) -> float:
    """Перепроданность ценится выше перекупленности, нейтральная зона 60"""
    if indicators.is_nan(value):
        return 50.0
    if value < 30:
        return 30 + ((30 - value) / 30) * 40
    if value > 70:
        return 70 - ((value - 70) / 30) * 40
    return 60.0


def score_macd(result: indicators.MACDResult) -> float:
    last_macd = indicators.last_value(result.macd)
    last_signal = indicators.last_value(result.signal)
    last_hist = indicators.last_value(result.histogram)
    prev_hist = indicators.last_value(result.histogram, offset=2)

    if indicators.is_nan(last_macd) or indicators.is_nan(last_signal):
        return 50.0

    if indicators.is_nan(prev_hist):
        prev_hist = 0.0

    if last_macd > last_signal and last_hist > prev_hist:
        return 80.0
    if last_macd < last_signal:
        return 30.0
    return 50.0


def score_bollinger(price: float, bands: indicators.BollingerBands) -> float:
    """Цена у нижней полосы оценивается выше"""
    upper = indicators.last_value(bands.upper)
    lower = indicators.last_value(bands.lower)

    if indicators.is_nan(upper) or indicators.is_nan(lower):
        return 50.0

    width = upper - lower
    if width == 0:
        return 50.0

    distance = (price - lower) / width
    if distance < 0.2:
        return 80 - distance * 100
    if distance > 0.8:
        return 20 + (1 - distance) * 30
    return 50.0


def score_volume(current_volume: float, avg_volume: float) -> float:
    if avg_volume == 0:
        return 50.0

    ratio = current_volume / avg_volume
    if ratio >= 2:
        return 100.0
    if ratio >= 1.5:
        return 80.0
    if ratio >= 1:
        return 60.0
    if ratio >= 0.5:
        return 40.0
    return 20.0


def score_momentum(price: float, sma20: List[float], ema50: List[float]) -> float:
    last_sma = indicators.last_value(sma20)
    last_ema = indicators.last_value(ema50)

    if indicators.is_nan(last_sma) or indicators.is_nan(last_ema):
        return 50.0

    score = 50.0
    if price > last_sma:
        score += 20
    if price > last_ema:
        score += 20
    if last_sma > last_ema:
        score += 10
    return min(100.0, score)


def score_volatility(price: float, support: float, resistance: float) -> float:
    """Положение цены в диапазоне поддержка/сопротивление"""
    if resistance == support or math.isnan(support) or math.isnan(resistance):
        return 50.0

    position = (price - support) / (resistance - support)
    if position < 0.3:
        return 70.0
    if position > 0.7:
        return 30.0
    return 60.0


def composite_score(factors: Dict[str, float]) -> float:
    """Взвешенная сумма факторов, ограниченная диапазоном [0, 100]"""
    total = sum(factors.get(name, 0.0) * weight for name, weight in SCORE_WEIGHTS.items())
    if math.isnan(total):
        return 0.0
    return clamp(total, 0, 100)


# ============================================================================
# SCORER
# ============================================================================

class PairScorer:
    """
    Оценка пар по 100 часовым свечам.

    Любая ошибка при оценке пары дает нулевые факторы и итоговую оценку 0,
    остальные пары продолжают оцениваться.
    """

    def __init__(self, exchange: ExchangeClient):
        self.exchange = exchange
        self.logger = setup_logger(f"{__name__}.PairScorer")

    async def score_pair(self, pair: PairInfo) -> PairScore:
        try:
            klines = await self.exchange.get_klines(pair.symbol, SCORING_INTERVAL, SCORING_CANDLES)
            if not klines:
                self.logger.warning(f"⚠️ No klines data for {pair.symbol}")
                return self._zero_score(pair)

            factors = self.calculate_factors(
                closes=[k.close for k in klines],
                highs=[k.high for k in klines],
                lows=[k.low for k in klines],
                volumes=[k.volume for k in klines],
            )
            score = composite_score(factors)

            return PairScore(pair=replace(pair, score=score, factors=factors), score=score, factors=factors)

        except Exception as e:
            self.logger.warning(f"⚠️ Error scoring pair {pair.symbol}: {e}")
            return self._zero_score(pair)

    async def score_pairs(self, pairs: List[PairInfo]) -> List[PairScore]:
        """Оценка списка пар, результат отсортирован по убыванию"""
        scores = [await self.score_pair(pair) for pair in pairs]
        scores.sort(key=lambda item: item.score, reverse=True)
        return scores

    @staticmethod
    def calculate_factors(
        closes: List[float],
        highs: List[float],
        lows: List[float],
        volumes: List[float],
    ) -> Dict[str, float]:
        price = closes[-1]
        levels = indicators.support_resistance(highs, lows)

        return {
            'rsi': score_rsi(indicators.last_value(indicators.rsi(closes, 14))),
            'macd': score_macd(indicators.macd(closes, 12, 26, 9)),
            'bollinger': score_bollinger(price, indicators.bollinger_bands(closes, 20, 2)),
            'volume': score_volume(volumes[-1], indicators.average_volume(volumes, 20)),
            'momentum': score_momentum(price, indicators.sma(closes, 20), indicators.ema(closes, 50)),
            'volatility': score_volatility(price, levels.support, levels.resistance),
        }

    @staticmethod
    def _zero_score(pair: PairInfo) -> PairScore:
        factors = empty_factors()
        return PairScore(pair=replace(pair, score=0.0, factors=factors), score=0.0, factors=factors)
