"""
Spot Trading Engine Pair Selector
Фильтр по объему и TTL-кеш лучших пар для стратегий с автовыбором
"""

import asyncio
import time
from typing import Optional, List, Set

from core.exchange import ExchangeClient, PairInfo
from data.database import Database
from data.models import TradingPair
from services.pair_scorer import PairScorer
from utils.helpers import extract_base_asset, QUOTE_ASSET
from utils.logger import setup_logger


# ============================================================================
# VOLUME FILTER
# ============================================================================

def is_valid_usdt_pair(symbol: str) -> bool:
    return symbol.endswith(QUOTE_ASSET) and len(symbol) > len(QUOTE_ASSET)


def filter_by_min_volume(pairs: List[PairInfo], min_volume_24h: float) -> List[PairInfo]:
    return [pair for pair in pairs if pair.volume_24h >= min_volume_24h]


class VolumeFilter:
    """Кандидаты: USDT пары с наибольшим 24h объемом в котируемой валюте"""

    def __init__(self, exchange: ExchangeClient):
        self.exchange = exchange
        self.logger = setup_logger(f"{__name__}.VolumeFilter")

    async def get_top_volume_pairs(self, count: int = 30) -> List[PairInfo]:
        try:
            tickers = await self.exchange.get_top_volume_pairs(count)
        except Exception as e:
            self.logger.error(f"❌ Error fetching top volume pairs: {e}")
            raise

        return [
            PairInfo(
                symbol=ticker.symbol,
                base_asset=extract_base_asset(ticker.symbol),
                quote_asset=QUOTE_ASSET,
                price=ticker.price,
                volume_24h=ticker.quote_volume_24h,
            )
            for ticker in tickers
            if is_valid_usdt_pair(ticker.symbol)
        ]


# ============================================================================
# PAIR SELECTOR
# ============================================================================

class PairSelector:
    """
    Ранжированный список пар с временем жизни кеша.

    Пока кеш непустой и моложе ``ttl_ms``, ``get_best_pairs`` отдает его без
    обращения к бирже. После истечения пары заново отбираются по объему,
    оцениваются и сохраняются в хранилище (upsert по symbol).
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        db: Database,
        scorer: Optional[PairScorer] = None,
        ttl_ms: int = 3_600_000,
        candidates_count: int = 30,
        min_volume_24h: float = 0.0,
    ):
        self.db = db
        self.volume_filter = VolumeFilter(exchange)
        self.scorer = scorer or PairScorer(exchange)
        self.ttl_ms = ttl_ms
        self.candidates_count = candidates_count
        self.min_volume_24h = min_volume_24h

        self.logger = setup_logger(f"{__name__}.PairSelector")

        self._cached_pairs: List[PairInfo] = []
        self._last_update: float = 0.0
        self._lock = asyncio.Lock()

        self._is_running = False
        self._tasks: Set[asyncio.Task] = set()

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    @property
    def cache_age_ms(self) -> float:
        return (time.monotonic() - self._last_update) * 1000

    def is_cache_valid(self) -> bool:
        return bool(self._cached_pairs) and self._last_update > 0 and self.cache_age_ms < self.ttl_ms

    async def get_best_pairs(self, count: int = 10) -> List[PairInfo]:
        if not self.is_cache_valid():
            await self.update_pairs()
        return self._cached_pairs[:count]

    async def get_best_pair(self) -> Optional[PairInfo]:
        pairs = await self.get_best_pairs(1)
        return pairs[0] if pairs else None

    async def update_pairs(self) -> List[PairInfo]:
        """Отбор по объему, оценка, сортировка и сохранение"""
        async with self._lock:
            if self.is_cache_valid():
                return list(self._cached_pairs)

            candidates = await self.volume_filter.get_top_volume_pairs(self.candidates_count)
            if self.min_volume_24h > 0:
                candidates = filter_by_min_volume(candidates, self.min_volume_24h)

            self.logger.info(f"📊 Scoring {len(candidates)} pairs...")
            scored = await self.scorer.score_pairs(candidates)

            self._cached_pairs = [item.pair for item in scored]
            self._last_update = time.monotonic()

            try:
                await self.db.upsert_trading_pairs(self._pair_records(self._cached_pairs))
            except Exception as e:
                self.logger.error(f"❌ Error saving trading pairs: {e}")

            self.logger.info(f"✅ Updated {len(self._cached_pairs)} trading pairs")
            return list(self._cached_pairs)

    async def refresh_pairs(self) -> List[PairInfo]:
        """Принудительное обновление, игнорируя TTL"""
        self._last_update = 0.0
        return await self.update_pairs()

    async def get_pair(self, symbol: str) -> Optional[PairInfo]:
        """Пара из кеша, иначе из хранилища"""
        for pair in self._cached_pairs:
            if pair.symbol == symbol:
                return pair

        record = await self.db.get_trading_pair(symbol)
        return self._from_record(record) if record else None

    def get_cached_pairs(self) -> List[PairInfo]:
        return list(self._cached_pairs)

    async def get_stored_pairs(self, limit: Optional[int] = None) -> List[PairInfo]:
        """Сохраненные пары по убыванию оценки, без обращения к бирже"""
        return [self._from_record(record) for record in await self.db.get_trading_pairs(limit)]

    async def load_pairs_from_db(self) -> int:
        """Прогрев кеша сохраненными парами (например, после рестарта)"""
        records = await self.db.get_trading_pairs()
        self._cached_pairs = [self._from_record(record) for record in records]
        if self._cached_pairs:
            self._last_update = time.monotonic()
        self.logger.info(f"📊 Loaded {len(self._cached_pairs)} trading pairs from database")
        return len(self._cached_pairs)

    # ========================================================================
    # BACKGROUND REFRESH
    # ========================================================================

    def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        task = asyncio.create_task(self._refresh_loop(), name="pair_refresh")
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

    async def _refresh_loop(self) -> None:
        self.logger.info(f"🔄 Pair refresh loop started (interval: {self.ttl_ms}ms)")

        while self._is_running:
            try:
                await self.refresh_pairs()
                await asyncio.sleep(self.ttl_ms / 1000)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"❌ Pair refresh error: {e}")
                await asyncio.sleep(min(60.0, self.ttl_ms / 1000))

        self.logger.info("⏹️ Pair refresh loop stopped")

    # ========================================================================
    # CONVERSION
    # ========================================================================

    @staticmethod
    def _pair_records(pairs: List[PairInfo]) -> List[dict]:
        return [
            {
                'symbol': pair.symbol,
                'base_asset': pair.base_asset,
                'quote_asset': pair.quote_asset,
                'price': pair.price,
                'volume_24h': pair.volume_24h,
                'score': pair.score or 0.0,
                'factors': pair.factors,
            }
            for pair in pairs
        ]

    @staticmethod
    def _from_record(record: TradingPair) -> PairInfo:
        return PairInfo(
            symbol=record.symbol,
            base_asset=record.base_asset,
            quote_asset=record.quote_asset,
            price=float(record.price or 0),
            volume_24h=float(record.volume_24h or 0),
            score=float(record.score or 0),
            factors=dict(record.factors or {}),
        )
