"""
Spot Trading Engine Main Application
HTTP API, сборка сервисов и фоновые циклы (стратегии, стоп-лосс монитор, пары)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Any, Optional

from fastapi import FastAPI, APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from app.config.settings import Settings, get_settings
from core.exchange import ExchangeClient, Kline
from core.market_data_client import MarketDataClient
from core.market_stream import MarketStream
from core.paper_exchange import PaperExchange
from core.strategy_manager import StrategyManager, LoggingEventObserver
from data.database import Database
from services.backtest_engine import BacktestEngine, BacktestConfig
from services.pair_scorer import PairScorer
from services.pair_selector import PairSelector
from services.performance_analyzer import PerformanceAnalyzer
from services.risk_calculator import RiskCalculator
from services.stop_loss_monitor import StopLossMonitor
from strategies import StrategyRegistry
from utils.helpers import (
    TradingBotError, ErrorKind, ValidationError, NotFoundError, StreamExhaustedError,
    get_current_utc_datetime, QUOTE_ASSET
)
from utils.logger import setup_logger, get_logger_instance, configure_external_loggers


logger = setup_logger(__name__)


# ============================================================================
# КОНТЕКСТ ПРИЛОЖЕНИЯ
# ============================================================================

@dataclass
class AppContext:
    """
    Явно собранные сервисы процесса. Создается один раз и передается
    по ссылке; маршруты получают его через ``app.state.context``.
    """
    settings: Settings
    db: Database
    exchange: ExchangeClient
    pair_selector: PairSelector
    risk_calculator: RiskCalculator
    manager: StrategyManager
    monitor: StopLossMonitor
    backtest_engine: BacktestEngine
    analyzer: PerformanceAnalyzer
    market_data: Optional[MarketDataClient] = None
    market_stream: Optional[MarketStream] = None

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        exchange: Optional[ExchangeClient] = None,
        db: Optional[Database] = None,
    ) -> "AppContext":
        """
        Сборка графа сервисов. Без переданной биржи используется бумажная
        торговля поверх публичных рыночных данных.
        """
        settings = settings or get_settings()
        db = db or Database(settings)

        market_data = None
        if exchange is None:
            market_data = MarketDataClient(settings)
            exchange = PaperExchange(
                market_data,
                initial_balances={QUOTE_ASSET: settings.PAPER_INITIAL_BALANCE},
                fee_percent=settings.TRADING_FEE_PERCENT,
            )

        pair_selector = PairSelector(
            exchange,
            db,
            scorer=PairScorer(exchange),
            ttl_ms=settings.PAIR_SCORING_UPDATE_INTERVAL,
            candidates_count=settings.TOP_VOLUME_PAIRS_COUNT,
            min_volume_24h=settings.MIN_QUOTE_VOLUME,
        )
        risk_calculator = RiskCalculator(exchange, db, settings)

        manager = StrategyManager(
            exchange, db, pair_selector=pair_selector, risk_calculator=risk_calculator, settings=settings
        )
        manager.add_observer(LoggingEventObserver())

        market_stream = MarketStream(settings) if settings.MARKET_STREAM_ENABLED else None

        return cls(
            settings=settings,
            db=db,
            exchange=exchange,
            pair_selector=pair_selector,
            risk_calculator=risk_calculator,
            manager=manager,
            monitor=StopLossMonitor(exchange, db, risk_calculator=risk_calculator, settings=settings),
            backtest_engine=BacktestEngine(exchange, db, settings),
            analyzer=PerformanceAnalyzer(),
            market_data=market_data,
            market_stream=market_stream,
        )

    async def startup(self) -> None:
        logger.info("📦 Initializing database...")
        await self.db.init()

        try:
            await self.pair_selector.load_pairs_from_db()
        except Exception as e:
            logger.warning(f"⚠️ Could not warm pair cache: {e}")

        logger.info("📊 Loading strategies...")
        await self.manager.load_all_strategies_from_db()

        if self.market_stream is not None:
            await self._start_market_stream()

        if self.settings.AUTO_START_LOOPS:
            logger.info("⚡ Starting background loops...")
            self.manager.start()
            self.monitor.start()
            self.pair_selector.start()

    async def shutdown(self) -> None:
        await self.manager.stop()
        await self.monitor.stop()
        await self.pair_selector.stop()
        if self.market_stream is not None:
            await self.market_stream.stop()

        # Бумажная биржа закрывает и свой источник рыночных данных
        await self.exchange.close()
        await self.db.close()

    # ========================================================================
    # MARKET STREAM
    # ========================================================================

    async def _start_market_stream(self) -> None:
        stream = self.market_stream
        stream.on_kline(self._on_closed_kline)
        stream.on_exhausted(self._on_stream_exhausted)

        for strategy in self.manager.get_loaded_strategies():
            if strategy.symbol:
                await stream.subscribe_kline(strategy.symbol, strategy.signal_interval)

        stream.start()

    async def _on_closed_kline(self, symbol: str, interval: str, kline: Kline) -> None:
        await self.db.save_market_data(symbol, interval, [kline])

    async def _on_stream_exhausted(self, error: StreamExhaustedError) -> None:
        logger.error(f"❌ Market stream stopped, falling back to REST polling: {error}")


# ============================================================================
# ОТВЕТЫ
# ============================================================================

def ok(data: Any = None) -> Dict[str, Any]:
    return {'success': True, 'data': data}


def error_response(status_code: int, message: str, kind: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {'success': False, 'error': message}
    if kind:
        content['kind'] = kind
    return JSONResponse(status_code=status_code, content=content)


ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.DATA_INTEGRITY: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.EXCHANGE: 502,
    ErrorKind.TRANSIENT_EXCHANGE: 503,
    ErrorKind.STREAM_EXHAUSTED: 503,
}


# ============================================================================
# PYDANTIC МОДЕЛИ ДЛЯ API
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StrategyCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    type: str
    symbol: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class StrategyUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    symbol: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class BacktestRequest(CamelModel):
    strategy_type: str
    symbol: str
    start_date: str
    end_date: str
    initial_balance: float = 10_000.0
    strategy_config: Dict[str, Any] = Field(default_factory=dict)
    interval: str = "1h"


class RiskLimitsUpdateRequest(CamelModel):
    user_id: Optional[str] = None
    max_position_size_percent: Optional[float] = None
    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None
    daily_loss_limit_percent: Optional[float] = None
    max_concurrent_positions: Optional[int] = None


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Сборка контекста (если не передан), старт и остановка циклов"""
    context: AppContext = getattr(app.state, 'context', None)
    if context is None:
        settings = get_settings()
        get_logger_instance().setup(**settings.get_logging_config())
        configure_external_loggers()
        settings.log_startup_config(logger)
        context = AppContext.build(settings)
        app.state.context = context

    logger.info("🚀 Starting Trading Engine...")
    try:
        await context.startup()
        logger.info("✅ Trading Engine started successfully")
        yield
    except Exception as e:
        logger.error(f"❌ Failed to start Trading Engine: {e}")
        raise
    finally:
        logger.info("🔄 Shutting down Trading Engine...")
        await context.shutdown()
        logger.info("✅ Trading Engine shut down gracefully")


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    settings = context.settings if context else get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        description="Automated spot trading engine with backtesting",
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(router)
    return app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(TradingBotError)
    async def trading_error_handler(request: Request, exc: TradingBotError):
        status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc}")
        return error_response(status_code, exc.message, exc.kind.value)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return error_response(400, f"Invalid request: {details}", ErrorKind.VALIDATION.value)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}")
        return error_response(500, "Internal server error")


# ============================================================================
# API ENDPOINTS
# ============================================================================

router = APIRouter(prefix="/api")


async def _require_strategy(context: AppContext, strategy_id: str):
    record = await context.db.get_strategy(strategy_id)
    if record is None:
        raise NotFoundError(f"Strategy {strategy_id} not found", strategy_id=strategy_id)
    return record


def _strategy_payload(context: AppContext, record) -> Dict[str, Any]:
    data = record.to_dict()
    loaded = context.manager.get_strategy(record.id)
    data['isLoaded'] = loaded is not None
    data['state'] = loaded.state.value if loaded else None
    return data


# ---------------------------------------------------------------------------
# Система
# ---------------------------------------------------------------------------

@router.get("/health")
async def health(context: AppContext = Depends(get_context)):
    db_health = await context.db.health_check()
    return ok({
        'status': "healthy" if db_health.get('healthy') else "unhealthy",
        'timestamp': get_current_utc_datetime().isoformat(),
        'database': db_health,
        'manager': {
            'isRunning': context.manager.is_running,
            'executionInterval': context.manager.execution_interval_ms,
            'loaded': len(context.manager.get_loaded_strategies()),
        },
        'monitor': {
            'isRunning': context.monitor.is_running,
            'lastSweep': context.monitor.last_sweep.to_dict() if context.monitor.last_sweep else None,
        },
        'marketData': context.market_data.get_stats() if context.market_data else None,
        'marketStream': context.market_stream.get_stats() if context.market_stream else None,
    })


@router.get("/strategy-types")
async def strategy_types():
    """Зарегистрированные варианты и их параметры по умолчанию"""
    return ok([info for _, info in sorted(StrategyRegistry.get_all_strategies_info().items())])


# ---------------------------------------------------------------------------
# Стратегии
# ---------------------------------------------------------------------------

@router.get("/strategies")
async def list_strategies(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    records = await context.db.list_strategies(user_id=user_id)
    return ok([_strategy_payload(context, record) for record in records])


@router.post("/strategies", status_code=201)
async def create_strategy(request: StrategyCreateRequest, context: AppContext = Depends(get_context)):
    config = dict(request.config)
    if request.symbol:
        config['symbol'] = request.symbol
    StrategyRegistry.validate_config(request.type, config).validate()

    record = await context.db.create_strategy(
        user_id=request.user_id or context.settings.DEFAULT_USER_ID,
        strategy_type=request.type,
        name=request.name,
        config=request.config,
        symbol=request.symbol or None,
    )
    return ok(_strategy_payload(context, record))


@router.get("/strategies/{strategy_id}")
async def get_strategy(strategy_id: str, context: AppContext = Depends(get_context)):
    record = await _require_strategy(context, strategy_id)
    data = _strategy_payload(context, record)
    loaded = context.manager.get_strategy(strategy_id)
    if loaded is not None:
        data['runtime'] = loaded.get_status()
    return ok(data)


@router.put("/strategies/{strategy_id}")
async def update_strategy(
    strategy_id: str,
    request: StrategyUpdateRequest,
    context: AppContext = Depends(get_context),
):
    """Новая конфигурация проверяется до записи; загруженный экземпляр пересоздается"""
    record = await _require_strategy(context, strategy_id)

    fields: Dict[str, Any] = {}
    if request.name is not None:
        fields['name'] = request.name
    if request.symbol is not None:
        fields['symbol'] = request.symbol or None
    if request.config is not None:
        fields['config'] = {**(record.config or {}), **request.config}

    merged = dict(fields.get('config', record.config or {}))
    symbol = fields['symbol'] if 'symbol' in fields else record.symbol
    if symbol:
        merged['symbol'] = symbol
    StrategyRegistry.validate_config(record.type, merged).validate()

    if fields:
        record = await context.db.update_strategy(strategy_id, **fields)
    if context.manager.get_strategy(strategy_id) is not None:
        await context.manager.reload_strategy(strategy_id)
    return ok(_strategy_payload(context, record))


@router.delete("/strategies/{strategy_id}")
async def delete_strategy(strategy_id: str, context: AppContext = Depends(get_context)):
    record = await _require_strategy(context, strategy_id)
    if record.is_active:
        raise ValidationError("Stop the strategy before deleting it", strategy_id=strategy_id)

    if context.manager.get_strategy(strategy_id) is not None:
        await context.manager.unload_strategy(strategy_id)
    await context.db.delete_strategy(strategy_id)
    return ok({'id': strategy_id, 'deleted': True})


@router.post("/strategies/{strategy_id}/start")
async def start_strategy(strategy_id: str, context: AppContext = Depends(get_context)):
    await _require_strategy(context, strategy_id)
    strategy = await context.manager.start_strategy(strategy_id)

    if context.market_stream is not None and strategy.symbol:
        await context.market_stream.subscribe_kline(strategy.symbol, strategy.signal_interval)
    return ok(strategy.get_status())


@router.post("/strategies/{strategy_id}/stop")
async def stop_strategy(strategy_id: str, context: AppContext = Depends(get_context)):
    await _require_strategy(context, strategy_id)
    await context.manager.stop_strategy(strategy_id)
    record = await context.db.get_strategy(strategy_id)
    return ok(_strategy_payload(context, record))


# ---------------------------------------------------------------------------
# Сделки и позиции
# ---------------------------------------------------------------------------

@router.get("/trades")
async def list_trades(
    strategy_id: Optional[str] = Query(default=None, alias="strategyId"),
    symbol: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    context: AppContext = Depends(get_context),
):
    trades = await context.db.get_trades(strategy_id=strategy_id, symbol=symbol, limit=limit)
    return ok(trades)


@router.get("/positions")
async def list_positions(
    strategy_id: Optional[str] = Query(default=None, alias="strategyId"),
    is_open: Optional[bool] = Query(default=None, alias="isOpen"),
    symbol: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    context: AppContext = Depends(get_context),
):
    positions = await context.db.get_positions(
        strategy_id=strategy_id, is_open=is_open, symbol=symbol.upper() if symbol else None, limit=limit
    )
    return ok([position.to_dict() for position in positions])


# ---------------------------------------------------------------------------
# Бэктест
# ---------------------------------------------------------------------------

@router.post("/backtest")
async def run_backtest(request: BacktestRequest, context: AppContext = Depends(get_context)):
    config = BacktestConfig(
        strategy_type=request.strategy_type,
        symbol=request.symbol,
        start_date=request.start_date,
        end_date=request.end_date,
        initial_balance=request.initial_balance,
        strategy_config=request.strategy_config,
        interval=request.interval,
    )
    result = await context.backtest_engine.run_backtest(config)
    return ok(result.to_dict())


@router.get("/backtest")
async def list_backtests(
    limit: int = Query(default=50, ge=1, le=500),
    symbol: Optional[str] = None,
    context: AppContext = Depends(get_context),
):
    results = await context.db.get_backtest_results(limit=limit, symbol=symbol)
    return ok([result.to_dict(include_details=False) for result in results])


@router.get("/backtest/{result_id}")
async def get_backtest(result_id: str, context: AppContext = Depends(get_context)):
    result = await context.db.get_backtest_result(result_id)
    if result is None:
        raise NotFoundError(f"Backtest result {result_id} not found")
    return ok(result.to_dict())


# ---------------------------------------------------------------------------
# Портфель
# ---------------------------------------------------------------------------

async def _safe_balances(context: AppContext) -> List[Dict[str, Any]]:
    try:
        balances = await context.exchange.get_balances()
    except Exception as e:
        logger.warning(f"⚠️ Failed to fetch balances: {e}")
        return []
    return [balance.to_dict() for balance in balances]


@router.get("/portfolio/balances")
async def portfolio_balances(context: AppContext = Depends(get_context)):
    return ok(await _safe_balances(context))


@router.get("/portfolio/positions")
async def portfolio_positions(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    positions = await context.db.get_open_positions_for_user(user_id or context.settings.DEFAULT_USER_ID)
    return ok({
        'positions': [{**position.to_dict(), 'marketValue': position.market_value} for position in positions],
        'totalValue': sum(position.market_value for position in positions),
    })


@router.get("/portfolio/summary")
async def portfolio_summary(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    user_id = user_id or context.settings.DEFAULT_USER_ID
    balances = await _safe_balances(context)
    positions = await context.db.get_open_positions_for_user(user_id)

    quote_balance = next((b['total'] for b in balances if b['asset'] == QUOTE_ASSET), 0.0)
    positions_value = sum(position.market_value for position in positions)
    unrealized = sum(float(position.unrealized_pnl or 0) for position in positions)

    since = get_current_utc_datetime().replace(hour=0, minute=0, second=0, microsecond=0)
    realized_today = await context.db.get_realized_pnl_since(user_id, since)

    return ok({
        'quoteAsset': QUOTE_ASSET,
        'quoteBalance': quote_balance,
        'openPositions': len(positions),
        'positionsValue': positions_value,
        'totalValue': quote_balance + positions_value,
        'unrealizedPnl': unrealized,
        'realizedPnlToday': realized_today,
    })


# ---------------------------------------------------------------------------
# Производительность
# ---------------------------------------------------------------------------

@router.get("/performance")
async def performance(
    days: int = Query(default=30, ge=1, le=3650),
    strategy_id: Optional[str] = Query(default=None, alias="strategyId"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    since = get_current_utc_datetime() - timedelta(days=days)
    records = await context.db.get_trade_records(strategy_id=strategy_id, since=since, user_id=user_id)
    metrics = context.analyzer.analyze_records(records, context.settings.PAPER_INITIAL_BALANCE, since)
    return ok({'days': days, 'strategyId': strategy_id, **metrics.to_dict()})


@router.get("/performance/strategies")
async def performance_by_strategy(
    days: int = Query(default=30, ge=1, le=3650),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    since = get_current_utc_datetime() - timedelta(days=days)
    breakdown = []
    for record in await context.db.list_strategies(user_id=user_id):
        trades = await context.db.get_trade_records(strategy_id=record.id, since=since)
        metrics = context.analyzer.analyze_records(trades, context.settings.PAPER_INITIAL_BALANCE, since)
        summary = metrics.to_dict()
        summary.pop('equityCurve')
        breakdown.append({'strategyId': record.id, 'name': record.name, 'type': record.type, **summary})
    return ok(breakdown)


# ---------------------------------------------------------------------------
# Пары и риск-лимиты
# ---------------------------------------------------------------------------

@router.get("/pairs")
async def list_pairs(
    limit: int = Query(default=10, ge=1, le=100),
    context: AppContext = Depends(get_context),
):
    pairs = context.pair_selector.get_cached_pairs()
    if not pairs:
        pairs = await context.pair_selector.get_stored_pairs(limit)
    return ok([pair.to_dict() for pair in pairs[:limit]])


@router.post("/pairs/refresh")
async def refresh_pairs(context: AppContext = Depends(get_context)):
    pairs = await context.pair_selector.refresh_pairs()
    return ok([pair.to_dict() for pair in pairs])


@router.get("/pairs/{symbol}")
async def get_pair(symbol: str, context: AppContext = Depends(get_context)):
    pair = await context.pair_selector.get_pair(symbol.upper())
    if pair is None:
        raise NotFoundError(f"Pair {symbol} not found")
    return ok(pair.to_dict())


@router.get("/risk-limits")
async def get_risk_limits(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    context: AppContext = Depends(get_context),
):
    limits = await context.risk_calculator.get_risk_limits(user_id or context.settings.DEFAULT_USER_ID)
    return ok(limits.to_dict())


@router.put("/risk-limits")
async def update_risk_limits(request: RiskLimitsUpdateRequest, context: AppContext = Depends(get_context)):
    values = request.model_dump(exclude={'user_id'}, exclude_none=True)
    limits = await context.risk_calculator.update_risk_limits(
        request.user_id or context.settings.DEFAULT_USER_ID, **values
    )
    return ok(limits.to_dict())


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1,
        log_level=settings.LOG_LEVEL.value.lower(),
        access_log=not settings.is_production,
    )
