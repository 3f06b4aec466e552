"""
Spot Trading Engine Configuration
Настройки процесса: сервер, база, биржа, торговые циклы, риск-лимиты по умолчанию
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import Optional, List, Dict, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Типы окружений"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Уровни логирования"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Конфигурация движка. Любое поле переопределяется переменной окружения
    или файлом ``.env``; отсутствующие значения берутся по умолчанию.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        validate_assignment=True,
        extra='ignore',
    )

    # ============================================================================
    # ОСНОВНЫЕ НАСТРОЙКИ ПРИЛОЖЕНИЯ
    # ============================================================================

    APP_NAME: str = Field(default="Spot Trading Engine", description="Название приложения")
    VERSION: str = Field(default="1.0.0", description="Версия приложения")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Окружение")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    HOST: str = Field(default="0.0.0.0", description="IP адрес сервера")
    PORT: int = Field(default=8000, description="Порт сервера")
    CORS_ORIGINS: List[str] = Field(default=["*"], description="Разрешенные CORS origins")

    # ============================================================================
    # БАЗА ДАННЫХ
    # ============================================================================

    DATABASE_URL: str = Field(default="sqlite:///./trading_engine.db", description="URL базы данных")
    DATABASE_ECHO: bool = Field(default=False, description="Логировать SQL запросы")

    # ============================================================================
    # БИРЖА
    # ============================================================================

    EXCHANGE_REST_URL: str = Field(default="https://api.binance.com", description="REST endpoint публичных данных")
    EXCHANGE_WS_URL: str = Field(default="wss://stream.binance.com:9443/ws", description="WebSocket endpoint")
    EXCHANGE_API_KEY: Optional[str] = Field(default=None, description="API ключ (для подписанных запросов)")
    EXCHANGE_API_SECRET: Optional[str] = Field(default=None, description="API секрет")
    EXCHANGE_TIMEOUT: int = Field(default=10, description="Таймаут запроса (секунды)")
    EXCHANGE_MAX_RETRIES: int = Field(default=3, description="Повторы временных ошибок REST")

    WS_MAX_RETRIES: int = Field(default=10, description="Попыток переподключения WebSocket")
    WS_MAX_BACKOFF: int = Field(default=32, description="Максимальная задержка переподключения (секунды)")
    WS_PING_INTERVAL: int = Field(default=20, description="WebSocket ping интервал")
    MARKET_STREAM_ENABLED: bool = Field(default=False, description="Подписка на поток закрытых свечей")

    # ============================================================================
    # ТОРГОВЫЕ ЦИКЛЫ
    # ============================================================================

    STRATEGY_EXECUTION_INTERVAL: int = Field(default=60_000, description="Интервал тика стратегий (мс)")
    STOP_LOSS_MONITOR_INTERVAL: int = Field(default=30_000, description="Интервал проверки SL/TP (мс)")
    PAIR_SCORING_UPDATE_INTERVAL: int = Field(default=3_600_000, description="Интервал пересчета пар (мс)")
    AUTO_START_LOOPS: bool = Field(default=True, description="Запускать циклы при старте приложения")
    DEFAULT_USER_ID: str = Field(default="default", description="Пользователь по умолчанию для API")
    PAPER_INITIAL_BALANCE: float = Field(default=10_000.0, description="Стартовый USDT баланс бумажной торговли")

    # ============================================================================
    # РИСК-ЛИМИТЫ ПО УМОЛЧАНИЮ
    # ============================================================================

    MAX_POSITION_SIZE_PERCENT: float = Field(default=10.0, description="Максимальный размер позиции (% баланса)")
    STOP_LOSS_PERCENT: float = Field(default=2.5, description="Стоп-лосс (%)")
    TAKE_PROFIT_PERCENT: float = Field(default=5.0, description="Тейк-профит (%)")
    DAILY_LOSS_LIMIT_PERCENT: float = Field(default=5.0, description="Дневной лимит убытка (%)")
    MAX_CONCURRENT_POSITIONS: int = Field(default=5, description="Максимум открытых позиций")
    TRADING_FEE_PERCENT: float = Field(default=0.1, description="Комиссия биржи (%)")

    # ============================================================================
    # ВЫБОР ПАР
    # ============================================================================

    TOP_VOLUME_PAIRS_COUNT: int = Field(default=30, description="Кандидатов по объему для скоринга")
    TECHNICAL_INDICATOR_WINDOW: int = Field(default=100, description="Свечей для индикаторов")
    MIN_QUOTE_VOLUME: float = Field(default=0.0, description="Минимальный 24h объем в USDT")

    # ============================================================================
    # БЭКТЕСТ
    # ============================================================================

    BACKTEST_MAX_DAYS: int = Field(default=365, description="Максимальная длина окна бэктеста (дни)")
    BACKTEST_MIN_BALANCE: float = Field(default=100.0, description="Минимальный баланс для входа")
    BACKTEST_BATCH_SIZE: int = Field(default=1000, description="Свечей за запрос истории")

    # ============================================================================
    # ЛОГИРОВАНИЕ
    # ============================================================================

    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Уровень логирования")
    LOG_TO_FILE: bool = Field(default=False, description="Писать логи в файл")
    LOG_FILE_PATH: str = Field(default="logs/trading_engine.log", description="Путь к файлу логов")
    LOG_JSON_FORMAT: bool = Field(default=False, description="JSON формат файловых логов")

    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('PORT')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError('Port must be between 1 and 65535')
        return v

    @field_validator(
        'MAX_POSITION_SIZE_PERCENT', 'STOP_LOSS_PERCENT', 'TAKE_PROFIT_PERCENT',
        'DAILY_LOSS_LIMIT_PERCENT'
    )
    @classmethod
    def validate_percentages(cls, v):
        if v <= 0 or v > 100:
            raise ValueError('Percentage values must be in (0, 100]')
        return v

    @field_validator(
        'STRATEGY_EXECUTION_INTERVAL', 'STOP_LOSS_MONITOR_INTERVAL', 'PAIR_SCORING_UPDATE_INTERVAL'
    )
    @classmethod
    def validate_intervals(cls, v):
        if v < 1000:
            raise ValueError('Loop intervals must be at least 1000 ms')
        return v

    @field_validator('MAX_CONCURRENT_POSITIONS', 'TOP_VOLUME_PAIRS_COUNT', 'WS_MAX_RETRIES')
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError('Value must be positive')
        return v

    @field_validator('BACKTEST_BATCH_SIZE')
    @classmethod
    def validate_batch_size(cls, v):
        if not 1 <= v <= 1000:
            raise ValueError('Batch size must be between 1 and 1000')
        return v

    # ============================================================================
    # COMPUTED PROPERTIES
    # ============================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.PRODUCTION

    @property
    def database_async_url(self) -> str:
        """Async URL для базы данных"""
        if self.DATABASE_URL.startswith('sqlite:///'):
            return self.DATABASE_URL.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return self.DATABASE_URL

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.EXCHANGE_API_KEY and self.EXCHANGE_API_SECRET)

    # ============================================================================
    # METHODS
    # ============================================================================

    def get_risk_defaults(self) -> Dict[str, Any]:
        """Значения риск-лимитов для пользователя без собственной записи"""
        return {
            'max_position_size_percent': self.MAX_POSITION_SIZE_PERCENT,
            'stop_loss_percent': self.STOP_LOSS_PERCENT,
            'take_profit_percent': self.TAKE_PROFIT_PERCENT,
            'daily_loss_limit_percent': self.DAILY_LOSS_LIMIT_PERCENT,
            'max_concurrent_positions': self.MAX_CONCURRENT_POSITIONS,
        }

    def get_logging_config(self) -> Dict[str, Any]:
        """Аргументы для EngineLogger.setup"""
        return {
            'log_level': self.LOG_LEVEL.value,
            'log_to_file': self.LOG_TO_FILE,
            'log_file_path': self.LOG_FILE_PATH,
            'json_format': self.LOG_JSON_FORMAT,
            'colored_console': not self.is_production,
        }

    def log_startup_config(self, logger: logging.Logger):
        """Безопасное логирование конфигурации при старте"""
        safe_config = {
            'APP_NAME': self.APP_NAME,
            'VERSION': self.VERSION,
            'ENVIRONMENT': self.ENVIRONMENT.value,
            'HOST': self.HOST,
            'PORT': self.PORT,
            'EXCHANGE_REST_URL': self.EXCHANGE_REST_URL,
            'EXCHANGE_CREDENTIALS': 'configured' if self.has_exchange_credentials else 'missing',
            'STRATEGY_EXECUTION_INTERVAL': self.STRATEGY_EXECUTION_INTERVAL,
            'STOP_LOSS_MONITOR_INTERVAL': self.STOP_LOSS_MONITOR_INTERVAL,
            'PAIR_SCORING_UPDATE_INTERVAL': self.PAIR_SCORING_UPDATE_INTERVAL,
            'TOP_VOLUME_PAIRS_COUNT': self.TOP_VOLUME_PAIRS_COUNT,
            'LOG_LEVEL': self.LOG_LEVEL.value,
            'DATABASE_URL': self.DATABASE_URL.split('://', 1)[0] + '://***',
        }

        logger.info("🚀 Trading Engine Configuration:")
        for key, value in safe_config.items():
            logger.info(f"  {key}: {value}")


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_settings() -> Settings:
    """Единственный экземпляр настроек процесса"""
    return Settings()
