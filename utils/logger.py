"""
Spot Trading Engine Logging
Логирование движка: консоль, файлы с ротацией, отдельный журнал торговых событий
"""

import sys
import re
import json
import logging
import logging.handlers
import traceback
from pathlib import Path
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Dict, Any


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_EMOJIS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🔥'
}

LOG_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
    'RESET': '\033[0m'
}

# Поля LogRecord, которые не попадают в JSON как extra
_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime',
}


# ============================================================================
# ФОРМАТТЕРЫ
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """Цветной вывод уровня с эмодзи для консоли"""

    def format(self, record: logging.LogRecord) -> str:
        color = LOG_COLORS.get(record.levelname, LOG_COLORS['RESET'])
        emoji = LOG_EMOJIS.get(record.levelname, '')

        # Оригинальная запись используется другими handler'ами
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{color}{emoji} {record.levelname}{LOG_COLORS['RESET']}"

        return super().format(record_copy)


class JSONFormatter(logging.Formatter):
    """
    Структурированный JSON для файловых логов.

    Все поля, переданные через ``extra``, попадают в документ на верхнем уровне.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            payload['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                payload[key] = value

        return json.dumps(payload, default=str, ensure_ascii=False)


class TradeEventFormatter(logging.Formatter):
    """
    Формат журнала торговых событий:
    ``<time> | EVENT_TYPE | [SYMBOL] [strategy=<id>] - message key=value ...``
    """

    EVENT_FIELDS = ('symbol', 'strategy_id', 'position_id', 'order_id')

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt or DEFAULT_DATE_FORMAT)
        event_type = getattr(record, 'event_type', record.levelname)

        parts = [f"{timestamp} | {event_type}"]

        symbol = getattr(record, 'symbol', None)
        if symbol:
            parts.append(f"[{symbol}]")

        strategy_id = getattr(record, 'strategy_id', None)
        if strategy_id:
            parts.append(f"[strategy={strategy_id}]")

        line = " ".join(parts) + f" - {record.getMessage()}"

        details = getattr(record, 'details', None) or {}
        if details:
            line += " " + " ".join(f"{key}={value}" for key, value in details.items())

        return line


# ============================================================================
# ФИЛЬТРЫ
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """Маскирует ключи и секреты биржи в тексте сообщения"""

    SENSITIVE_KEYS = ('api_key', 'api_secret', 'secret', 'password', 'token', 'signature')

    MASK_PATTERNS = [
        re.compile(rf'({key}["\']?\s*[:=]\s*["\']?)([^"\'>\s,&]+)', re.IGNORECASE)
        for key in SENSITIVE_KEYS
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = str(record.msg)
        lowered = message.lower()

        if any(key in lowered for key in self.SENSITIVE_KEYS):
            for pattern in self.MASK_PATTERNS:
                message = pattern.sub(r'\1***MASKED***', message)
            record.msg = message

        return True


# ============================================================================
# МЕНЕДЖЕР ЛОГИРОВАНИЯ
# ============================================================================

class EngineLogger:
    """
    Управляет handler'ами root-логгера и выдает именованные логгеры.

    Пока ``setup`` не вызван явно, используется только консоль: модули
    получают логгеры при импорте, а файловые handler'ы подключаются
    при старте приложения с параметрами из настроек.
    """

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: Dict[str, logging.Handler] = {}
        self._initialized = False
        self._log_dir = Path("logs")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def setup(
        self,
        log_level: str = "INFO",
        log_format: Optional[str] = None,
        log_to_file: bool = False,
        log_file_path: str = "logs/trading_engine.log",
        log_file_max_size: int = 10 * 1024 * 1024,
        log_file_backup_count: int = 5,
        colored_console: bool = True,
        json_format: bool = False,
        force: bool = False,
    ) -> None:
        """
        Настройка root-логгера

        Args:
            log_level: Уровень логирования
            log_format: Формат строк консоли и текстового файла
            log_to_file: Писать ли в файл с ротацией
            log_file_path: Путь к основному файлу логов
            log_file_max_size: Размер файла до ротации (байты)
            log_file_backup_count: Количество архивных файлов
            colored_console: Цветной вывод
            json_format: JSON вместо текста в файле
            force: Перенастроить, даже если уже инициализировано
        """
        if self._initialized and not force:
            return

        self._close_handlers()

        log_format = log_format or DEFAULT_FORMAT

        console_handler = logging.StreamHandler(sys.stdout)
        if colored_console:
            console_handler.setFormatter(ColoredFormatter(log_format, DEFAULT_DATE_FORMAT))
        else:
            console_handler.setFormatter(logging.Formatter(log_format, DEFAULT_DATE_FORMAT))
        console_handler.addFilter(SensitiveDataFilter())
        self._handlers['console'] = console_handler

        if log_to_file:
            log_path = Path(log_file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_dir = log_path.parent

            file_handler = logging.handlers.RotatingFileHandler(
                filename=str(log_path),
                maxBytes=log_file_max_size,
                backupCount=log_file_backup_count,
                encoding='utf-8'
            )
            if json_format:
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(log_format, DEFAULT_DATE_FORMAT))
            file_handler.addFilter(SensitiveDataFilter())
            self._handlers['file'] = file_handler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        root_logger.handlers.clear()
        for handler in self._handlers.values():
            root_logger.addHandler(handler)

        self._initialized = True

        self.get_logger("system.logger").info(
            f"🚀 Logging initialized (level: {log_level}, file: {log_to_file})"
        )

    def get_logger(self, name: str) -> logging.Logger:
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]

    def create_trading_logger(self, component: str) -> logging.Logger:
        """
        Логгер торговых операций. При включенной записи в файл события
        дополнительно пишутся в ``trades.log`` рядом с основным журналом.
        """
        logger = self.get_logger(f"trading.{component}")

        if 'file' in self._handlers and 'trading' not in self._handlers:
            trading_handler = logging.handlers.RotatingFileHandler(
                filename=str(self._log_dir / "trades.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
                encoding='utf-8'
            )
            trading_handler.setFormatter(TradeEventFormatter(datefmt=DEFAULT_DATE_FORMAT))
            trading_handler.addFilter(SensitiveDataFilter())
            self._handlers['trading'] = trading_handler
            logging.getLogger("trading").addHandler(trading_handler)

        return logger

    def create_strategy_logger(self, strategy_type: str, strategy_id: Optional[str] = None) -> logging.Logger:
        name = f"strategies.{strategy_type}"
        if strategy_id:
            name += f".{strategy_id[:8]}"
        return self.get_logger(name)

    def log_trading_event(
        self,
        event_type: str,
        message: str,
        symbol: Optional[str] = None,
        strategy_id: Optional[str] = None,
        **details
    ) -> None:
        logger = self.create_trading_logger("events")
        logger.info(message, extra={
            'event_type': event_type,
            'symbol': symbol,
            'strategy_id': strategy_id,
            'details': details,
            'log_type': 'trading_event',
        })

    def _close_handlers(self) -> None:
        trading_root = logging.getLogger("trading")
        for name, handler in self._handlers.items():
            if name == 'trading':
                trading_root.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def shutdown(self) -> None:
        """Закрытие файловых handler'ов"""
        self._close_handlers()
        self._initialized = False


@lru_cache()
def get_logger_instance() -> EngineLogger:
    return EngineLogger()


engine_logger = get_logger_instance()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def setup_logger(name: str, log_level: str = "INFO") -> logging.Logger:
    """
    Получение логгера модуля. При первом вызове включает консольный вывод.
    """
    if not engine_logger.is_initialized:
        engine_logger.setup(log_level=log_level)

    return engine_logger.get_logger(name)


def get_strategy_logger(strategy_type: str, strategy_id: Optional[str] = None) -> logging.Logger:
    return engine_logger.create_strategy_logger(strategy_type, strategy_id)


def log_trading_event(
    event_type: str,
    message: str,
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    **details
) -> None:
    """
    Запись торгового события (POSITION_OPENED, TRADE_SAVED, STOP_LOSS_HIT ...)
    """
    engine_logger.log_trading_event(
        event_type=event_type,
        message=message,
        symbol=symbol,
        strategy_id=strategy_id,
        **details
    )


# ============================================================================
# ВНЕШНИЕ БИБЛИОТЕКИ
# ============================================================================

def configure_external_loggers(level: str = "WARNING") -> None:
    """Приглушение шумных логгеров сторонних библиотек"""
    for logger_name in (
        'aiohttp.access',
        'aiohttp.client',
        'websockets',
        'websockets.client',
        'sqlalchemy.engine',
        'aiosqlite',
        'uvicorn.access',
    ):
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper(), logging.WARNING))
