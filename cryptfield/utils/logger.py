"""
Structured text logging for the cryptfield package.

Records render as ``timestamp | LEVEL | logger | message | k=v ...``. Keyword
fields whose names can carry secrets are redacted before they reach a
handler, so a careless ``logger.debug(..., key=key)`` never prints key
material.
"""
import logging
import sys
from typing import Any, Dict, Tuple
from cryptfield.config import settings

PACKAGE_LOGGER = "cryptfield"

REDACTED = "<redacted>"

# Field names never rendered with their value
SECRET_FIELDS = frozenset({
    "key", "master_key", "wrapping_key", "nonce", "plaintext", "ciphertext", "data", "value",
})

# Third-party loggers levelled from settings: setting name -> (default, logger names)
THIRD_PARTY_LOGGERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "SQLALCHEMY_LOG_LEVEL": ("WARNING", ("sqlalchemy.engine", "sqlalchemy.pool")),
    "UVICORN_LOG_LEVEL": ("INFO", ("uvicorn", "uvicorn.access")),
    "AIOSQLITE_LOG_LEVEL": ("WARNING", ("aiosqlite",)),
}

# Attributes every LogRecord carries; anything else came in through ``extra``
RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Render a record followed by its extra fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        fields = [
            f"{name}={value}"
            for name, value in record.__dict__.items()
            if name not in RECORD_ATTRIBUTES
        ]
        if fields:
            line += " | " + " ".join(fields)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def setup_logging() -> logging.Logger:
    """
    Configure the package logger and third-party log levels.

    APP_LOG_LEVEL (falling back to LOG_LEVEL) levels the package logger;
    SQLALCHEMY_LOG_LEVEL, UVICORN_LOG_LEVEL and AIOSQLITE_LOG_LEVEL level
    the libraries underneath it.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    level = _level(settings.APP_LOG_LEVEL or settings.LOG_LEVEL)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    for setting, (default, names) in THIRD_PARTY_LOGGERS.items():
        third_party_level = _level(getattr(settings, setting) or default)
        for name in names:
            logging.getLogger(name).setLevel(third_party_level)

    return logger


class StructuredLogger:
    """
    Logger accepting keyword fields.

    Fields named like LogRecord attributes are prefixed with ``ctx_``;
    fields in SECRET_FIELDS are replaced by a redaction marker.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _fields(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        extra = {}
        for key, value in kwargs.items():
            if key in SECRET_FIELDS:
                value = REDACTED
            if key in RECORD_ATTRIBUTES:
                key = f"ctx_{key}"
            extra[key] = value
        return extra

    def _log(self, level: int, msg: str, *args, **kwargs):
        exc_info = kwargs.pop("exc_info", False)
        self._logger.log(
            level, msg, *args, extra=self._fields(kwargs), exc_info=exc_info, stacklevel=3
        )

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger under the package namespace.

    Args:
        name: Logger name (will be prefixed with 'cryptfield.')
    """
    return StructuredLogger(logging.getLogger(f"{PACKAGE_LOGGER}.{name}"))


package_logger = setup_logging()
