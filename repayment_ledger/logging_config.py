"""
Structured Logging Configuration Module

Ledger operations log through loggers under "repayment_ledger". Structured
fields (actor, action, ledger resource, amounts) travel on the log record and
are rendered either as one JSON object per line or as key=value pairs.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


ROOT_LOGGER = "repayment_ledger"

# Record attributes promoted to top-level structured fields
STRUCTURED_FIELDS = ('correlation_id', 'user_id', 'action', 'resource', 'extra')

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The structured fields set on a record, skipping empty ones"""
    values = {}
    for name in STRUCTURED_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            values[name] = value
    return values


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(structured_fields(record))

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain text lines with structured fields appended as key=value"""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record):
        line = super().format(record)
        fields = structured_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


def setup_logging(
    level: str = "INFO",
    logger_name: str = ROOT_LOGGER,
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Attach a single handler to the engine logger.

    Args:
        level: Log level name
        logger_name: Logger to configure, the engine root by default
        log_format: "json", anything else gives plain text
        log_file: Append to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def configure_logging(config, logger_name: str = ROOT_LOGGER) -> logging.Logger:
    """Set up the engine logger from a LedgerConfig"""
    return setup_logging(
        level=config.log_level,
        logger_name=logger_name,
        log_format=config.log_format,
        log_file=config.log_file,
    )


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with structured fields.

    Args:
        logger: Logger to emit on
        level: Level name (info, warning, ...)
        message: Human readable message
        user_id: Actor performing the action
        action: Operation name, e.g. "make_payment"
        resource: Affected record, e.g. "ledger:<id>"
        correlation_id: Request correlation id
        extra: Additional structured data
    """
    fields = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'extra': extra,
    }
    getattr(logger, level.lower())(
        message, extra={key: value for key, value in fields.items() if value}
    )
