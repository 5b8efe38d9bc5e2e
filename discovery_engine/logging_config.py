"""Structured logging configuration."""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from discovery_engine.config import settings
from discovery_engine.utils.timeutils import utcnow

_secret_values: set[str] = set()
_secret_lock = threading.Lock()


def register_secret(value: Optional[str]) -> None:
    """Mask this value in every log record from now on."""
    if value and len(value) >= 4:
        with _secret_lock:
            _secret_values.add(value)


class SecretRedactionFilter(logging.Filter):
    """Replaces registered secret values in formatted messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not _secret_values:
            return True
        message = record.getMessage()
        redacted = message
        for value in list(_secret_values):
            if value in redacted:
                redacted = redacted.replace(value, "***")
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, level and source fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = utcnow().isoformat().replace('+00:00', 'Z')
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName


def setup_logging(base_dir: str | Path | None = None):
    """Configure logging for the application.

    Args:
        base_dir: Optional base directory to place the logs/ folder in.
                  If omitted, uses the current working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    redaction = SecretRedactionFilter()

    # Console handler (human-readable for development)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    console_handler.addFilter(redaction)
    root_logger.addHandler(console_handler)

    # JSON file for log shipping
    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    json_handler.addFilter(redaction)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    error_handler.addFilter(redaction)
    root_logger.addHandler(error_handler)

    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds context fields (tenant, configuration, execution) to log records."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields such as tenant_id='acme', configuration_id='...'

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
