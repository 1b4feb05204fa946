"""
Centralized Logging Configuration

JSON formatting for production log shipping, human-readable output otherwise.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        'tenant_id',
        'schedule_entry_id',
        'target_type',
        'run_id',
        'request_id',
    )

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for field_name in self.EXTRA_FIELDS:
            if hasattr(record, field_name):
                log_entry[field_name] = getattr(record, field_name)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: Optional[str] = None,
    use_json: Optional[bool] = None,
    log_file: Optional[str] = None,
    service_name: str = 'review-scraper'
):
    """
    Setup centralized logging configuration.

    Args:
        level: Log level name; defaults to the configured LOG_LEVEL
        use_json: Force JSON output; defaults to production or USE_JSON_LOGGING
        log_file: Optional file path for log output
        service_name: Name of the returned service logger
    """
    if level is None or use_json is None:
        from scraper.core.config import get_settings
        settings = get_settings()
        if level is None:
            level = settings.log_level
        if use_json is None:
            use_json = settings.use_json_logging or settings.is_production

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Noisy third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('apify_client').setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def get_logger(name: str, **context):
    """
    Get a logger that attaches the given context to every record.

    Usage:
        log = get_logger(__name__, tenant_id=tenant_id)
        log.info("Subscription created")
    """
    logger = logging.getLogger(name)
    if not context:
        return logger
    return logging.LoggerAdapter(logger, context)
