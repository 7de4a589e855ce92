"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Transaction and correlation IDs are
bound per request through structlog contextvars.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from tip_reconciliation.config import Settings, get_settings


def app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """
    Build a processor that adds application context to log events.

    Args:
        settings: Settings the logging was configured with

    Returns:
        Callable: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request and transaction ID context
    - Structured log fields
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context_processor(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
