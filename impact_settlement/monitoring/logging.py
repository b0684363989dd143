"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Modules log event names with keyword
context, e.g. ``logger.info("wallet_credited", wallet_id=..., grams=...)``.
"""
import logging
import sys
import uuid
from decimal import Decimal
from typing import Any, ContextManager, Dict

import structlog
from pythonjsonlogger import jsonlogger

from impact_settlement.config import get_settings


def add_app_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application name and environment to every log event."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def render_domain_values(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Render ids and money as strings so amounts keep their exact cents."""
    for key, value in event_dict.items():
        if isinstance(value, (uuid.UUID, Decimal)):
            event_dict[key] = str(value)
    return event_dict


def settlement_context(**ids: Any) -> ContextManager[None]:
    """
    Bind settlement identifiers (transaction, event, payment intent) to every
    log line emitted inside the block, including those of nested components.

    ``None`` values are skipped.
    """
    return structlog.contextvars.bound_contextvars(
        **{key: str(value) for key, value in ids.items() if value is not None}
    )


def setup_logging() -> None:
    """
    Configure structured logging with JSON formatter.

    Call once at process start-up, after settings can be loaded. Until then
    structlog's default console renderer is in effect, which is what tests use.
    """
    settings = get_settings()

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
            add_app_context,
            render_domain_values,
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

    # SQL echo is controlled by settings.database_echo, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )


def get_logger(name: str) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
