"""
Structured logging configuration.

Every process (API, reclaimer, payment-event consumer) logs JSON through
structlog with the request id or worker name bound in contextvars, so one
checkout can be followed from cart hold to reconciliation.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from checkout_engine.config import get_settings

# Event keys whose values must never reach log storage.
REDACTED_KEYS = frozenset(
    {
        "client_secret",
        "checkout_token",
        "provider_checkout_token",
        "stripe_signature",
        "authorization",
        "webhook_secret",
    }
)

_component = "api"


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp each event with the app, process, environment and payment backend."""
    settings = get_settings()
    event_dict["component"] = _component
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["payment_backend"] = settings.payment_backend
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def setup_logging(component: str = "api") -> None:
    """
    Configure structured logging for one process.

    Args:
        component: Process name bound to every event (``api``,
            ``reclaimer``, ``payment-events``)
    """
    global _component
    _component = component
    settings = get_settings()

    renderer: Any = structlog.processors.JSONRenderer()
    if settings.debug and not settings.is_production:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_app_context,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    # Broker and HTTP client chatter
    for noisy in ("aio_pika", "aiormq", "httpx", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        component=component,
        log_level=settings.log_level,
    )
