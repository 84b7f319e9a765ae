"""
Structured logging for the API process and the sweep worker.

structlog renders every event as one JSON line on stdout. The API
middleware binds ``request_id``, ``method`` and ``path`` through
contextvars, so every event logged while serving a request carries them.
Payment secrets never reach the log: see ``redact_secrets``.
"""
import logging
import sys
from typing import Any, Callable, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from order_engine import __version__
from order_engine.config import Settings, get_settings

EventDict = Dict[str, Any]

# Keys whose values are credentials or can be used to complete a payment.
SECRET_KEYS = frozenset(
    {
        "api_key",
        "client_secret",
        "signature",
        "stripe_signature",
        "webhook_secret",
        "authorization",
    }
)
REDACTED = "[redacted]"


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def service_context(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Processor stamping the service name, environment and version on each event."""

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        event_dict.setdefault("version", __version__)
        return event_dict

    return add_service_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the root handler is replaced each time.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            service_context(settings),
            redact_secrets,
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

    # Library records (uvicorn, sqlalchemy, stripe) go through the same stream as JSON.
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING if settings.is_production else logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        ledger_backend=settings.ledger_backend,
    )
