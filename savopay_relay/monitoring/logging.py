"""
Structured logging configuration.

structlog renders JSON events on top of stdlib logging, so library loggers
(httpx, SQLAlchemy, uvicorn) end up on the same stdout stream. Every event
carries the service name and environment of the settings it was set up with.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from savopay_relay.config import Settings, get_settings


class AppContext:
    """structlog processor stamping ``app_name`` and ``app_env`` onto events."""

    def __init__(self) -> None:
        self.fields: dict[str, str] = {}

    def bind(self, settings: Settings) -> None:
        self.fields = {"app_name": settings.app_name, "app_env": settings.app_env}

    def __call__(
        self, logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


# Shared with loggers cached before a later bind()
app_context = AppContext()


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None, log_level: Optional[str] = None) -> None:
    """
    Configure structlog and the root logger.

    Args:
        settings: Settings to take the level and app context from
            (defaults to environment settings)
        log_level: Override for ``settings.log_level``
    """
    settings = settings or get_settings()
    level = (log_level or settings.log_level).upper()
    app_context.bind(settings)

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
            app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_json_handler())

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info("logging_configured", log_level=level)
