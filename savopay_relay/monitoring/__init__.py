"""Logging, metrics and health checks."""
from .health import HealthCheck, HealthCheckError
from .logging import AppContext, app_context, setup_logging
from .metrics import MetricsCollector, metrics

__all__ = [
    "AppContext",
    "HealthCheck",
    "HealthCheckError",
    "MetricsCollector",
    "app_context",
    "metrics",
    "setup_logging",
]
