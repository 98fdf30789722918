"""Structured logging configuration."""
import logging
import structlog
from core.config import settings


def configure_logging():
    """Configure structured logging with structlog."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str):
    """Get a logger instance."""
    return structlog.get_logger(name)


def bind_incident_context(incident_id: str, **extra) -> None:
    """Attach incident identifiers to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(incident_id=incident_id, **extra)


def clear_incident_context() -> None:
    """Drop identifiers bound by bind_incident_context."""
    structlog.contextvars.clear_contextvars()
