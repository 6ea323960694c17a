"""
Logging configuration for the careflow onboarding engine.

- Structured JSON logging in production, console rendering elsewhere
- trace_id (bound by TraceMiddleware) merged into every record, including
  stdlib records from third-party libraries
- Environment-aware log levels
"""

import logging
import os

import structlog


def configure_structlog() -> None:
    """
    Configure structlog with the stdlib integration so
    logger.info("event", key=val) works everywhere.
    """
    env = os.getenv("ENVIRONMENT", "development")

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if env == "production":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]


def get_log_level() -> str:
    """
    Get log level from environment, falling back to a per-environment default.

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    env = os.getenv("ENVIRONMENT", "development")
    log_level = os.getenv("LOG_LEVEL", "").upper()

    if log_level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        return log_level

    defaults = {
        "production": "INFO",
        "staging": "INFO",
        "development": "DEBUG",
        "test": "WARNING",
    }

    return defaults.get(env, "INFO")


def configure_logging() -> None:
    """
    Initialize logging for the application. Call once at startup.
    """
    configure_structlog()

    logging.getLogger().setLevel(get_log_level())

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

