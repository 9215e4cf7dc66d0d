"""Structured logging setup.

Call ``configure_logging()`` once at process start (API and Celery worker).
Modules get their logger with ``structlog.get_logger(__name__)``.
"""

import logging

import structlog

from settlement.core.config import settings


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    level_value = logging.getLevelNamesMapping().get((level or settings.LOG_LEVEL).upper(), logging.INFO)
    as_json = settings.LOG_JSON if json_output is None else json_output

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer formats exceptions itself
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
