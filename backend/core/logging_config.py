"""Structured logging configuration using structlog.

``LOG_FORMAT=text`` (or ``ENVIRONMENT=development``) renders human-readable
lines. ``json`` renders one JSON object per line tagged with the app name
and version. Log lines go to stderr unless another stream is given, so
command output on stdout stays machine-readable.
"""

import logging
import sys
from typing import Optional, TextIO

import structlog
from app.config import Settings, get_settings

QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "asyncio")


def _add_app_info(settings: Settings):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("app", settings.APP_NAME)
        event_dict.setdefault("version", settings.APP_VERSION)
        return event_dict

    return processor


def setup_logging(stream: Optional[TextIO] = None, settings: Optional[Settings] = None) -> None:
    """Route structlog and stdlib logging through one handler on ``stream``.

    Loggers are cached after first use except under ``ENVIRONMENT=testing``,
    where tests swap the configuration (``structlog.testing.capture_logs``).
    """
    settings = settings or get_settings()
    stream = stream or sys.stderr
    as_json = settings.LOG_FORMAT.lower() == "json" and not settings.is_development

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if as_json:
        renderer = structlog.processors.JSONRenderer()
        shared_processors.append(_add_app_info(settings))
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=not settings.is_testing,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *([structlog.processors.format_exc_info] if as_json else []),
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
