"""
Structured logging configuration using structlog.

Production emits one JSON object per line; every other environment gets the
coloured console renderer. Request IDs are bound through contextvars by the
API middleware, and the worker loops bind outbox entry / task ids the same
way, so a single drain can be followed across services.
"""

import logging
import sys

import structlog

from bookingcore.core.config import get_settings

# Event keys that may carry credentials; never written out verbatim
REDACTED_KEYS = frozenset({"auth", "p256dh", "signature", "x_webhook_signature", "token", "authorization"})


def _redact_secrets(logger, method_name: str, event_dict: dict) -> dict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _add_service(logger, method_name: str, event_dict: dict) -> dict:
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def setup_logging() -> None:
    settings = get_settings()
    json_output = settings.ENVIRONMENT == "production"

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _redact_secrets,
    ]
    if json_output:
        pre_chain += [_add_service, structlog.processors.format_exc_info]
        renderer = structlog.processors.JSONRenderer()
    else:
        pre_chain.append(structlog.processors.UnicodeDecoder())
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        # Records from uvicorn, alembic and sqlalchemy go through the same chain
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    # setup_logging runs once per lifespan; tests start several apps
    for existing in list(root.handlers):
        if isinstance(existing.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
