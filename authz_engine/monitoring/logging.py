"""
Structured logging setup.

structlog renders through the standard library so library loggers (pymongo,
httpx) and engine loggers share one handler. A correlation id held in a
context variable is attached to every entry logged while it is set, which
lets a caller tie the cache, storage and event log lines of one decision
together.
"""

import logging
import logging.config
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog

from authz_engine.config.settings import BaseConfig

correlation_id_context: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation id for the current context, generating one if absent."""
    if correlation_id is None:
        correlation_id = uuid.uuid4().hex
    correlation_id_context.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return correlation_id_context.get()


def clear_correlation_id() -> None:
    correlation_id_context.set(None)


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = correlation_id_context.get()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def configure_structured_logging(config: BaseConfig) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the root logger from settings.

    Args:
        config: Loaded settings; ``LOG_LEVEL`` and ``LOG_FORMAT`` are used

    Returns:
        Logger bound to this module
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        add_correlation_id,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if config.LOG_FORMAT == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {'format': '%(message)s'},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {'handlers': ['console'], 'level': config.LOG_LEVEL},
            'pymongo': {'level': 'WARNING'},
            'httpx': {'level': 'WARNING'},
        },
    })

    logger = structlog.get_logger(__name__)
    logger.info(
        "Structured logging configured",
        environment=config.ENVIRONMENT,
        log_level=config.LOG_LEVEL,
        log_format=config.LOG_FORMAT
    )
    return logger
