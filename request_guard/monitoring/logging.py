"""
Structured Logging Configuration

This module configures structlog 23.1+ on top of the standard library logging
package for the request security pipeline. Security decisions, audit sink
fallbacks and configuration events are emitted as structured JSON records so
they can be shipped to a log aggregation backend unchanged.

Key Features:
- JSON or console rendering selected through LOG_FORMAT
- Request ID propagation through a context variable and a structlog processor
- ISO timestamps, logger names and log levels on every record
- get_logger() accessor returning stdlib-bound structlog loggers

Dependencies:
- structlog 23.1+: Structured logging processors and renderers
"""

import os
import uuid
import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog


# Request ID of the pipeline invocation currently running on this context
request_id_context: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


class LoggingConfig:
    """
    Logging configuration read from the environment.
    """

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')  # json, console
    COLORED_CONSOLE_OUTPUT = os.getenv('COLORED_CONSOLE_OUTPUT', 'false').lower() == 'true'
    APPLICATION_NAME = os.getenv('APPLICATION_NAME', 'request-guard')
    REQUEST_ID_HEADER = os.getenv('REQUEST_ID_HEADER', 'X-Request-ID')


def bind_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Existing request ID, generated if None

    Returns:
        The request ID that was bound
    """
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_context.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    """Get the request ID bound to the current context."""
    return request_id_context.get()


def clear_request_id() -> None:
    request_id_context.set(None)


def create_request_id_processor() -> Callable:
    """
    Create structlog processor for request ID enrichment.

    Returns:
        Processor function for structlog
    """
    def processor(logger, method_name, event_dict):
        request_id = request_id_context.get()
        if request_id and 'request_id' not in event_dict:
            event_dict['request_id'] = request_id
        return event_dict

    return processor


def setup_structured_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None
) -> structlog.stdlib.BoundLogger:
    """
    Setup structured logging for the security pipeline.

    Args:
        log_level: Overrides LOG_LEVEL
        log_format: Overrides LOG_FORMAT ('json' or 'console')

    Returns:
        Configured structured logger instance
    """
    level = (log_level or LoggingConfig.LOG_LEVEL).upper()
    render_format = log_format or LoggingConfig.LOG_FORMAT

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        create_request_id_processor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if render_format == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=LoggingConfig.COLORED_CONSOLE_OUTPUT))
    else:
        # Default to JSON for log aggregation
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging_config: Dict[str, Any] = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {
                'format': '%(message)s'
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            }
        },
        'loggers': {
            '': {
                'handlers': ['console'],
                'level': level,
            }
        }
    }
    logging.config.dictConfig(logging_config)

    logger = structlog.get_logger(LoggingConfig.APPLICATION_NAME)
    logger.info(
        "Structured logging initialized",
        log_level=level,
        log_format=render_format,
    )
    return logger


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance with optional name.

    Args:
        name: Logger name, defaults to application name

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name or LoggingConfig.APPLICATION_NAME)


__all__ = [
    'LoggingConfig',
    'request_id_context',
    'bind_request_id',
    'get_request_id',
    'clear_request_id',
    'create_request_id_processor',
    'setup_structured_logging',
    'get_logger',
]
