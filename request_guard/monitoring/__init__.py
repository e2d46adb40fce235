"""
Monitoring package: structured logging and Prometheus metrics.
"""

from request_guard.monitoring.logging import (
    LoggingConfig,
    bind_request_id,
    get_request_id,
    clear_request_id,
    setup_structured_logging,
    get_logger,
)
from request_guard.monitoring.metrics import security_metrics

__all__ = [
    'LoggingConfig',
    'bind_request_id',
    'get_request_id',
    'clear_request_id',
    'setup_structured_logging',
    'get_logger',
    'security_metrics',
]
