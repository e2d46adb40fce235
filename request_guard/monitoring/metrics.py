"""
Prometheus metrics for the request security pipeline.

All collectors are registered once at import time on the default registry and
shared through the security_metrics dictionary, so components record their
decisions without holding references to individual collectors.
"""

from prometheus_client import Counter, Histogram


security_metrics = {
    'pipeline_decisions': Counter(
        'request_guard_pipeline_decisions_total',
        'Security pipeline outcomes by terminal stage',
        ['stage', 'outcome']
    ),
    'pipeline_duration': Histogram(
        'request_guard_pipeline_duration_seconds',
        'Time spent in the security pipeline per request',
        ['outcome']
    ),
    'rate_limit_rejections': Counter(
        'request_guard_rate_limit_rejections_total',
        'Requests rejected by the rate limiter',
        ['category']
    ),
    'guard_rejections': Counter(
        'request_guard_guard_rejections_total',
        'Requests rejected by the origin and pattern guard',
        ['reason']
    ),
    'validation_failures': Counter(
        'request_guard_validation_failures_total',
        'Payloads rejected by the input validator',
        ['reason']
    ),
    'audit_events': Counter(
        'request_guard_audit_events_total',
        'Security events recorded by the audit logger',
        ['event_type', 'severity']
    ),
    'audit_sink_failures': Counter(
        'request_guard_audit_sink_failures_total',
        'Audit sink writes that fell back to the log channel',
        ['sink']
    ),
    'crypto_operations': Counter(
        'request_guard_crypto_operations_total',
        'Encryption and decryption operations by outcome',
        ['operation', 'outcome']
    ),
}


__all__ = ['security_metrics']
