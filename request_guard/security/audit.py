"""
Security Audit Logging

This module records security events raised by the request pipeline. Events are
immutable SecurityEvent records written to a pluggable AuditSink: structlog
(default), a MongoDB collection, or an in-memory list for tests.

Audit writes are best-effort. A failing sink never blocks or fails the request;
the event is re-emitted on the structlog error channel and counted in the
audit_sink_failures metric instead.

Key Features:
- Closed SecurityEventType catalogue with a fixed default severity per type
- Log level selected from event severity (critical -> error, high -> warning)
- Request metadata (endpoint, method, client IP, user agent, request ID)
  captured from the RequestDescriptor at record time
- Prometheus counters per event type and severity

Dependencies:
- structlog 23.1+: Structured audit channel and sink fallback logging
- pymongo 4.5+: Optional persistent audit sink
- prometheus-client 0.17+: Event and sink failure counters
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog
from pymongo import MongoClient

from request_guard.monitoring.metrics import security_metrics
from request_guard.security.models import Identity, RequestDescriptor


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(Enum):
    """Security event catalogue shared by every pipeline stage."""

    ACCESS_GRANTED = "ACCESS_GRANTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_HEADER = "SUSPICIOUS_HEADER"
    ATTACK_PATTERN_DETECTED = "ATTACK_PATTERN_DETECTED"
    INVALID_ORIGIN = "INVALID_ORIGIN"
    POTENTIAL_XSS = "POTENTIAL_XSS"
    SUSPICIOUS_FILE = "SUSPICIOUS_FILE"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    INPUT_VALIDATION_FAILED = "INPUT_VALIDATION_FAILED"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


EVENT_SEVERITY: Dict[SecurityEventType, Severity] = {
    SecurityEventType.ACCESS_GRANTED: Severity.LOW,
    SecurityEventType.RATE_LIMIT_EXCEEDED: Severity.MEDIUM,
    SecurityEventType.SUSPICIOUS_HEADER: Severity.HIGH,
    SecurityEventType.ATTACK_PATTERN_DETECTED: Severity.CRITICAL,
    SecurityEventType.INVALID_ORIGIN: Severity.HIGH,
    SecurityEventType.POTENTIAL_XSS: Severity.CRITICAL,
    SecurityEventType.SUSPICIOUS_FILE: Severity.HIGH,
    SecurityEventType.AUTHENTICATION_FAILED: Severity.MEDIUM,
    SecurityEventType.AUTHORIZATION_DENIED: Severity.HIGH,
    SecurityEventType.INPUT_VALIDATION_FAILED: Severity.MEDIUM,
    SecurityEventType.INTEGRITY_FAILURE: Severity.HIGH,
    SecurityEventType.INTERNAL_ERROR: Severity.HIGH,
}

_LOG_LEVEL_BY_SEVERITY: Dict[Severity, str] = {
    Severity.CRITICAL: 'error',
    Severity.HIGH: 'warning',
    Severity.MEDIUM: 'info',
    Severity.LOW: 'info',
}


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit record. metadata is exposed read-only."""

    event_type: SecurityEventType
    severity: Severity
    timestamp: datetime
    request_id: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'severity': self.severity.value,
            'timestamp': self.timestamp.isoformat(),
            'request_id': self.request_id,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role,
            'client_ip': self.client_ip,
            'user_agent': self.user_agent,
            'endpoint': self.endpoint,
            'method': self.method,
            'metadata': dict(self.metadata),
        }


class AuditSink(ABC):
    """Destination for security events."""

    name = 'sink'

    @abstractmethod
    def write(self, event: SecurityEvent) -> None:
        """Persist one event. May raise; the AuditLogger absorbs failures."""


class LoggingAuditSink(AuditSink):
    """Writes events to the structlog 'security.audit' channel."""

    name = 'logging'

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
        self.logger = logger or structlog.get_logger("security.audit")

    def write(self, event: SecurityEvent) -> None:
        log_method = getattr(self.logger, _LOG_LEVEL_BY_SEVERITY[event.severity])
        log_method("Security event", **event.to_dict())


class MongoAuditSink(AuditSink):
    """
    Persists events into a MongoDB collection.

    Args:
        collection: pymongo Collection, conventionally 'security_audit_logs'
    """

    name = 'mongodb'

    def __init__(self, collection: Any) -> None:
        self.collection = collection

    @classmethod
    def from_uri(
        cls,
        mongodb_uri: str,
        database: str,
        collection_name: str = 'security_audit_logs',
        server_selection_timeout_ms: int = 5000
    ) -> 'MongoAuditSink':
        client = MongoClient(mongodb_uri, serverSelectionTimeoutMS=server_selection_timeout_ms)
        return cls(client[database][collection_name])

    def write(self, event: SecurityEvent) -> None:
        document = event.to_dict()
        # Native datetime so TTL and range indexes work
        document['timestamp'] = event.timestamp
        self.collection.insert_one(document)


class MemoryAuditSink(AuditSink):
    """Keeps events in a list; used by tests and local debugging."""

    name = 'memory'

    def __init__(self) -> None:
        self._events: List[SecurityEvent] = []
        self._lock = threading.Lock()

    def write(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: SecurityEventType) -> List[SecurityEvent]:
        return [event for event in self.events if event.event_type is event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class AuditLogger:
    """
    Builds SecurityEvents from request data and writes them to a sink.

    record() never raises. Sink errors are reported on the fallback logger
    together with the event so nothing is silently lost.

    Args:
        sink: Event destination, LoggingAuditSink when omitted
        fallback_logger: structlog logger used when the sink fails
        enabled: When False, record() builds nothing and returns None
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        fallback_logger: Optional[structlog.stdlib.BoundLogger] = None,
        enabled: bool = True
    ) -> None:
        self.sink = sink if sink is not None else LoggingAuditSink()
        self.fallback_logger = fallback_logger or structlog.get_logger("security.audit.fallback")
        self.enabled = enabled

    def record(
        self,
        event_type: SecurityEventType,
        request: RequestDescriptor,
        identity: Optional[Identity] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[Severity] = None
    ) -> Optional[SecurityEvent]:
        """
        Record a security event for a request.

        Args:
            event_type: Event catalogue entry
            request: Request the event concerns
            identity: Acting identity, defaults to request.identity
            metadata: Event-specific details
            severity: Overrides the catalogue severity

        Returns:
            The recorded event, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        actor = identity or request.identity
        event = SecurityEvent(
            event_type=event_type,
            severity=severity or EVENT_SEVERITY[event_type],
            timestamp=datetime.now(timezone.utc),
            request_id=request.request_id,
            actor_id=actor.actor_id if actor else None,
            actor_role=actor.role if actor else None,
            client_ip=request.resolve_client_ip(),
            user_agent=request.user_agent,
            endpoint=request.url,
            method=request.method,
            metadata=metadata or {},
        )

        security_metrics['audit_events'].labels(
            event_type=event.event_type.value,
            severity=event.severity.value
        ).inc()

        try:
            self.sink.write(event)
        except Exception as e:
            self._report_sink_failure(event, e)

        return event

    def _report_sink_failure(self, event: SecurityEvent, error: Exception) -> None:
        security_metrics['audit_sink_failures'].labels(sink=self.sink.name).inc()
        self.fallback_logger.error(
            "Audit sink write failed",
            sink=self.sink.name,
            error=str(error),
            error_type=type(error).__name__,
            **event.to_dict()
        )


__all__ = [
    'Severity',
    'SecurityEventType',
    'EVENT_SEVERITY',
    'SecurityEvent',
    'AuditSink',
    'LoggingAuditSink',
    'MongoAuditSink',
    'MemoryAuditSink',
    'AuditLogger',
]
