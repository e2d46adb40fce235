"""
Origin and attack pattern screening.

First pipeline stage. Rejects header spoofing attempts, cross-origin calls from
hosts outside the allow-list and URLs carrying path traversal, script, SQL or
NoSQL injection signatures. Each rejection is written to the audit log before
the error is raised, so the guard is the only writer of its own events.
"""

from typing import Optional
from urllib.parse import unquote_plus, urlparse

import structlog

from request_guard.config.settings import OriginConfig, get_security_config
from request_guard.monitoring.metrics import security_metrics
from request_guard.security.audit import AuditLogger, SecurityEventType
from request_guard.security.exceptions import AuthorizationError, BadRequestError, SecurityError
from request_guard.security.models import RequestDescriptor


logger = structlog.get_logger("security.guard")

LOOPBACK_HOSTS = frozenset({'localhost', '127.0.0.1', '::1'})


class OriginGuard:
    """
    Screens requests before any quota or identity work is done.

    Args:
        config: Allow-list, suspicious headers and attack signatures
        audit_logger: Receives one event per rejection
    """

    def __init__(
        self,
        config: Optional[OriginConfig] = None,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        self.config = config or get_security_config().origin
        self.audit_logger = audit_logger or AuditLogger()
        self._allowed_domains = tuple(domain.strip().lower() for domain in self.config.allowed_domains)
        self._attack_patterns = tuple(pattern.lower() for pattern in self.config.attack_patterns)

    def screen(self, request: RequestDescriptor) -> None:
        """
        Run header, origin and URL checks in order, stopping at the first hit.

        Raises:
            BadRequestError: Suspicious header or attack signature in the URL
            AuthorizationError: Origin header outside the allow-list
        """
        for header_name in self.config.suspicious_headers:
            if request.header(header_name) is not None:
                self._reject(
                    request,
                    BadRequestError(
                        f"Suspicious header present: {header_name}",
                        metadata={'header': header_name}
                    ),
                    SecurityEventType.SUSPICIOUS_HEADER,
                    reason='suspicious_header'
                )

        origin = request.header('Origin')
        if origin is not None and not self.is_allowed_origin(origin):
            self._reject(
                request,
                AuthorizationError(
                    "Origin not allowed",
                    metadata={'origin': origin}
                ),
                SecurityEventType.INVALID_ORIGIN,
                reason='invalid_origin'
            )

        pattern = self.find_attack_pattern(request.url)
        if pattern is not None:
            self._reject(
                request,
                BadRequestError(
                    "Attack pattern detected in URL",
                    metadata={'pattern': pattern, 'url': request.url}
                ),
                SecurityEventType.ATTACK_PATTERN_DETECTED,
                reason='attack_pattern'
            )

    def is_allowed_origin(self, origin: str) -> bool:
        """
        Check an Origin header value against the allow-list.

        Exact host or subdomain matches pass. 'localhost' in the list also
        admits 127.0.0.1 and ::1. Unparsable origins fail.
        """
        try:
            hostname = urlparse(origin.strip()).hostname
        except ValueError:
            return False
        if not hostname:
            return False
        hostname = hostname.lower()

        if hostname in LOOPBACK_HOSTS and 'localhost' in self._allowed_domains:
            return True

        for domain in self._allowed_domains:
            if hostname == domain or hostname.endswith('.' + domain):
                return True
        return False

    def decode_url(self, url: str) -> str:
        """Percent-decode repeatedly until stable, then lower-case."""
        decoded = url
        for _ in range(self.config.url_decode_rounds):
            next_round = unquote_plus(decoded)
            if next_round == decoded:
                break
            decoded = next_round
        return decoded.lower()

    def find_attack_pattern(self, url: str) -> Optional[str]:
        decoded = self.decode_url(url)
        for pattern in self._attack_patterns:
            if pattern in decoded:
                return pattern
        return None

    def _reject(
        self,
        request: RequestDescriptor,
        error: SecurityError,
        event_type: SecurityEventType,
        reason: str
    ) -> None:
        error.metadata['event_type'] = event_type.value
        security_metrics['guard_rejections'].labels(reason=reason).inc()
        self.audit_logger.record(event_type, request, metadata=error.to_audit_metadata())
        logger.warning(
            "Request rejected by origin guard",
            reason=reason,
            url=request.url,
            client_ip=request.resolve_client_ip(),
            request_id=request.request_id
        )
        raise error


__all__ = ['LOOPBACK_HOSTS', 'OriginGuard']
