"""
Security Pipeline Exception Classes

This module defines the closed error taxonomy raised by the request security
pipeline. Every stage raises one of the SecurityError subclasses below; the
orchestrator never reclassifies them, it only attaches the failing stage name
and the request ID before the error reaches the HTTP layer.

Error Taxonomy:
- AuthenticationError  -> UNAUTHORIZED (401): missing or invalid identity
- AuthorizationError   -> FORBIDDEN (403): insufficient permission, disallowed origin
- BadRequestError      -> BAD_REQUEST (400): malformed, oversized or flagged input
- RateLimitExceeded    -> TOO_MANY_REQUESTS (429): quota exhausted for the window
- IntegrityFailure     -> INTEGRITY_FAILURE (400): encrypted payload tag mismatch
- InternalSecurityError -> INTERNAL (500): unexpected or unclassified failure

User-facing messages are fixed per code so that no raw exception text or
internal state leaks into responses. Full details live in the metadata, which
is only written to the audit log.

ConfigurationError is deliberately outside the taxonomy: it signals a
startup-time problem such as missing key material, never a per-request outcome.
"""

from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


class SecurityErrorCode(Enum):
    """Machine-readable codes for security pipeline failures."""

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    BAD_REQUEST = "BAD_REQUEST"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    INTERNAL = "INTERNAL"


HTTP_STATUS_BY_CODE: Dict[SecurityErrorCode, int] = {
    SecurityErrorCode.UNAUTHORIZED: 401,
    SecurityErrorCode.FORBIDDEN: 403,
    SecurityErrorCode.BAD_REQUEST: 400,
    SecurityErrorCode.TOO_MANY_REQUESTS: 429,
    SecurityErrorCode.INTEGRITY_FAILURE: 400,
    SecurityErrorCode.INTERNAL: 500,
}

USER_MESSAGE_BY_CODE: Dict[SecurityErrorCode, str] = {
    SecurityErrorCode.UNAUTHORIZED: "Authentication required",
    SecurityErrorCode.FORBIDDEN: "Access denied",
    SecurityErrorCode.BAD_REQUEST: "Invalid request",
    SecurityErrorCode.TOO_MANY_REQUESTS: "Too many requests",
    SecurityErrorCode.INTEGRITY_FAILURE: "Payload could not be verified",
    SecurityErrorCode.INTERNAL: "Internal server error",
}


class SecurityError(Exception):
    """
    Base exception class for all security pipeline failures.

    Subclasses bind exactly one SecurityErrorCode; the HTTP status and the
    safe client message are derived from it.

    Args:
        message: Detailed description for logging and debugging
        metadata: Structured context written to the audit log

    Example:
        try:
            pipeline.secure_request(descriptor)
        except SecurityError as e:
            return jsonify(e.to_response_body()), e.http_status
    """

    code: SecurityErrorCode = SecurityErrorCode.INTERNAL

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)

        self.message = message
        self.error_id = str(uuid.uuid4())
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.timestamp = datetime.now(timezone.utc)
        self.stage: Optional[str] = None
        self.request_id: Optional[str] = None

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE[self.code]

    @property
    def user_message(self) -> str:
        return USER_MESSAGE_BY_CODE[self.code]

    def attach_context(self, stage: str, request_id: Optional[str]) -> 'SecurityError':
        """
        Record where in the pipeline the error surfaced.

        The first attached stage wins so that nested handlers cannot
        overwrite the stage that actually failed.
        """
        if self.stage is None:
            self.stage = stage
        if self.request_id is None:
            self.request_id = request_id
        return self

    def to_response_body(self) -> Dict[str, Any]:
        """Minimal, non-information-leaking body for HTTP responses."""
        body: Dict[str, Any] = {
            'error': self.code.value,
            'message': self.user_message,
        }
        if self.request_id:
            body['request_id'] = self.request_id
        return body

    def to_audit_metadata(self) -> Dict[str, Any]:
        """Full error details for the audit log."""
        details = dict(self.metadata)
        details.update({
            'error_id': self.error_id,
            'error_code': self.code.value,
            'error_message': self.message,
            'exception_type': self.__class__.__name__,
            'stage': self.stage,
        })
        return details

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r}, stage={self.stage!r})"


class AuthenticationError(SecurityError):
    """Missing or invalid identity."""

    code = SecurityErrorCode.UNAUTHORIZED


class AuthorizationError(SecurityError):
    """Identity present but not permitted, or request from a disallowed origin."""

    code = SecurityErrorCode.FORBIDDEN


class BadRequestError(SecurityError):
    """Malformed, oversized or pattern-flagged input, including suspicious files."""

    code = SecurityErrorCode.BAD_REQUEST


class RateLimitExceeded(SecurityError):
    """
    Rate limit quota exhausted for the current window.

    Args:
        message: Detailed description for logging
        retry_after_seconds: Seconds until the window resets
        metadata: Structured context for the audit log
    """

    code = SecurityErrorCode.TOO_MANY_REQUESTS

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message, metadata)
        self.retry_after_seconds = retry_after_seconds
        self.metadata['retry_after_seconds'] = retry_after_seconds

    def to_response_body(self) -> Dict[str, Any]:
        body = super().to_response_body()
        body['retry_after_seconds'] = self.retry_after_seconds
        return body


class IntegrityFailure(SecurityError):
    """Encrypted payload failed integrity verification or could not be parsed."""

    code = SecurityErrorCode.INTEGRITY_FAILURE


class InternalSecurityError(SecurityError):
    """Unexpected or unclassified failure inside the pipeline."""

    code = SecurityErrorCode.INTERNAL


class ConfigurationError(Exception):
    """Invalid or missing security configuration detected at startup."""
    pass


__all__ = [
    'SecurityErrorCode',
    'HTTP_STATUS_BY_CODE',
    'USER_MESSAGE_BY_CODE',
    'SecurityError',
    'AuthenticationError',
    'AuthorizationError',
    'BadRequestError',
    'RateLimitExceeded',
    'IntegrityFailure',
    'InternalSecurityError',
    'ConfigurationError',
]
