"""
Security package: pipeline components, audit logging and Flask integration.

Components (leaf first):
- sanitizers: non-failing markup and script stripping
- validators: recursive payload, upload and request validation
- rate_limiter: fixed-window quotas with in-memory and Redis stores
- guard: origin allow-list and URL attack signature screening
- crypto: authenticated encryption, CSRF tokens, password strength
- audit: security events and sinks
- authorization: role permissions and bearer token resolution
- pipeline: ordered request gate and response hardening
- decorators: Flask decorators and error handlers
"""

from request_guard.security.exceptions import (
    SecurityErrorCode,
    SecurityError,
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    RateLimitExceeded,
    IntegrityFailure,
    InternalSecurityError,
    ConfigurationError,
)
from request_guard.security.models import (
    Identity,
    FileUpload,
    RequestDescriptor,
    SecurityContext,
)
from request_guard.security.sanitizers import FieldPolicy, sanitize_string, sanitize_value
from request_guard.security.validators import InputValidator, ValidationContext
from request_guard.security.rate_limiter import (
    RateLimitEntry,
    RateLimitStore,
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    RateLimiter,
)
from request_guard.security.audit import (
    Severity,
    SecurityEventType,
    SecurityEvent,
    AuditSink,
    LoggingAuditSink,
    MongoAuditSink,
    MemoryAuditSink,
    AuditLogger,
)
from request_guard.security.guard import OriginGuard
from request_guard.security.crypto import (
    CryptoService,
    PasswordStrengthResult,
    issue_csrf_token,
    verify_csrf_token,
    validate_api_key,
    check_password_strength,
)
from request_guard.security.authorization import (
    Permission,
    ROLE_PERMISSIONS,
    PermissionPolicy,
    RolePermissionPolicy,
    BearerTokenResolver,
    can_assign_role,
)
from request_guard.security.pipeline import PipelineStage, SecurityOptions, SecurityPipeline
from request_guard.security.decorators import (
    init_request_guard,
    secure_endpoint,
    rate_limited,
    get_security_context,
    register_error_handlers,
)

__all__ = [
    'SecurityErrorCode',
    'SecurityError',
    'AuthenticationError',
    'AuthorizationError',
    'BadRequestError',
    'RateLimitExceeded',
    'IntegrityFailure',
    'InternalSecurityError',
    'ConfigurationError',
    'Identity',
    'FileUpload',
    'RequestDescriptor',
    'SecurityContext',
    'FieldPolicy',
    'sanitize_string',
    'sanitize_value',
    'InputValidator',
    'ValidationContext',
    'RateLimitEntry',
    'RateLimitStore',
    'InMemoryRateLimitStore',
    'RedisRateLimitStore',
    'RateLimiter',
    'Severity',
    'SecurityEventType',
    'SecurityEvent',
    'AuditSink',
    'LoggingAuditSink',
    'MongoAuditSink',
    'MemoryAuditSink',
    'AuditLogger',
    'OriginGuard',
    'CryptoService',
    'PasswordStrengthResult',
    'issue_csrf_token',
    'verify_csrf_token',
    'validate_api_key',
    'check_password_strength',
    'Permission',
    'ROLE_PERMISSIONS',
    'PermissionPolicy',
    'RolePermissionPolicy',
    'BearerTokenResolver',
    'can_assign_role',
    'PipelineStage',
    'SecurityOptions',
    'SecurityPipeline',
    'init_request_guard',
    'secure_endpoint',
    'rate_limited',
    'get_security_context',
    'register_error_handlers',
]
