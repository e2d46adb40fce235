"""
Request Security Pipeline

Composes the security components into one ordered gate per request:

    ORIGIN_GUARD -> RATE_LIMIT -> AUTHENTICATE -> AUTHORIZE -> DECRYPT
    -> INPUT_VALIDATE -> AUTHORIZED

The first failing stage terminates the request. Stage errors keep their type
and code; the pipeline only attaches the stage name and request ID and writes
the audit event (the origin guard writes its own). Unexpected exceptions are
wrapped as InternalSecurityError so callers see the closed error taxonomy
only.

Outbound responses are hardened by harden_response(): security headers,
cache directive and optional payload encryption, applied in that order.

Key Features:
- SecurityOptions per endpoint (auth, permissions, quota category,
  validation, decryption, audit, field policies)
- Pluggable identity resolver and permission policy
- Rate limit keyed by client IP per category
- Request ID bound into the structlog context for the duration of a call
- Prometheus decision counters and latency histogram

Dependencies:
- structlog 23.1+: Pipeline decision logging
- prometheus-client 0.17+: Decision and duration metrics
- redis 5.0+: Distributed rate limit store when RATE_LIMIT_REDIS_URL is set
"""

import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from request_guard.config.settings import ResponseHeadersConfig, SecurityConfig, get_security_config
from request_guard.monitoring.logging import bind_request_id
from request_guard.monitoring.metrics import security_metrics
from request_guard.security.audit import AuditLogger, AuditSink, SecurityEventType
from request_guard.security.authorization import BearerTokenResolver, PermissionPolicy, RolePermissionPolicy
from request_guard.security.crypto import CryptoService
from request_guard.security.exceptions import (
    AuthenticationError,
    AuthorizationError,
    IntegrityFailure,
    InternalSecurityError,
    SecurityError,
)
from request_guard.security.guard import OriginGuard
from request_guard.security.models import Identity, RequestDescriptor, SecurityContext
from request_guard.security.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
)
from request_guard.security.sanitizers import FieldPolicy
from request_guard.security.validators import InputValidator


logger = structlog.get_logger("security.pipeline")

IdentityResolver = Callable[[RequestDescriptor], Optional[Identity]]


class PipelineStage(Enum):
    ORIGIN_GUARD = "origin_guard"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATE = "authenticate"
    AUTHORIZE = "authorize"
    DECRYPT = "decrypt"
    INPUT_VALIDATE = "input_validate"
    AUTHORIZED = "authorized"


# Fallback audit event per failing stage when the error does not name one
_STAGE_EVENT = {
    PipelineStage.RATE_LIMIT: SecurityEventType.RATE_LIMIT_EXCEEDED,
    PipelineStage.AUTHENTICATE: SecurityEventType.AUTHENTICATION_FAILED,
    PipelineStage.AUTHORIZE: SecurityEventType.AUTHORIZATION_DENIED,
    PipelineStage.DECRYPT: SecurityEventType.INTEGRITY_FAILURE,
    PipelineStage.INPUT_VALIDATE: SecurityEventType.INPUT_VALIDATION_FAILED,
}


@dataclass(frozen=True)
class SecurityOptions:
    """
    Per-endpoint pipeline options.

    field_policies maps top-level body fields to FieldPolicy; fields not
    listed are rejected on violation.
    """

    require_auth: bool = True
    required_permissions: Sequence[str] = ()
    rate_limit_category: str = 'default'
    validate_input: bool = True
    decrypt_body: bool = False
    audit_log: bool = True
    field_policies: Mapping[str, FieldPolicy] = field(default_factory=dict)


class SecurityPipeline:
    """
    Ordered security gate for inbound requests and hardening for responses.

    Args:
        guard: Origin and attack pattern screening
        rate_limiter: Per-category quota enforcement
        validator: Recursive input validation
        audit_logger: Security event recording
        crypto: Payload encryption; required for decrypt_body and encrypted
            responses
        permission_policy: Permission decisions, role table by default
        identity_resolver: Resolves an identity when the request carries
            none, e.g. BearerTokenResolver
        headers_config: Response hardening headers

    Example:
        pipeline = SecurityPipeline.from_config()
        context = pipeline.secure_request(
            descriptor,
            SecurityOptions(required_permissions=('manage_projects',))
        )
    """

    def __init__(
        self,
        guard: OriginGuard,
        rate_limiter: RateLimiter,
        validator: InputValidator,
        audit_logger: AuditLogger,
        crypto: Optional[CryptoService] = None,
        permission_policy: Optional[PermissionPolicy] = None,
        identity_resolver: Optional[IdentityResolver] = None,
        headers_config: Optional[ResponseHeadersConfig] = None
    ) -> None:
        self.guard = guard
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.audit_logger = audit_logger
        self.crypto = crypto
        self.permission_policy = permission_policy or RolePermissionPolicy()
        self.identity_resolver = identity_resolver
        self.headers_config = headers_config or ResponseHeadersConfig()

    @classmethod
    def from_config(
        cls,
        config: Optional[SecurityConfig] = None,
        store: Optional[RateLimitStore] = None,
        audit_sink: Optional[AuditSink] = None,
        identity_resolver: Optional[IdentityResolver] = None
    ) -> 'SecurityPipeline':
        """
        Assemble a pipeline from configuration.

        A Redis rate limit store is used when RATE_LIMIT_REDIS_URL is set,
        the crypto service when ENCRYPTION_KEY is set, and a bearer token
        resolver when JWT_SECRET_KEY is set and no resolver is passed.
        """
        config = config or get_security_config()

        if store is None:
            if config.rate_limiting.redis_url:
                store = RedisRateLimitStore.from_url(
                    config.rate_limiting.redis_url,
                    key_prefix=config.rate_limiting.redis_key_prefix
                )
            else:
                store = InMemoryRateLimitStore(shard_count=config.rate_limiting.shard_count)

        audit_logger = AuditLogger(sink=audit_sink, enabled=config.audit_enabled)

        crypto = None
        if config.crypto.encryption_key_hex:
            crypto = CryptoService.from_config(config.crypto)
        elif config.is_production:
            logger.warning("ENCRYPTION_KEY not set; payload encryption unavailable")

        if identity_resolver is None and config.crypto.jwt_secret_key:
            identity_resolver = BearerTokenResolver.from_config(config.crypto)

        return cls(
            guard=OriginGuard(config.origin, audit_logger=audit_logger),
            rate_limiter=RateLimiter(store=store, config=config.rate_limiting),
            validator=InputValidator(config.validation),
            audit_logger=audit_logger,
            crypto=crypto,
            identity_resolver=identity_resolver,
            headers_config=config.response_headers,
        )

    def secure_request(
        self,
        request: RequestDescriptor,
        options: Optional[SecurityOptions] = None
    ) -> SecurityContext:
        """
        Run every stage in order and return the authorized context.

        Raises:
            SecurityError: The first stage failure, with stage and
                request_id attached
        """
        options = options or SecurityOptions()
        bind_request_id(request.request_id)
        started = time.perf_counter()
        stage = PipelineStage.ORIGIN_GUARD
        identity = request.identity

        try:
            self.guard.screen(request)

            stage = PipelineStage.RATE_LIMIT
            self.check_rate_limit(request, options.rate_limit_category)

            stage = PipelineStage.AUTHENTICATE
            identity = self._authenticate(request, options)

            stage = PipelineStage.AUTHORIZE
            self._authorize(identity, options)

            stage = PipelineStage.DECRYPT
            body = request.body
            if options.decrypt_body:
                body = self._decrypt_body(body)

            stage = PipelineStage.INPUT_VALIDATE
            if options.validate_input:
                if options.decrypt_body:
                    self.validator.check_content_type(request)
                    body = self.validator.validate_payload(body, options.field_policies)
                else:
                    body = self.validator.validate_request(
                        request,
                        field_policies=options.field_policies
                    )

            stage = PipelineStage.AUTHORIZED
        except SecurityError as error:
            self._fail(request, stage, error, identity, started)
            raise
        except Exception as e:
            error = InternalSecurityError(
                "Unexpected failure in security pipeline",
                metadata={
                    'event_type': SecurityEventType.INTERNAL_ERROR.value,
                    'exception_type': type(e).__name__,
                    'exception': str(e),
                }
            )
            self._fail(request, stage, error, identity, started)
            raise error from e

        if options.audit_log and identity is not None:
            self.audit_logger.record(SecurityEventType.ACCESS_GRANTED, request, identity=identity)

        security_metrics['pipeline_decisions'].labels(stage=stage.value, outcome='allowed').inc()
        security_metrics['pipeline_duration'].labels(outcome='allowed').observe(time.perf_counter() - started)
        logger.debug(
            "Request authorized",
            url=request.url,
            method=request.method,
            user_id=identity.user_id if identity else None
        )

        return SecurityContext(
            request=request,
            identity=identity,
            body=body,
            client_ip=request.resolve_client_ip(),
            request_id=request.request_id,
        )

    def check_rate_limit(self, request: RequestDescriptor, category: str = 'default') -> None:
        """Count the request against category for its client IP."""
        self.rate_limiter.check(category, request.resolve_client_ip())

    def enforce_rate_limit(self, request: RequestDescriptor, category: str = 'default') -> None:
        """
        Standalone rate limit gate for endpoints that skip the full pipeline.

        Failures are audited and carry stage and request_id like pipeline
        failures do.
        """
        bind_request_id(request.request_id)
        started = time.perf_counter()
        try:
            self.check_rate_limit(request, category)
        except SecurityError as error:
            self._fail(request, PipelineStage.RATE_LIMIT, error, request.identity, started)
            raise

    def _authenticate(self, request: RequestDescriptor, options: SecurityOptions) -> Optional[Identity]:
        identity = request.identity
        if identity is None and self.identity_resolver is not None:
            identity = self.identity_resolver(request)
        if identity is None and options.require_auth:
            raise AuthenticationError(
                "Authentication required",
                metadata={
                    'event_type': SecurityEventType.AUTHENTICATION_FAILED.value,
                    'reason': 'missing_identity'
                }
            )
        return identity

    def _authorize(self, identity: Optional[Identity], options: SecurityOptions) -> None:
        if not options.required_permissions:
            return
        if identity is None:
            raise AuthenticationError(
                "Authentication required for protected resource",
                metadata={
                    'event_type': SecurityEventType.AUTHENTICATION_FAILED.value,
                    'reason': 'missing_identity'
                }
            )
        missing = self.permission_policy.missing_permissions(identity, options.required_permissions)
        if missing:
            raise AuthorizationError(
                "Insufficient permissions",
                metadata={
                    'event_type': SecurityEventType.AUTHORIZATION_DENIED.value,
                    'required_permissions': list(options.required_permissions),
                    'missing_permissions': missing,
                    'role': identity.role,
                }
            )

    def _require_crypto(self) -> CryptoService:
        if self.crypto is None:
            raise InternalSecurityError(
                "Payload encryption requested but no crypto service is configured",
                metadata={'event_type': SecurityEventType.INTERNAL_ERROR.value}
            )
        return self.crypto

    def _decrypt_body(self, body: Any) -> Any:
        crypto = self._require_crypto()
        if isinstance(body, (bytes, bytearray)):
            body = bytes(body).decode('ascii', errors='replace')
        if not isinstance(body, str) or not body.strip():
            raise IntegrityFailure(
                "Encrypted payload missing",
                metadata={
                    'event_type': SecurityEventType.INTEGRITY_FAILURE.value,
                    'reason': 'missing_payload'
                }
            )
        return crypto.decrypt_json(body)

    def _fail(
        self,
        request: RequestDescriptor,
        stage: PipelineStage,
        error: SecurityError,
        identity: Optional[Identity],
        started: float
    ) -> None:
        error.attach_context(stage.value, request.request_id)
        outcome = error.code.value.lower()
        security_metrics['pipeline_decisions'].labels(stage=stage.value, outcome=outcome).inc()
        security_metrics['pipeline_duration'].labels(outcome='denied').observe(time.perf_counter() - started)

        # The guard records its own rejections
        if stage is not PipelineStage.ORIGIN_GUARD:
            event_type = self._event_type_for(stage, error)
            self.audit_logger.record(event_type, request, identity=identity, metadata=error.to_audit_metadata())

        logger.info(
            "Request denied by security pipeline",
            stage=stage.value,
            error_code=error.code.value,
            http_status=error.http_status,
            url=request.url,
            method=request.method
        )

    @staticmethod
    def _event_type_for(stage: PipelineStage, error: SecurityError) -> SecurityEventType:
        named = error.metadata.get('event_type')
        if named:
            try:
                return SecurityEventType(named)
            except ValueError:
                logger.warning("Unknown audit event type on error", event_type=named)
        if isinstance(error, InternalSecurityError):
            return SecurityEventType.INTERNAL_ERROR
        return _STAGE_EVENT.get(stage, SecurityEventType.INTERNAL_ERROR)

    def harden_response(
        self,
        response: Any,
        encrypt: bool = False,
        add_security_headers: bool = True,
        cache_control: Optional[str] = None
    ) -> Any:
        """
        Attach security headers and cache directive, then optionally encrypt.

        Args:
            response: Flask/werkzeug Response
            encrypt: Replace the body with its encrypted base64 transport form
            add_security_headers: Attach the hardening header set
            cache_control: Overrides the configured Cache-Control value

        Returns:
            The same response object, modified in place
        """
        if add_security_headers:
            for name, value in self.headers_config.security_headers.items():
                response.headers[name] = value
        response.headers['Cache-Control'] = cache_control or self.headers_config.cache_control

        if encrypt:
            crypto = self._require_crypto()
            payload = response.get_data()
            if payload:
                token = base64.b64encode(crypto.encrypt(payload)).decode('ascii')
                response.set_data(token)
                response.mimetype = 'text/plain'
                response.headers['X-Content-Encrypted'] = 'true'
        return response


__all__ = [
    'PipelineStage',
    'SecurityOptions',
    'SecurityPipeline',
    'IdentityResolver',
]
