"""
Request Guard Package Initialization
====================================

Request security pipeline for Flask APIs. Every inbound call passes an ordered
gate (origin and attack-pattern screening, rate limiting, authentication,
authorization, payload decryption and recursive input validation) before any
business handler runs, and every outbound response is hardened with security
headers and optional payload encryption.

Package Structure:
- request_guard.config: Environment-driven security configuration
- request_guard.monitoring: structlog logging setup and Prometheus metrics
- request_guard.security: Pipeline components, audit logging and Flask hooks

Example:
    from request_guard import SecurityPipeline, create_security_config

    pipeline = SecurityPipeline.from_config(create_security_config())
    context = pipeline.secure_request(descriptor)
"""

__version__ = "1.0.0"
__title__ = "Request Guard"
__description__ = "Request security pipeline for Flask APIs"
__license__ = "Proprietary"

PACKAGE_NAME = "request_guard"

from request_guard.config.settings import (
    SecurityConfig,
    create_security_config,
    get_security_config,
)
from request_guard.security.exceptions import (
    SecurityError,
    SecurityErrorCode,
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
from request_guard.security.pipeline import (
    PipelineStage,
    SecurityOptions,
    SecurityPipeline,
)

__all__ = [
    "__version__",
    "SecurityConfig",
    "create_security_config",
    "get_security_config",
    "SecurityError",
    "SecurityErrorCode",
    "AuthenticationError",
    "AuthorizationError",
    "BadRequestError",
    "RateLimitExceeded",
    "IntegrityFailure",
    "InternalSecurityError",
    "ConfigurationError",
    "Identity",
    "FileUpload",
    "RequestDescriptor",
    "SecurityContext",
    "PipelineStage",
    "SecurityOptions",
    "SecurityPipeline",
]
