"""
Configuration package for the request security pipeline.

Exposes the dataclass-based SecurityConfig and its environment-driven factory.
"""

from request_guard.config.settings import (
    RateLimitConfig,
    ValidationConfig,
    OriginConfig,
    CryptoConfig,
    ResponseHeadersConfig,
    SecurityConfig,
    create_security_config,
    init_security_config,
    get_security_config,
)

__all__ = [
    'RateLimitConfig',
    'ValidationConfig',
    'OriginConfig',
    'CryptoConfig',
    'ResponseHeadersConfig',
    'SecurityConfig',
    'create_security_config',
    'init_security_config',
    'get_security_config',
]
