"""
Security Pipeline Configuration

This module provides environment-driven configuration for the request security
pipeline. Settings are grouped into dataclasses per concern and assembled into a
single SecurityConfig by create_security_config(), which reads environment
variables loaded through python-dotenv.

Configuration Groups:
- RateLimitConfig: window length, per-category quotas, optional Redis backend
- ValidationConfig: recursion, string, array and key bounds plus upload policy
- OriginConfig: origin allow-list, spoofing-prone headers, URL attack signatures
- CryptoConfig: master key material, PBKDF2 work factor, bearer token settings
- ResponseHeadersConfig: hardening headers and cache directive for responses

Environment Variables:
- RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_DEFAULT, RATE_LIMIT_LOGIN,
  RATE_LIMIT_ADMIN, RATE_LIMIT_FILE_UPLOAD, RATE_LIMIT_SEARCH, RATE_LIMIT_REDIS_URL
- ALLOWED_DOMAINS, APP_DOMAIN
- MAX_STRING_LENGTH, MAX_ARRAY_LENGTH, MAX_OBJECT_DEPTH, MAX_FILE_SIZE
- ENCRYPTION_KEY, PBKDF2_ITERATIONS, JWT_SECRET_KEY, JWT_ALGORITHM
- SECURITY_AUDIT_ENABLED, FLASK_ENV

Author: Platform Security Team
Version: 1.0.0
"""

import os
import logging
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load environment variables early
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-integer configuration value",
            extra={'variable': name, 'default': default}
        )
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, '')
    return [item.strip() for item in raw.split(',') if item.strip()]


@dataclass
class RateLimitConfig:
    """
    Fixed-window rate limiting configuration.

    Quotas are looked up by category name; categories without an override
    fall back to default_limit.
    """

    window_seconds: int = 15 * 60
    default_limit: int = 1000
    category_limits: Dict[str, int] = field(default_factory=lambda: {
        'login': 5,
        'admin': 500,
        'file-upload': 10,
        'search': 200,
    })
    redis_url: Optional[str] = None
    redis_key_prefix: str = 'request_guard:ratelimit:'
    shard_count: int = 16

    def limit_for(self, category: str) -> int:
        """Get the request quota for a rate limit category."""
        return self.category_limits.get(category, self.default_limit)


@dataclass
class ValidationConfig:
    """Input validation bounds and file upload policy."""

    max_string_length: int = 10000
    max_array_length: int = 1000
    max_object_depth: int = 10
    max_key_length: int = 100
    max_file_size: int = 50 * 1024 * 1024
    allowed_mime_types: List[str] = field(default_factory=lambda: [
        'image/jpeg', 'image/png', 'image/gif', 'image/webp',
        'application/pdf', 'text/plain', 'text/csv',
        'application/json', 'application/xml',
    ])
    blocked_file_extensions: List[str] = field(default_factory=lambda: [
        '.exe', '.bat', '.cmd', '.scr', '.php', '.asp', '.jsp',
    ])
    xss_patterns: List[str] = field(default_factory=lambda: [
        '<script', 'javascript:', 'vbscript:', 'onload=', 'onerror=',
    ])


@dataclass
class OriginConfig:
    """Origin allow-list and request signature screening."""

    allowed_domains: List[str] = field(default_factory=lambda: ['localhost', '127.0.0.1'])
    suspicious_headers: List[str] = field(default_factory=lambda: [
        'x-forwarded-host', 'x-originating-ip',
    ])
    attack_patterns: List[str] = field(default_factory=lambda: [
        '../', '<script', 'javascript:', 'vbscript:', 'onload=', 'onerror=',
        'eval(', 'alert(', 'document.cookie', 'window.location',
        'union select', 'drop table', 'insert into', 'delete from', 'update set',
        '$where', '[$ne]', '[$gt]', '[$regex]',
    ])
    url_decode_rounds: int = 3
    # Honour X-Forwarded-For and friends; disable unless behind a proxy that overwrites them
    trust_proxy_headers: bool = True


@dataclass
class CryptoConfig:
    """Key material and work factors for the crypto service."""

    encryption_key_hex: Optional[str] = None
    pbkdf2_iterations: int = 100000
    jwt_secret_key: Optional[str] = None
    jwt_algorithm: str = 'HS256'


@dataclass
class ResponseHeadersConfig:
    """Hardening headers attached to every outbound response."""

    security_headers: Dict[str, str] = field(default_factory=lambda: {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Content-Security-Policy': "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; frame-ancestors 'none'",
    })
    cache_control: str = 'no-store, no-cache, must-revalidate'


@dataclass
class SecurityConfig:
    """
    Complete security pipeline configuration.

    Aggregates the per-concern configuration groups together with
    environment metadata and the audit logging switch.
    """

    environment: str = 'development'
    audit_enabled: bool = True
    rate_limiting: RateLimitConfig = field(default_factory=RateLimitConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    origin: OriginConfig = field(default_factory=OriginConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    response_headers: ResponseHeadersConfig = field(default_factory=ResponseHeadersConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'


def create_security_config(environment: Optional[str] = None) -> SecurityConfig:
    """
    Build a SecurityConfig from environment variables.

    Args:
        environment: Target environment, defaults to FLASK_ENV

    Returns:
        SecurityConfig populated from the environment with library defaults
        for anything unset
    """
    if environment is None:
        environment = os.getenv('FLASK_ENV', 'development')
    environment = environment.lower()

    rate_limiting = RateLimitConfig(
        window_seconds=_env_int('RATE_LIMIT_WINDOW_SECONDS', 15 * 60),
        default_limit=_env_int('RATE_LIMIT_DEFAULT', 1000),
        category_limits={
            'login': _env_int('RATE_LIMIT_LOGIN', 5),
            'admin': _env_int('RATE_LIMIT_ADMIN', 500),
            'file-upload': _env_int('RATE_LIMIT_FILE_UPLOAD', 10),
            'search': _env_int('RATE_LIMIT_SEARCH', 200),
        },
        redis_url=os.getenv('RATE_LIMIT_REDIS_URL') or None,
    )

    validation = ValidationConfig(
        max_string_length=_env_int('MAX_STRING_LENGTH', 10000),
        max_array_length=_env_int('MAX_ARRAY_LENGTH', 1000),
        max_object_depth=_env_int('MAX_OBJECT_DEPTH', 10),
        max_file_size=_env_int('MAX_FILE_SIZE', 50 * 1024 * 1024),
    )

    allowed_domains = _env_list('ALLOWED_DOMAINS') or ['localhost', '127.0.0.1']
    app_domain = os.getenv('APP_DOMAIN')
    if app_domain and app_domain not in allowed_domains:
        allowed_domains.append(app_domain)
    origin = OriginConfig(
        allowed_domains=allowed_domains,
        trust_proxy_headers=_env_bool('TRUST_PROXY_HEADERS', True),
    )

    crypto = CryptoConfig(
        encryption_key_hex=os.getenv('ENCRYPTION_KEY') or None,
        pbkdf2_iterations=_env_int('PBKDF2_ITERATIONS', 100000),
        jwt_secret_key=os.getenv('JWT_SECRET_KEY') or None,
        jwt_algorithm=os.getenv('JWT_ALGORITHM', 'HS256'),
    )

    config = SecurityConfig(
        environment=environment,
        audit_enabled=_env_bool('SECURITY_AUDIT_ENABLED', True),
        rate_limiting=rate_limiting,
        validation=validation,
        origin=origin,
        crypto=crypto,
    )

    logger.info(
        "Security configuration loaded",
        extra={
            'environment': environment,
            'allowed_domains': allowed_domains,
            'rate_limit_window_seconds': rate_limiting.window_seconds,
            'distributed_rate_limiting': rate_limiting.redis_url is not None,
        }
    )
    return config


_security_config: Optional[SecurityConfig] = None


def init_security_config(environment: Optional[str] = None) -> SecurityConfig:
    """Initialize the process-wide security configuration."""
    global _security_config
    _security_config = create_security_config(environment)
    return _security_config


def get_security_config() -> SecurityConfig:
    """Get the process-wide security configuration, creating it on first use."""
    if _security_config is None:
        return init_security_config()
    return _security_config


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
