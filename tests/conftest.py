"""
Shared pytest configuration for the request guard test suite.

Provides deterministic configuration (fixed test encryption key, low PBKDF2
work factor, explicit allow-list), an in-memory audit sink, a controllable
clock for rate limit windows, fully assembled pipelines and a Flask
application wired through init_request_guard().
"""

from typing import Any, Dict, Optional

import pytest
from flask import Flask, g, jsonify, request

from request_guard.config.settings import (
    CryptoConfig,
    OriginConfig,
    RateLimitConfig,
    SecurityConfig,
    ValidationConfig,
)
from request_guard.security.audit import AuditLogger, MemoryAuditSink
from request_guard.security.crypto import CryptoService
from request_guard.security.decorators import (
    get_security_context,
    init_request_guard,
    rate_limited,
    secure_endpoint,
)
from request_guard.security.guard import OriginGuard
from request_guard.security.models import Identity, RequestDescriptor
from request_guard.security.pipeline import SecurityPipeline
from request_guard.security.rate_limiter import InMemoryRateLimitStore, RateLimiter
from request_guard.security.sanitizers import FieldPolicy
from request_guard.security.validators import InputValidator


TEST_ENCRYPTION_KEY = '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff'
TEST_JWT_SECRET = 'test-jwt-secret-key-with-enough-length-for-hs256'
TEST_PBKDF2_ITERATIONS = 1000


def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Isolated component tests")
    config.addinivalue_line("markers", "security: Security control validation tests")
    config.addinivalue_line("markers", "integration: Flask integration tests")


class FakeClock:
    """Manually advanced epoch clock for rate limit tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def security_config() -> SecurityConfig:
    return SecurityConfig(
        environment='testing',
        audit_enabled=True,
        rate_limiting=RateLimitConfig(),
        validation=ValidationConfig(),
        origin=OriginConfig(allowed_domains=['localhost', 'example.com']),
        crypto=CryptoConfig(
            encryption_key_hex=TEST_ENCRYPTION_KEY,
            pbkdf2_iterations=TEST_PBKDF2_ITERATIONS,
            jwt_secret_key=TEST_JWT_SECRET,
        ),
    )


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit_logger(audit_sink) -> AuditLogger:
    return AuditLogger(sink=audit_sink)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limit_store() -> InMemoryRateLimitStore:
    return InMemoryRateLimitStore(shard_count=4)


@pytest.fixture
def rate_limiter(rate_limit_store, security_config, fake_clock) -> RateLimiter:
    return RateLimiter(store=rate_limit_store, config=security_config.rate_limiting, clock=fake_clock)


@pytest.fixture
def validator(security_config) -> InputValidator:
    return InputValidator(security_config.validation)


@pytest.fixture
def guard(security_config, audit_logger) -> OriginGuard:
    return OriginGuard(security_config.origin, audit_logger=audit_logger)


@pytest.fixture
def crypto_service() -> CryptoService:
    return CryptoService.from_hex(TEST_ENCRYPTION_KEY, iterations=TEST_PBKDF2_ITERATIONS)


@pytest.fixture
def pipeline(guard, rate_limiter, validator, audit_logger, crypto_service, security_config) -> SecurityPipeline:
    return SecurityPipeline(
        guard=guard,
        rate_limiter=rate_limiter,
        validator=validator,
        audit_logger=audit_logger,
        crypto=crypto_service,
        headers_config=security_config.response_headers,
    )


@pytest.fixture
def member_identity() -> Identity:
    return Identity(user_id='user-1', role='USER', email='member@example.com')


@pytest.fixture
def admin_identity() -> Identity:
    return Identity(user_id='admin-1', role='ADMIN', email='admin@example.com')


@pytest.fixture
def make_request():
    """Factory for RequestDescriptors with sensible defaults."""

    def _make(
        method: str = 'GET',
        url: str = 'https://api.example.com/api/projects',
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        identity: Optional[Identity] = None,
        client_ip: Optional[str] = '203.0.113.10',
        **kwargs: Any
    ) -> RequestDescriptor:
        return RequestDescriptor(
            method=method,
            url=url,
            headers=headers or {},
            body=body,
            identity=identity,
            client_ip=client_ip,
            **kwargs
        )

    return _make


@pytest.fixture
def app(pipeline) -> Flask:
    """Flask application with guarded routes for integration tests."""
    app = Flask(__name__)
    app.config['TESTING'] = True
    init_request_guard(app, pipeline)

    @app.before_request
    def load_identity():
        # Stand-in for upstream authentication middleware
        role = request.headers.get('X-Test-Role')
        if role:
            g.current_identity = Identity(user_id=f'{role.lower()}-user', role=role)

    @app.route('/api/public')
    @secure_endpoint(require_auth=False)
    def public_endpoint():
        return jsonify({'status': 'ok'})

    @app.route('/api/projects', methods=['POST'])
    @secure_endpoint(required_permissions=('manage_projects',))
    def create_project():
        context = get_security_context()
        return jsonify({'created': context.body}), 201

    @app.route('/api/comments', methods=['POST'])
    @secure_endpoint(field_policies={'body': FieldPolicy.SANITIZE})
    def create_comment():
        return jsonify(get_security_context().body), 201

    @app.route('/api/secret')
    @secure_endpoint(require_auth=False, encrypt_response=True)
    def secret_endpoint():
        return jsonify({'secret': 'value'})

    @app.route('/api/login', methods=['POST'])
    @rate_limited('login')
    def login():
        return jsonify({'status': 'ok'})

    return app


@pytest.fixture
def client(app):
    return app.test_client()
