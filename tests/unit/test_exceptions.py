"""
Unit tests for the security error taxonomy.
"""

import pytest

from request_guard.security.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConfigurationError,
    IntegrityFailure,
    InternalSecurityError,
    RateLimitExceeded,
    SecurityError,
    SecurityErrorCode,
)


class TestErrorTaxonomy:

    @pytest.mark.unit
    @pytest.mark.parametrize('error_class, code, status', [
        (AuthenticationError, SecurityErrorCode.UNAUTHORIZED, 401),
        (AuthorizationError, SecurityErrorCode.FORBIDDEN, 403),
        (BadRequestError, SecurityErrorCode.BAD_REQUEST, 400),
        (IntegrityFailure, SecurityErrorCode.INTEGRITY_FAILURE, 400),
        (InternalSecurityError, SecurityErrorCode.INTERNAL, 500),
    ])
    def test_code_and_status_mapping(self, error_class, code, status):
        error = error_class("details")
        assert isinstance(error, SecurityError)
        assert error.code is code
        assert error.http_status == status

    @pytest.mark.unit
    def test_rate_limit_carries_retry_after(self):
        error = RateLimitExceeded("too many", retry_after_seconds=42)
        assert error.http_status == 429
        assert error.retry_after_seconds == 42
        assert error.metadata['retry_after_seconds'] == 42
        assert error.to_response_body()['retry_after_seconds'] == 42

    @pytest.mark.unit
    def test_configuration_error_is_outside_taxonomy(self):
        assert not issubclass(ConfigurationError, SecurityError)


class TestErrorContext:

    @pytest.mark.unit
    def test_response_body_never_leaks_details(self):
        error = BadRequestError("SQL fragment 'drop table' in column users.name", metadata={'secret': 'x'})
        error.attach_context('input_validate', 'req-9')
        body = error.to_response_body()
        assert body == {'error': 'BAD_REQUEST', 'message': 'Invalid request', 'request_id': 'req-9'}

    @pytest.mark.unit
    def test_first_attached_stage_wins(self):
        error = AuthorizationError("denied")
        error.attach_context('authorize', 'req-1')
        error.attach_context('input_validate', 'req-2')
        assert error.stage == 'authorize'
        assert error.request_id == 'req-1'

    @pytest.mark.unit
    def test_audit_metadata_includes_details(self):
        error = AuthenticationError("expired token", metadata={'reason': 'token_expired'})
        error.attach_context('authenticate', 'req-1')
        details = error.to_audit_metadata()
        assert details['reason'] == 'token_expired'
        assert details['error_code'] == 'UNAUTHORIZED'
        assert details['error_message'] == 'expired token'
        assert details['stage'] == 'authenticate'
        assert details['exception_type'] == 'AuthenticationError'

    @pytest.mark.unit
    def test_metadata_is_copied(self):
        metadata = {'k': 'v'}
        error = BadRequestError("x", metadata=metadata)
        error.metadata['k'] = 'changed'
        assert metadata == {'k': 'v'}
