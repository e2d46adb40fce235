"""
Flask Integration for the Request Security Pipeline

Decorators and error handlers that put the SecurityPipeline in front of Flask
view functions.

Usage:
    app = Flask(__name__)
    init_request_guard(app)

    @app.route('/api/projects', methods=['POST'])
    @secure_endpoint(required_permissions=('manage_projects',))
    def create_project():
        context = get_security_context()
        return jsonify(create(context.body)), 201

Components:
- init_request_guard(): stores the pipeline on app.extensions and registers
  error handlers
- secure_endpoint(): full pipeline before the view, response hardening after
- rate_limited(): quota check only, for endpoints such as login
- register_error_handlers(): SecurityError -> minimal JSON body with the
  mapped status code, Retry-After on 429
- build_request_descriptor(): Flask request -> RequestDescriptor

An identity resolved by upstream authentication middleware can be placed on
g.current_identity; it takes precedence over the pipeline's resolver.
"""

from functools import wraps
from typing import Any, Callable, List, Mapping, Optional, Sequence, TypeVar, cast

import structlog
from flask import Flask, current_app, g, jsonify, make_response, request

from request_guard.monitoring.logging import LoggingConfig, clear_request_id
from request_guard.security.exceptions import ConfigurationError, RateLimitExceeded, SecurityError
from request_guard.security.models import FileUpload, Identity, RequestDescriptor, SecurityContext
from request_guard.security.pipeline import SecurityOptions, SecurityPipeline
from request_guard.security.sanitizers import FieldPolicy


F = TypeVar('F', bound=Callable[..., Any])

EXTENSION_KEY = 'request_guard'
FORM_MIME_TYPES = frozenset({'multipart/form-data', 'application/x-www-form-urlencoded'})

logger = structlog.get_logger("security.decorators")


def init_request_guard(app: Flask, pipeline: Optional[SecurityPipeline] = None) -> SecurityPipeline:
    """
    Attach a pipeline to a Flask application.

    Args:
        app: Flask application
        pipeline: Pre-built pipeline, built from configuration when omitted

    Returns:
        The pipeline registered on the application
    """
    if pipeline is None:
        pipeline = SecurityPipeline.from_config()
    app.extensions[EXTENSION_KEY] = pipeline
    register_error_handlers(app)

    @app.teardown_request
    def clear_request_context(exc: Optional[BaseException] = None) -> None:
        clear_request_id()

    logger.info("Request guard initialized", app_name=app.name)
    return pipeline


def get_pipeline() -> SecurityPipeline:
    pipeline = current_app.extensions.get(EXTENSION_KEY)
    if pipeline is None:
        raise ConfigurationError("init_request_guard() has not been called for this application")
    return pipeline


def _file_size(storage: Any) -> int:
    # Part headers are client supplied, so measure the spooled stream.
    stream = storage.stream
    position = stream.tell()
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(position)
    return size


def build_request_descriptor(
    flask_request: Any = None,
    identity: Optional[Identity] = None,
    trust_proxy_headers: Optional[bool] = None
) -> RequestDescriptor:
    """
    Convert a Flask request into a RequestDescriptor.

    Form bodies are read through request.form and request.files; anything
    else is read as raw bytes with caching enabled so the view can read it
    again. trust_proxy_headers defaults to the registered pipeline's origin
    configuration.
    """
    flask_request = flask_request or request
    files: List[FileUpload] = []
    form: Any = {}
    body: Any = None

    if flask_request.mimetype in FORM_MIME_TYPES:
        form = flask_request.form
        for field_name, storage in flask_request.files.items(multi=True):
            files.append(FileUpload(
                field_name=field_name,
                filename=storage.filename or '',
                content_type=storage.mimetype or '',
                size=_file_size(storage),
            ))
    else:
        body = flask_request.get_data(cache=True)

    if identity is None:
        identity = g.get('current_identity')

    if trust_proxy_headers is None:
        pipeline = current_app.extensions.get(EXTENSION_KEY)
        trust_proxy_headers = pipeline is None or pipeline.guard.config.trust_proxy_headers

    kwargs = {}
    request_id = flask_request.headers.get(LoggingConfig.REQUEST_ID_HEADER)
    if request_id:
        kwargs['request_id'] = request_id

    return RequestDescriptor(
        method=flask_request.method,
        url=flask_request.url,
        headers=flask_request.headers,
        body=body,
        form=form,
        files=files,
        remote_addr=flask_request.remote_addr,
        identity=identity,
        trust_proxy_headers=trust_proxy_headers,
        **kwargs
    )


def secure_endpoint(
    require_auth: bool = True,
    required_permissions: Sequence[str] = (),
    rate_limit_category: str = 'default',
    validate_input: bool = True,
    decrypt_body: bool = False,
    audit_log: bool = True,
    field_policies: Optional[Mapping[str, FieldPolicy]] = None,
    encrypt_response: bool = False,
    cache_control: Optional[str] = None
) -> Callable[[F], F]:
    """
    Run the security pipeline before the view and harden its response.

    The SecurityContext is available to the view through
    get_security_context(). Pipeline failures propagate to the handlers
    installed by register_error_handlers().
    """
    options = SecurityOptions(
        require_auth=require_auth,
        required_permissions=tuple(required_permissions),
        rate_limit_category=rate_limit_category,
        validate_input=validate_input,
        decrypt_body=decrypt_body,
        audit_log=audit_log,
        field_policies=dict(field_policies or {}),
    )

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            pipeline = get_pipeline()
            g.security_context = pipeline.secure_request(build_request_descriptor(), options)
            response = make_response(func(*args, **kwargs))
            return pipeline.harden_response(
                response,
                encrypt=encrypt_response,
                cache_control=cache_control
            )

        return cast(F, wrapper)

    return decorator


def rate_limited(category: str = 'default') -> Callable[[F], F]:
    """Apply only the rate limit stage, keyed by client IP."""
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            get_pipeline().enforce_rate_limit(build_request_descriptor(), category)
            return func(*args, **kwargs)

        return cast(F, wrapper)

    return decorator


def get_security_context() -> Optional[SecurityContext]:
    """SecurityContext of the current request, None outside secure_endpoint."""
    return g.get('security_context')


def register_error_handlers(app: Flask) -> None:
    """Map SecurityError subclasses to minimal JSON responses."""

    @app.errorhandler(SecurityError)
    def handle_security_error(error: SecurityError):
        response = jsonify(error.to_response_body())
        response.status_code = error.http_status
        if isinstance(error, RateLimitExceeded):
            response.headers['Retry-After'] = str(error.retry_after_seconds)
        if error.request_id:
            response.headers[LoggingConfig.REQUEST_ID_HEADER] = error.request_id

        pipeline = current_app.extensions.get(EXTENSION_KEY)
        if pipeline is not None:
            pipeline.harden_response(response)
        return response


__all__ = [
    'init_request_guard',
    'get_pipeline',
    'build_request_descriptor',
    'secure_endpoint',
    'rate_limited',
    'get_security_context',
    'register_error_handlers',
]
