"""
Recursive Input Validation

This module enforces structural bounds and rejects script-bearing content in
untrusted request payloads before they reach business logic. It covers the
closed set of JSON shapes (str, int/float, bool, None, list/tuple, dict),
file upload metadata and request-level content type rules.

Validation Rules:
- Nesting deeper than max_object_depth fails (the root value is depth 0)
- Strings longer than max_string_length fail (the limit itself passes)
- Lists longer than max_array_length fail
- Dict keys must be strings no longer than max_key_length
- Strings containing an XSS signature fail with event POTENTIAL_XSS
- Any other Python type fails

Every failure raises BadRequestError whose metadata carries the audit
event_type and a short machine-readable reason.

Dependencies:
- werkzeug: multipart/urlencoded form parsing through MultiDict
- prometheus-client 0.17+: validation failure counters
"""

import json
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Sequence

from werkzeug.datastructures import MultiDict

from request_guard.config.settings import ValidationConfig, get_security_config
from request_guard.monitoring.metrics import security_metrics
from request_guard.security.audit import SecurityEventType
from request_guard.security.exceptions import BadRequestError
from request_guard.security.models import FileUpload, RequestDescriptor
from request_guard.security.sanitizers import FieldPolicy, sanitize_value


BODY_METHODS = frozenset({'POST', 'PUT', 'PATCH'})

JSON_CONTENT_TYPE = 'application/json'
MULTIPART_CONTENT_TYPE = 'multipart/form-data'
URLENCODED_CONTENT_TYPE = 'application/x-www-form-urlencoded'


@dataclass(frozen=True)
class ValidationContext:
    """Bounds for one validate() call; descend() yields the child context."""

    depth: int = 0
    max_depth: int = 10
    max_string_length: int = 10000
    max_array_length: int = 1000
    max_key_length: int = 100

    @classmethod
    def from_config(cls, config: ValidationConfig) -> 'ValidationContext':
        return cls(
            max_depth=config.max_object_depth,
            max_string_length=config.max_string_length,
            max_array_length=config.max_array_length,
            max_key_length=config.max_key_length,
        )

    def descend(self) -> 'ValidationContext':
        return replace(self, depth=self.depth + 1)


def _failure(
    message: str,
    reason: str,
    event_type: SecurityEventType = SecurityEventType.INPUT_VALIDATION_FAILED,
    **details: Any
) -> BadRequestError:
    security_metrics['validation_failures'].labels(reason=reason).inc()
    metadata = {'event_type': event_type.value, 'reason': reason}
    metadata.update(details)
    return BadRequestError(message, metadata=metadata)


def _media_type(content_type: str) -> str:
    return content_type.split(';', 1)[0].strip().lower()


class InputValidator:
    """
    Validates payloads, uploads and requests against ValidationConfig.

    Instances hold no per-call state and may be shared across threads.
    """

    def __init__(self, config: Optional[ValidationConfig] = None) -> None:
        self.config = config or get_security_config().validation
        self._xss_patterns = tuple(pattern.lower() for pattern in self.config.xss_patterns)
        self._blocked_extensions = tuple(ext.lower() for ext in self.config.blocked_file_extensions)
        self._allowed_mime_types = frozenset(mime.lower() for mime in self.config.allowed_mime_types)

    def new_context(self) -> ValidationContext:
        return ValidationContext.from_config(self.config)

    def find_xss_pattern(self, text: str) -> Optional[str]:
        """Return the first XSS signature contained in text, if any."""
        lowered = text.lower()
        for pattern in self._xss_patterns:
            if pattern in lowered:
                return pattern
        return None

    def validate(self, value: Any, ctx: Optional[ValidationContext] = None) -> None:
        """
        Validate a JSON-shaped value recursively.

        Args:
            value: Parsed payload
            ctx: Validation bounds, a fresh root context when omitted

        Raises:
            BadRequestError: On the first violated rule
        """
        if ctx is None:
            ctx = self.new_context()

        if ctx.depth > ctx.max_depth:
            raise _failure(
                "Maximum object depth exceeded",
                'max_depth_exceeded',
                depth=ctx.depth,
                max_depth=ctx.max_depth
            )

        # bool is an int subclass; both are accepted as scalars
        if value is None or isinstance(value, (bool, int, float)):
            return

        if isinstance(value, str):
            self._validate_string(value, ctx)
            return

        if isinstance(value, (list, tuple)):
            if len(value) > ctx.max_array_length:
                raise _failure(
                    "Array exceeds maximum length",
                    'array_too_long',
                    length=len(value),
                    max_length=ctx.max_array_length
                )
            child = ctx.descend()
            for item in value:
                self.validate(item, child)
            return

        if isinstance(value, dict):
            child = ctx.descend()
            for key, item in value.items():
                if not isinstance(key, str):
                    raise _failure(
                        "Object keys must be strings",
                        'invalid_key_type',
                        key_type=type(key).__name__
                    )
                if len(key) > ctx.max_key_length:
                    raise _failure(
                        "Object key exceeds maximum length",
                        'key_too_long',
                        length=len(key),
                        max_length=ctx.max_key_length
                    )
                self.validate(item, child)
            return

        raise _failure(
            "Unsupported value type",
            'unsupported_type',
            value_type=type(value).__name__
        )

    def _validate_string(self, value: str, ctx: ValidationContext) -> None:
        if len(value) > ctx.max_string_length:
            raise _failure(
                "String exceeds maximum length",
                'string_too_long',
                length=len(value),
                max_length=ctx.max_string_length
            )
        pattern = self.find_xss_pattern(value)
        if pattern is not None:
            raise _failure(
                "Potential XSS detected in input",
                'xss_pattern',
                event_type=SecurityEventType.POTENTIAL_XSS,
                pattern=pattern
            )

    def validate_file_upload(self, upload: FileUpload) -> None:
        """
        Check upload size, MIME type and filename.

        Raises:
            BadRequestError: With event SUSPICIOUS_FILE on any violation
        """
        details = {
            'field_name': upload.field_name,
            'filename': upload.filename,
            'content_type': upload.content_type,
            'size': upload.size,
        }

        if upload.size > self.config.max_file_size:
            raise _failure(
                "File exceeds maximum size",
                'file_too_large',
                event_type=SecurityEventType.SUSPICIOUS_FILE,
                max_size=self.config.max_file_size,
                **details
            )

        if _media_type(upload.content_type or '') not in self._allowed_mime_types:
            raise _failure(
                "File type not allowed",
                'file_type_not_allowed',
                event_type=SecurityEventType.SUSPICIOUS_FILE,
                **details
            )

        filename = (upload.filename or '').lower()
        for extension in self._blocked_extensions:
            if extension in filename:
                raise _failure(
                    "Blocked file extension",
                    'blocked_extension',
                    event_type=SecurityEventType.SUSPICIOUS_FILE,
                    extension=extension,
                    **details
                )

    def apply_field_policies(
        self,
        body: Any,
        field_policies: Optional[Mapping[str, FieldPolicy]]
    ) -> Any:
        """
        Sanitize top-level fields marked SANITIZE, returning a new body.

        Non-dict bodies and bodies without SANITIZE fields come back unchanged.
        """
        if not field_policies or not isinstance(body, dict):
            return body
        cleaned = dict(body)
        for name, policy in field_policies.items():
            if policy is FieldPolicy.SANITIZE and name in cleaned:
                cleaned[name] = sanitize_value(cleaned[name])
        return cleaned

    def validate_payload(
        self,
        body: Any,
        field_policies: Optional[Mapping[str, FieldPolicy]] = None
    ) -> Any:
        """Apply field policies, then validate the result. Returns the cleaned body."""
        cleaned = self.apply_field_policies(body, field_policies)
        self.validate(cleaned)
        return cleaned

    def check_content_type(self, request: RequestDescriptor) -> str:
        """
        Require a JSON, multipart or urlencoded body on POST/PUT/PATCH.

        Returns:
            The bare media type of the request, lower-cased
        """
        media_type = _media_type(request.content_type)
        if request.method in BODY_METHODS and media_type not in (
            JSON_CONTENT_TYPE, MULTIPART_CONTENT_TYPE, URLENCODED_CONTENT_TYPE
        ):
            raise _failure(
                "Unsupported content type",
                'unsupported_content_type',
                content_type=request.content_type,
                method=request.method
            )
        return media_type

    def validate_request(
        self,
        request: RequestDescriptor,
        body: Any = None,
        field_policies: Optional[Mapping[str, FieldPolicy]] = None
    ) -> Any:
        """
        Apply request-level validation.

        Args:
            request: Inbound request
            body: Payload to validate instead of request.body, e.g. after
                decryption
            field_policies: Per top-level field REJECT/SANITIZE choice;
                fields without an entry are rejected on violation

        Returns:
            The cleaned body handed to business logic. The input is not
            mutated.

        Raises:
            BadRequestError: On a disallowed content type or invalid payload
        """
        if body is None:
            body = request.body
        media_type = self.check_content_type(request)

        if media_type == JSON_CONTENT_TYPE:
            parsed = self._parse_json(body)
            if parsed is _UNPARSABLE:
                # The handler decides how to reject malformed JSON
                return body
            return self.validate_payload(parsed, field_policies)

        if media_type == MULTIPART_CONTENT_TYPE:
            for upload in request.files:
                self.validate_file_upload(upload)
            return self._validate_form(request.form, field_policies)

        if media_type == URLENCODED_CONTENT_TYPE:
            return self._validate_form(request.form, field_policies)

        return body

    def _validate_form(
        self,
        form: Any,
        field_policies: Optional[Mapping[str, FieldPolicy]]
    ) -> Dict[str, Any]:
        return self.validate_payload(_form_to_dict(form), field_policies)

    @staticmethod
    def _parse_json(body: Any) -> Any:
        if isinstance(body, (bytes, bytearray)):
            try:
                body = body.decode('utf-8')
            except UnicodeDecodeError:
                return _UNPARSABLE
        if isinstance(body, str):
            if not body.strip():
                return None
            try:
                return json.loads(body)
            except RecursionError:
                raise _failure("Maximum object depth exceeded", 'max_depth_exceeded') from None
            except ValueError:
                return _UNPARSABLE
        return body


_UNPARSABLE = object()


def _form_to_dict(form: Any) -> Dict[str, Any]:
    # Single-valued fields collapse to a scalar, repeated fields stay lists
    if isinstance(form, MultiDict):
        items: Mapping[str, Sequence[Any]] = form.to_dict(flat=False)
    else:
        items = dict(form or {})
    result: Dict[str, Any] = {}
    for key, value in items.items():
        if isinstance(value, (list, tuple)) and len(value) == 1:
            result[key] = value[0]
        else:
            result[key] = value
    return result


__all__ = [
    'BODY_METHODS',
    'ValidationContext',
    'InputValidator',
]
