"""
Marshmallow fields that clean untrusted values while loading.

Use them in request schemas where a field should be sanitized instead of
rejected:

    class CommentSchema(Schema):
        author_email = SecureEmail(required=True)
        body = SecureString(required=True)
        attributes = SecureDict()
"""

from typing import Any, Dict, Optional

from marshmallow import ValidationError, fields, validate

from request_guard.security.sanitizers import sanitize_string, sanitize_value


class SecureString(fields.String):
    """
    String of 1 to 1000 characters, sanitized after the length check.

    Length is checked on the raw input so markup cannot be used to slip an
    oversized value under the limit.
    """

    def __init__(self, min_length: int = 1, max_length: int = 1000, **kwargs) -> None:
        super().__init__(**kwargs)
        self._length_validator = validate.Length(min=min_length, max=max_length)

    def _deserialize(self, value: Any, attr: Optional[str], data: Optional[Dict], **kwargs) -> str:
        raw = super()._deserialize(value, attr, data, **kwargs)
        self._length_validator(raw)
        return sanitize_string(raw)


class SecureEmail(fields.Email):
    """Email address, trimmed and lower-cased before format validation."""

    def _deserialize(self, value: Any, attr: Optional[str], data: Optional[Dict], **kwargs) -> str:
        if not isinstance(value, str):
            raise ValidationError("Email must be a string")
        return super()._deserialize(value.strip().lower(), attr, data, **kwargs)


class SecureDict(fields.Dict):
    """Dictionary whose keys and values are sanitized recursively."""

    def _deserialize(self, value: Any, attr: Optional[str], data: Optional[Dict], **kwargs) -> Dict[str, Any]:
        loaded = super()._deserialize(value, attr, data, **kwargs)
        return sanitize_value(loaded)


__all__ = ['SecureString', 'SecureEmail', 'SecureDict']
