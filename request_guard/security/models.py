"""
Request and identity models consumed by the security pipeline.

RequestDescriptor is the framework-neutral view of an inbound call. Flask
requests are converted into it by request_guard.security.decorators, and
tests build it directly.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple, Union

from werkzeug.datastructures import Headers


CLIENT_IP_HEADERS: Tuple[str, ...] = ('X-Forwarded-For', 'X-Real-IP', 'CF-Connecting-IP')


@dataclass(frozen=True)
class Identity:
    """
    Resolved caller identity.

    Produced upstream by the authentication layer; the pipeline only
    enforces policy on top of it.
    """

    user_id: str
    role: Optional[str] = None
    email: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()

    @property
    def actor_id(self) -> str:
        return self.email or self.user_id

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> 'Identity':
        """Build an identity from decoded bearer token claims."""
        permissions = claims.get('permissions') or ()
        if isinstance(permissions, str):
            permissions = permissions.split()
        return cls(
            user_id=str(claims.get('sub', '')),
            role=claims.get('role'),
            email=claims.get('email'),
            permissions=frozenset(permissions),
        )


@dataclass(frozen=True)
class FileUpload:
    """Metadata for one uploaded file; the content itself is never inspected."""

    field_name: str
    filename: str
    content_type: str
    size: int


@dataclass
class RequestDescriptor:
    """
    Framework-neutral description of an inbound request.

    Header lookups are case-insensitive. body may be raw bytes/str or an
    already-parsed JSON value.
    """

    method: str
    url: str
    headers: Union[Headers, Mapping[str, str], Iterable[Tuple[str, str]]] = field(default_factory=Headers)
    body: Any = None
    form: Mapping[str, Any] = field(default_factory=dict)
    files: Sequence[FileUpload] = ()
    client_ip: Optional[str] = None
    remote_addr: Optional[str] = None
    identity: Optional[Identity] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trust_proxy_headers: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self.method = self.method.upper()

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

    @property
    def content_type(self) -> str:
        return self.headers.get('Content-Type', '') or ''

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get('User-Agent')

    def resolve_client_ip(self) -> str:
        """
        Determine the client address used for rate limiting and auditing.

        An explicit client_ip wins; otherwise the first proxy header hop
        when proxy headers are trusted, then the socket address, then
        'unknown'.
        """
        if self.client_ip:
            return self.client_ip
        if self.trust_proxy_headers:
            for header_name in CLIENT_IP_HEADERS:
                value = self.headers.get(header_name)
                if value:
                    first_hop = value.split(',')[0].strip()
                    if first_hop:
                        return first_hop
        return self.remote_addr or 'unknown'


@dataclass
class SecurityContext:
    """Authorized request handed to business logic after the pipeline succeeds."""

    request: RequestDescriptor
    identity: Optional[Identity]
    body: Any
    client_ip: str
    request_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None


__all__ = [
    'CLIENT_IP_HEADERS',
    'Identity',
    'FileUpload',
    'RequestDescriptor',
    'SecurityContext',
]
