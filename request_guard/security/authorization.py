"""
Role-Based Access Control and Bearer Token Resolution

Permission policy consumed by the pipeline's AUTHORIZE stage, and an identity
resolver for the AUTHENTICATE stage that verifies HS256/RS256 bearer tokens
with PyJWT 2.8+.

Key Components:
- ROLE_PERMISSIONS: static role -> permission table
- RolePermissionPolicy: grants the union of role permissions and any
  permissions carried explicitly on the identity
- ROLE_HIERARCHY and can_assign_role(): role assignment rules
- BearerTokenResolver: Authorization header -> Identity, expired or invalid
  tokens raise AuthenticationError

Session issuance is out of scope; tokens are produced elsewhere and only
verified here.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

import jwt
import structlog

from request_guard.config.settings import CryptoConfig, get_security_config
from request_guard.security.audit import SecurityEventType
from request_guard.security.exceptions import AuthenticationError, ConfigurationError
from request_guard.security.models import Identity, RequestDescriptor


logger = structlog.get_logger("security.authorization")


class Permission:
    """Permission names used in ROLE_PERMISSIONS and SecurityOptions."""

    MANAGE_USERS = 'manage_users'
    ASSIGN_ROLES = 'assign_roles'
    CREATE_TASKS = 'create_tasks'
    ASSIGN_TASKS = 'assign_tasks'
    VIEW_ALL_TASKS = 'view_all_tasks'
    MANAGE_PROJECTS = 'manage_projects'
    MANAGE_CONTENT = 'manage_content'
    VIEW_ANALYTICS = 'view_analytics'
    MANAGE_FINANCE = 'manage_finance'
    MANAGE_HR = 'manage_hr'
    MANAGE_PROCUREMENT = 'manage_procurement'
    MANAGE_INVENTORY = 'manage_inventory'
    SEND_MESSAGES = 'send_messages'
    RECEIVE_MESSAGES = 'receive_messages'
    VIEW_REPORTS = 'view_reports'


ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    value for name, value in vars(Permission).items() if name.isupper()
)

_MESSAGING = frozenset({Permission.SEND_MESSAGES, Permission.RECEIVE_MESSAGES})
_STAFF = _MESSAGING | {
    Permission.CREATE_TASKS,
    Permission.ASSIGN_TASKS,
    Permission.VIEW_ANALYTICS,
    Permission.VIEW_REPORTS,
}
_PROGRAM = _STAFF | {Permission.VIEW_ALL_TASKS, Permission.MANAGE_PROJECTS}

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    'SUPER_ADMIN': ALL_PERMISSIONS,
    'GENERAL_MANAGER': ALL_PERMISSIONS,
    'ADMIN': _PROGRAM | {Permission.MANAGE_CONTENT},
    'PROGRAM_MANAGER': _PROGRAM,
    'PROJECT_COORDINATOR': _STAFF | {Permission.MANAGE_PROJECTS},
    'HR': _STAFF | {Permission.MANAGE_USERS, Permission.MANAGE_HR},
    'FINANCE': _STAFF | {Permission.MANAGE_FINANCE},
    'ACCOUNTANT': _STAFF | {Permission.MANAGE_FINANCE},
    'PROCUREMENT': _STAFF | {Permission.MANAGE_PROCUREMENT},
    'STOREKEEPER': _STAFF | {Permission.MANAGE_INVENTORY},
    'ME': _STAFF,
    'FIELD_OFFICER': _STAFF,
    'USER': _MESSAGING,
}

# Highest privilege first
ROLE_HIERARCHY: List[str] = [
    'SUPER_ADMIN',
    'GENERAL_MANAGER',
    'ADMIN',
    'PROGRAM_MANAGER',
    'PROJECT_COORDINATOR',
    'HR',
    'FINANCE',
    'PROCUREMENT',
    'STOREKEEPER',
    'ME',
    'FIELD_OFFICER',
    'ACCOUNTANT',
    'USER',
]


def permissions_for_role(role: Optional[str]) -> FrozenSet[str]:
    if not role:
        return frozenset()
    return ROLE_PERMISSIONS.get(role.upper(), frozenset())


def roles_with_permission(permission: str) -> List[str]:
    return [role for role in ROLE_HIERARCHY if permission in ROLE_PERMISSIONS[role]]


def can_assign_role(assigner_role: str, target_role: str) -> bool:
    """
    SUPER_ADMIN may assign any role. GENERAL_MANAGER may assign roles below
    itself except SUPER_ADMIN. Nobody else assigns roles.
    """
    if assigner_role == 'SUPER_ADMIN':
        return target_role in ROLE_HIERARCHY
    if assigner_role != 'GENERAL_MANAGER' or target_role not in ROLE_HIERARCHY:
        return False
    return (
        ROLE_HIERARCHY.index(target_role) > ROLE_HIERARCHY.index(assigner_role)
        and target_role != 'SUPER_ADMIN'
    )


class PermissionPolicy(ABC):
    """Decides whether an identity holds a permission."""

    @abstractmethod
    def has_permission(self, identity: Identity, permission: str) -> bool:
        ...

    def missing_permissions(self, identity: Identity, required: Iterable[str]) -> List[str]:
        return [permission for permission in required if not self.has_permission(identity, permission)]


class RolePermissionPolicy(PermissionPolicy):
    """
    Grants role permissions from a table plus explicit identity permissions.

    Args:
        role_permissions: Role table, ROLE_PERMISSIONS when omitted
    """

    def __init__(self, role_permissions: Optional[Dict[str, FrozenSet[str]]] = None) -> None:
        self.role_permissions = role_permissions if role_permissions is not None else ROLE_PERMISSIONS

    def granted_permissions(self, identity: Identity) -> FrozenSet[str]:
        role_grants = frozenset()
        if identity.role:
            role_grants = self.role_permissions.get(identity.role.upper(), frozenset())
        return role_grants | identity.permissions

    def has_permission(self, identity: Identity, permission: str) -> bool:
        return permission in self.granted_permissions(identity)


class BearerTokenResolver:
    """
    Resolves an Identity from an 'Authorization: Bearer <jwt>' header.

    Returns None when no bearer token is presented, so anonymous requests
    reach the pipeline's require_auth check.

    Args:
        secret_key: HMAC secret or public key used to verify signatures
        algorithms: Accepted signing algorithms
        audience: Expected 'aud' claim, unchecked when None
        issuer: Expected 'iss' claim, unchecked when None
        leeway: Clock skew tolerance in seconds
    """

    def __init__(
        self,
        secret_key: str,
        algorithms: Sequence[str] = ('HS256',),
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway: int = 0
    ) -> None:
        if not secret_key:
            raise ConfigurationError("Bearer token verification requires a signing key")
        self.secret_key = secret_key
        self.algorithms = list(algorithms)
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway

    @classmethod
    def from_config(cls, config: Optional[CryptoConfig] = None) -> 'BearerTokenResolver':
        config = config or get_security_config().crypto
        return cls(config.jwt_secret_key, algorithms=(config.jwt_algorithm,))

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Verify a JWT and return its claims.

        Raises:
            AuthenticationError: Expired, malformed or wrongly signed token
        """
        options = {'require': ['sub', 'exp'], 'verify_aud': self.audience is not None}
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options=options,
                leeway=self.leeway
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError(
                "Token has expired",
                metadata={
                    'event_type': SecurityEventType.AUTHENTICATION_FAILED.value,
                    'reason': 'token_expired'
                }
            ) from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(
                "Invalid token",
                metadata={
                    'event_type': SecurityEventType.AUTHENTICATION_FAILED.value,
                    'reason': 'token_invalid',
                    'jwt_error': type(e).__name__
                }
            ) from e

    def __call__(self, request: RequestDescriptor) -> Optional[Identity]:
        authorization = request.header('Authorization')
        if not authorization:
            return None
        scheme, _, token = authorization.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            raise AuthenticationError(
                "Malformed Authorization header",
                metadata={
                    'event_type': SecurityEventType.AUTHENTICATION_FAILED.value,
                    'reason': 'malformed_header'
                }
            )
        claims = self.decode(token.strip())
        identity = Identity.from_claims(claims)
        logger.debug("Bearer token verified", user_id=identity.user_id, role=identity.role)
        return identity


__all__ = [
    'Permission',
    'ALL_PERMISSIONS',
    'ROLE_PERMISSIONS',
    'ROLE_HIERARCHY',
    'permissions_for_role',
    'roles_with_permission',
    'can_assign_role',
    'PermissionPolicy',
    'RolePermissionPolicy',
    'BearerTokenResolver',
]
