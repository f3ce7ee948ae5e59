from __future__ import annotations

from functools import wraps
from typing import Callable, Iterable, Optional

from flask import g, request

from models import storage
from models.user import User
from utils.audit import AuditEventType, get_audit_logger
from utils.exceptions import PermissionDenied, TokenInvalidOrExpired
from utils.permissions import Capability, Principal, authorize, get_capability
from utils.security import get_token_issuer


def _bearer_token() -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _reject_token(reason: str) -> TokenInvalidOrExpired:
    get_audit_logger().from_request(
        AuditEventType.INVALID_TOKEN,
        success=False,
        details={
            "reason": reason,
            "has_auth_header": "Authorization" in request.headers,
        },
    )
    return TokenInvalidOrExpired(reason=reason)


def authenticate() -> Principal:
    """
    Resolve the bearer token into a Principal and attach it to g.

    The user row is reloaded on every request so deactivation takes effect
    before the access token expires; role and tenant come from that row.
    """
    token = _bearer_token()
    if token is None:
        raise _reject_token("missing")
    try:
        claims = get_token_issuer().decode_access_token(token)
    except TokenInvalidOrExpired as exc:
        raise _reject_token(exc.reason or "invalid")

    user = storage.get(User, claims.get("sub"))
    if user is None or not user.is_active:
        raise _reject_token("inactive_user")

    g.current_user = user
    g.principal = Principal(user_id=user.id, role=user.role, tenant_id=user.school_id, email=user.email)
    return g.principal


def jwt_required():
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            authenticate()
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def check_capability(capability: Capability, target_tenant_id: Optional[str] = None,
                     target_user_id: Optional[str] = None) -> None:
    """Evaluate capability for the current principal; audit and raise on denial."""
    principal = g.get("principal")
    try:
        authorize(principal, capability, target_tenant_id, target_user_id)
    except PermissionDenied:
        get_audit_logger().from_request(
            AuditEventType.ACCESS_DENIED,
            success=False,
            details={"capability": capability.name, "target_user_id": target_user_id},
            error_message="Insufficient permissions",
        )
        raise


def capability_required(name: str, target: Optional[Callable[..., tuple]] = None):
    """
    Require a named capability.
    target(**view_kwargs) may return (target_tenant_id, target_user_id) for
    scope checks; without it the caller's own tenant is assumed.
    """
    capability = get_capability(name)

    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            tenant_id, user_id = target(**kwargs) if target else (None, None)
            check_capability(capability, tenant_id, user_id)
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def roles_required(required_roles: Iterable[str]):
    """
    Allow access if the user has ANY of the required roles.
    Deny (403) only if the caller's role is not in required_roles.
    """
    capability = Capability.for_roles(required_roles)

    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            check_capability(capability)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
