"""
Role and tenant access rules.

Every protected action is a Capability: the roles allowed to perform it and
how far its tenant scope reaches. is_allowed() is the only place these rules
are evaluated; routes only name the capability they need.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from models.user import Role
from utils.exceptions import PermissionDenied

ADMINS = frozenset({Role.PLATFORM_ADMIN, Role.TENANT_ADMIN})
ALL_ROLES = frozenset(Role)


class TenantScope(str, Enum):
    ANY = "any"                                 # role check only
    OWN_TENANT = "own_tenant"                   # target must be in the caller's school
    OWN_TENANT_OR_SELF = "own_tenant_or_self"   # ... or be the caller themselves
    SELF = "self"                               # only the caller's own account


@dataclass(frozen=True)
class Principal:
    """The resolved identity attached to a request by the authorization guard."""
    user_id: str
    role: Role
    tenant_id: Optional[str]
    email: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role is Role.PLATFORM_ADMIN

    def to_dict(self) -> dict:
        return {"id": self.user_id, "role": self.role.value, "tenant": self.tenant_id, "email": self.email}


@dataclass(frozen=True)
class Capability:
    name: str
    roles: FrozenSet[Role]
    scope: TenantScope = TenantScope.OWN_TENANT

    @classmethod
    def for_roles(cls, roles: Iterable) -> "Capability":
        allowed = frozenset(Role(r) for r in roles)
        return cls(name="roles:" + ",".join(sorted(r.value for r in allowed)), roles=allowed, scope=TenantScope.ANY)


CAPABILITIES: Dict[str, Capability] = {
    c.name: c
    for c in (
        Capability("auth.register", ADMINS, TenantScope.OWN_TENANT),
        Capability("users.read", ADMINS | {Role.STAFF}, TenantScope.OWN_TENANT_OR_SELF),
        Capability("users.activate", ADMINS, TenantScope.OWN_TENANT),
        Capability("users.deactivate", ADMINS, TenantScope.OWN_TENANT),
        Capability("users.revoke_sessions", ADMINS, TenantScope.OWN_TENANT_OR_SELF),
        Capability("audit.read", ADMINS, TenantScope.OWN_TENANT),
    )
}


def get_capability(name: str) -> Capability:
    try:
        return CAPABILITIES[name]
    except KeyError:
        raise LookupError(f"Unknown capability: {name}") from None


def is_allowed(
    principal: Optional[Principal],
    capability: Capability,
    target_tenant_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
) -> bool:
    """
    Decide whether principal may exercise capability on a target.

    - The caller's role must be in capability.roles. This applies to
      self-service too: a learner cannot use an admin-only capability on
      themselves.
    - Platform admins pass every tenant check.
    - Otherwise the target must be the caller (SELF, OWN_TENANT_OR_SELF) or in
      the caller's tenant (OWN_TENANT, OWN_TENANT_OR_SELF). A caller without a
      tenant never matches a tenant.
    - With no target given, the caller's own tenant is assumed.
    """
    if principal is None:
        return False
    if principal.role not in capability.roles:
        return False
    if capability.scope is TenantScope.ANY or principal.is_platform_admin:
        return True

    is_self = target_user_id is not None and target_user_id == principal.user_id
    if capability.scope is TenantScope.SELF:
        return is_self
    if capability.scope is TenantScope.OWN_TENANT_OR_SELF and is_self:
        return True

    if target_tenant_id is None and target_user_id is None:
        return principal.tenant_id is not None
    return principal.tenant_id is not None and target_tenant_id == principal.tenant_id


def authorize(
    principal: Optional[Principal],
    capability: Capability,
    target_tenant_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
) -> None:
    if not is_allowed(principal, capability, target_tenant_id, target_user_id):
        raise PermissionDenied("Insufficient permissions")
