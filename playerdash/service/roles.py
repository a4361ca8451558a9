from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Iterable, Optional

from playerdash.storage.models import Role


class Capability(str, Enum):
    INVITE_PRINCIPALS = "invite_principals"
    MANAGE_ALL_TENANTS = "manage_all_tenants"
    MANAGE_OWN_TENANT = "manage_own_tenant"
    GRANT_PLATFORM_ADMIN = "grant_platform_admin"
    RECEIVE_ALL_EVENTS = "receive_all_events"
    VIEW_MONITORING = "view_monitoring"
    PUBLISH_EVENTS = "publish_events"


CAPABILITIES: dict[Role, FrozenSet[Capability]] = {
    Role.PLATFORM_ADMIN: frozenset(Capability),
    Role.TENANT_ADMIN: frozenset(
        {
            Capability.INVITE_PRINCIPALS,
            Capability.MANAGE_OWN_TENANT,
            Capability.PUBLISH_EVENTS,
        }
    ),
    Role.MEMBER: frozenset({Capability.PUBLISH_EVENTS}),
}

# Roles a tenant-admin may hand out inside its own tenant
TENANT_ASSIGNABLE_ROLES: FrozenSet[Role] = frozenset({Role.MEMBER, Role.TENANT_ADMIN})

TENANT_PRINCIPAL_CAP = 5


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in CAPABILITIES.get(role, frozenset())


def has_all(role: Role, capabilities: Iterable[Capability]) -> bool:
    granted = CAPABILITIES.get(role, frozenset())
    return all(cap in granted for cap in capabilities)


def can_manage_tenant(role: Role, own_tenant: Optional[str], target_tenant: Optional[str]) -> bool:
    """Whether a caller may act on principals of ``target_tenant``."""
    if has_capability(role, Capability.MANAGE_ALL_TENANTS):
        return True
    if has_capability(role, Capability.MANAGE_OWN_TENANT):
        return own_tenant is not None and own_tenant == target_tenant
    return False


def can_assign_role(role: Role, assigned: Role) -> bool:
    if has_capability(role, Capability.GRANT_PLATFORM_ADMIN):
        return True
    if has_capability(role, Capability.MANAGE_OWN_TENANT):
        return assigned in TENANT_ASSIGNABLE_ROLES
    return False
