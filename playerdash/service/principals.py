from __future__ import annotations

from typing import List, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.auth import AuthContext, AuthService
from playerdash.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from playerdash.service.roles import (
    Capability,
    can_assign_role,
    can_manage_tenant,
    has_capability,
)
from playerdash.storage.errors import ConstraintViolation
from playerdash.storage.models import Principal, RevocationReason, Role

logger = get_logger(__name__)


class PrincipalStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        ...

    def list_principals(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[Principal]:
        ...

    def update_principal_role(
        self, principal_id: str, role: Role, tenant_id: Optional[str]
    ) -> Optional[Principal]:
        ...

    def delete_principal(self, principal_id: str) -> bool:
        ...


class PrincipalAdminService:
    """Role changes and deletion, confined to what the caller may manage."""

    def __init__(self, store: PrincipalStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def _load_managed(self, actor: AuthContext, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if not principal:
            raise NotFoundError("User not found")
        if principal.tenant_id is None:
            allowed = has_capability(actor.role, Capability.MANAGE_ALL_TENANTS)
        else:
            allowed = can_manage_tenant(actor.role, actor.tenant_id, principal.tenant_id)
        if not allowed:
            raise ForbiddenError("Insufficient permissions")
        return principal

    def list_principals(self, actor: AuthContext) -> List[dict]:
        if has_capability(actor.role, Capability.MANAGE_ALL_TENANTS):
            principals = self.store.list_principals()
        elif has_capability(actor.role, Capability.MANAGE_OWN_TENANT) and actor.tenant_id:
            principals = self.store.list_principals(actor.tenant_id)
        else:
            raise ForbiddenError("Insufficient permissions")
        return [{**p.snapshot(), "status": p.status} for p in principals]

    def delete_principal(self, actor: AuthContext, principal_id: str) -> None:
        principal = self._load_managed(actor, principal_id)
        if principal.role is Role.PLATFORM_ADMIN and not has_capability(
            actor.role, Capability.GRANT_PLATFORM_ADMIN
        ):
            raise ForbiddenError("Insufficient permissions")
        # Outstanding refresh credentials go with the row; access credentials
        # fail on the principal lookup.
        try:
            deleted = self.store.delete_principal(principal.id)
        except ConstraintViolation as exc:
            raise ConflictError("Cannot delete the last superadmin", detail=exc.detail) from exc
        if not deleted:
            raise NotFoundError("User not found")
        logger.info("principal_deleted", principal_id=principal.id, deleted_by=actor.principal_id)

    def update_role(
        self,
        actor: AuthContext,
        principal_id: str,
        role: Role,
        tenant_id: Optional[str] = None,
    ) -> dict:
        principal = self._load_managed(actor, principal_id)
        if not can_assign_role(actor.role, role):
            raise ForbiddenError("Insufficient permissions")
        if principal.role is Role.PLATFORM_ADMIN and not has_capability(
            actor.role, Capability.GRANT_PLATFORM_ADMIN
        ):
            raise ForbiddenError("Insufficient permissions")
        if role is Role.PLATFORM_ADMIN:
            target_tenant = None
        else:
            target_tenant = tenant_id or principal.tenant_id
            if not target_tenant:
                raise ValidationError("company_id is required", detail={"field": "companyId"})
            if not can_manage_tenant(actor.role, actor.tenant_id, target_tenant):
                raise ForbiddenError("Insufficient permissions")
        try:
            updated = self.store.update_principal_role(principal.id, role, target_tenant)
        except ConstraintViolation as exc:
            raise ConflictError("Cannot demote the last superadmin", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("User not found")
        if updated.role is not principal.role or updated.tenant_id != principal.tenant_id:
            self.auth.revocations.add_principal_marker(updated.id, RevocationReason.ADMIN)
        logger.info(
            "principal_role_updated",
            principal_id=updated.id,
            role=updated.role.value,
            updated_by=actor.principal_id,
        )
        refreshed = self.store.get_principal(updated.id) or updated
        return {**refreshed.snapshot(), "status": refreshed.status}
