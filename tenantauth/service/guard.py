from __future__ import annotations

from typing import Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.errors import ForbiddenError, NotFoundError
from tenantauth.storage.models import ROLE_ADMIN, User

logger = get_logger(__name__)


class GuardStore(Protocol):
    def get_user(self, user_id: str, *, tenant_id: str | None = None) -> Optional[User]: ...

    def count_active_admins(self, tenant_id: str) -> int: ...


class PrivilegeGuard:
    """Refuses role and active-flag changes that would lock a tenant out.

    Checks run against the persisted rows at request time; the caller applies
    the update only if ``check_user_update`` returns.
    """

    def __init__(self, store: GuardStore) -> None:
        self.store = store

    def check_user_update(
        self,
        actor_id: str,
        tenant_id: str,
        target_id: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        target = self.store.get_user(target_id, tenant_id=tenant_id)
        if not target:
            raise NotFoundError("user not found", detail={"user_id": target_id})

        demoting = role is not None and target.role == ROLE_ADMIN and role != ROLE_ADMIN
        deactivating = is_active is False and target.is_active

        if actor_id == target.id:
            if demoting:
                self._refuse("self_demotion", actor_id, tenant_id, "cannot change your own administrator role")
            if deactivating:
                self._refuse("self_deactivation", actor_id, tenant_id, "cannot deactivate your own account")
            return target

        if target.role == ROLE_ADMIN and target.is_active and (demoting or deactivating):
            remaining = self.store.count_active_admins(tenant_id) - 1
            if remaining < 1:
                action = "deactivate" if deactivating else "demote"
                self._refuse(
                    "last_admin",
                    actor_id,
                    tenant_id,
                    f"cannot {action} the only active administrator",
                )
        return target

    def _refuse(self, rule: str, actor_id: str, tenant_id: str, message: str) -> None:
        logger.warning("privilege_guard_refused", rule=rule, actor_id=actor_id, tenant_id=tenant_id)
        raise ForbiddenError(message, detail={"rule": rule})
