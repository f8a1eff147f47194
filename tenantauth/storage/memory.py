from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    ROLE_ADMIN,
    ROLE_MEMBER,
    RefreshCredential,
    User,
    utcnow,
)

_UPDATABLE_USER_FIELDS = frozenset(
    {"email", "first_name", "last_name", "avatar_url", "role", "is_active"}
)


class MemoryStore:
    """In-process credential store used for tests and single-node development.

    Records handed out are copies, so callers cannot mutate persisted state
    without going through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_credentials: Dict[str, RefreshCredential] = {}
        # RLock so helpers can be called while a public method holds it
        self._data_lock = threading.RLock()

    # user / auth
    def _email_taken(self, email: str, tenant_id: str, *, exclude: str | None = None) -> bool:
        return any(
            u.email == email and u.tenant_id == tenant_id and u.id != exclude
            for u in self.users.values()
        )

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        role: str = ROLE_MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if self._email_taken(email, tenant_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                tenant_id=tenant_id,
                role=role,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str, *, tenant_id: str | None = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or (tenant_id is not None and user.tenant_id != tenant_id):
                return None
            return replace(user)

    def find_users_by_email(self, email: str) -> List[User]:
        with self._data_lock:
            return [replace(u) for u in self.users.values() if u.email == email]

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    replace(u)
                    for u in self.users.values()
                    if u.email == email and u.tenant_id == tenant_id
                ),
                None,
            )

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if u.tenant_id == tenant_id]
            results.sort(key=lambda u: u.created_at)
            return [replace(u) for u in results[:limit]]

    def update_user(self, user_id: str, *, tenant_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.tenant_id != tenant_id:
                return None
            email = fields.get("email")
            if email is not None and self._email_taken(email, tenant_id, exclude=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return replace(user)

    def count_active_admins(self, tenant_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if u.tenant_id == tenant_id and u.role == ROLE_ADMIN and u.is_active
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh credentials
    def create_refresh_credential(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshCredential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for refresh credential", {"user_id": user_id}
                )
            record = RefreshCredential(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_credentials[record.id] = record
            return replace(record)

    def list_refresh_credentials(self) -> List[RefreshCredential]:
        with self._data_lock:
            return [replace(r) for r in self.refresh_credentials.values()]

    def delete_refresh_credential(self, record_id: str) -> bool:
        with self._data_lock:
            return self.refresh_credentials.pop(record_id, None) is not None

    def delete_user_refresh_credentials(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [
                rid for rid, r in self.refresh_credentials.items() if r.user_id == user_id
            ]
            for rid in doomed:
                del self.refresh_credentials[rid]
            if doomed:
                self.logger.info(
                    "refresh_credentials_purged", user_id=user_id, count=len(doomed)
                )
            return len(doomed)
