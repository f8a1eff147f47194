from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.activity import ActivityEvent, ActivitySink
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RefreshCredentialError,
    ValidationError,
)
from tenantauth.service.guard import PrivilegeGuard
from tenantauth.service.refresh import IssuedRefreshCredential, RefreshCredentialManager
from tenantauth.service.tokens import AccessClaims, TokenCodec
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.models import ROLE_ADMIN, ROLE_MEMBER, VALID_ROLES, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str, *, tenant_id: str | None = None) -> Optional[User]: ...

    def find_users_by_email(self, email: str) -> List[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, *, tenant_id: str, **fields) -> Optional[User]: ...

    def count_active_admins(self, tenant_id: str) -> int: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_refresh_credential(self, user_id: str, token_hash: str, expires_at: datetime): ...

    def list_refresh_credentials(self) -> list: ...

    def delete_refresh_credential(self, record_id: str) -> bool: ...

    def delete_user_refresh_credentials(self, user_id: str) -> int: ...


@dataclass(frozen=True)
class AuthContext:
    """Verified caller identity, built once per request by the gate."""

    user_id: str
    role: str
    tenant_id: str

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> "AuthContext":
        return cls(user_id=claims.sub, role=claims.role, tenant_id=claims.tenant_id)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class LoginResult:
    user: User
    access_token: str
    access_expires_at: datetime
    refresh: IssuedRefreshCredential


@dataclass
class RefreshResult:
    user: User
    access_token: str
    access_expires_at: datetime
    refresh: Optional[IssuedRefreshCredential] = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def build_password_hasher(*, fast: bool = False) -> PasswordHasher:
    if fast:
        return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return PasswordHasher(type=Type.ID)


class AuthService:
    """Login, logout, refresh and user administration for one deployment."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        refresh: RefreshCredentialManager,
        guard: PrivilegeGuard,
        activity: ActivitySink,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.refresh_credentials = refresh
        self.guard = guard
        self.activity = activity
        self._pwd_hasher = hasher or build_password_hasher(fast=settings.test_mode)
        # Verified against when no account matches so unknown emails cost the
        # same as wrong passwords.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.remember_me_refresh_ttl_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            self._burn_verification(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        self._check_password_length(password)
        digest, algo = self._hash_password(password)
        self.store.save_password(user_id, digest, algo)

    def _check_password_length(self, password: str) -> None:
        if len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    # tokens
    def _issue_access(self, user: User) -> Tuple[str, datetime]:
        token = self.codec.issue(
            {"sub": user.id, "tenant_id": user.tenant_id, "role": user.role},
            self.access_ttl,
        )
        claims = self.codec.verify(token)
        return token, datetime.fromtimestamp(claims.exp, tz=timezone.utc)

    def _emit(self, action: str, tenant_id: str, actor_id: Optional[str], **kwargs) -> None:
        try:
            self.activity.record(
                ActivityEvent(action=action, tenant_id=tenant_id, actor_id=actor_id, **kwargs)
            )
        except Exception as exc:
            self.logger.warning("activity_emit_failed", action=action, error=str(exc))

    # sessions
    def _resolve_login_user(self, email: str, tenant_id: Optional[str]) -> Optional[User]:
        if tenant_id:
            return self.store.get_user_by_email(email, tenant_id)
        candidates = self.store.find_users_by_email(email)
        if len(candidates) > 1:
            self.logger.info("login_ambiguous_tenant", candidates=len(candidates))
            return None
        return candidates[0] if candidates else None

    def _check_login(self, email: str, password: str, tenant_id: Optional[str]) -> User:
        user = self._resolve_login_user(normalize_email(email), tenant_id)
        if not user:
            self._burn_verification(password)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()
        return user

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        tenant_id: Optional[str] = None,
    ) -> LoginResult:
        user = await asyncio.to_thread(self._check_login, email, password, tenant_id)
        access_token, access_expires_at = self._issue_access(user)
        issued = await asyncio.to_thread(
            self.refresh_credentials.issue, user.id, self.refresh_ttl(remember_me)
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, tenant_id=user.tenant_id, remember_me=remember_me
        )
        self._emit("logged_in", user.tenant_id, user.id, entity_id=user.id)
        return LoginResult(
            user=user,
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh=issued,
        )

    async def logout(self, refresh_secret: Optional[str]) -> bool:
        """Revoke the record behind ``refresh_secret``; returns whether one was found.

        Failing to find or delete the record is not an error: either way the
        caller ends up without a usable session.
        """
        if not refresh_secret:
            return False
        try:
            record = await asyncio.to_thread(self.refresh_credentials.locate, refresh_secret)
            self.refresh_credentials.revoke(record.id)
            user = self.store.get_user(record.user_id)
        except RefreshCredentialError:
            self.logger.info("logout_without_live_refresh")
            return False
        except StoreUnavailable as exc:
            self.logger.warning("logout_revocation_failed", error=str(exc))
            return False
        if user:
            self._emit("logged_out", user.tenant_id, user.id, entity_id=user.id)
        return True

    def _active_user_for_refresh(self, user_id: str, record_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            self.refresh_credentials.revoke(record_id)
            self.logger.info("refresh_rejected_inactive_user", user_id=user_id)
            raise AuthenticationError("session is no longer valid")
        return user

    async def refresh(self, refresh_secret: Optional[str]) -> RefreshResult:
        if not refresh_secret:
            raise AuthenticationError("refresh credential missing")
        rotated: Optional[IssuedRefreshCredential] = None
        if self.settings.rotate_refresh_credentials:
            rotated = await asyncio.to_thread(self.refresh_credentials.rotate, refresh_secret)
            user = self._active_user_for_refresh(rotated.user_id, rotated.record_id)
        else:
            record = await asyncio.to_thread(self.refresh_credentials.locate, refresh_secret)
            user = self._active_user_for_refresh(record.user_id, record.id)
        access_token, access_expires_at = self._issue_access(user)
        self.logger.info("access_token_refreshed", user_id=user.id, rotated=rotated is not None)
        return RefreshResult(
            user=user,
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh=rotated,
        )

    def current_user(self, identity: AuthContext) -> User:
        user = self.store.get_user(identity.user_id, tenant_id=identity.tenant_id)
        if not user or not user.is_active:
            raise AuthenticationError("session is no longer valid")
        return user

    async def change_password(
        self,
        identity: AuthContext,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        remember_me: bool = False,
    ) -> IssuedRefreshCredential:
        """Replace the caller's password and every refresh credential they hold.

        Returns the single refresh credential that stays valid, for the device
        that made the change.
        """
        user = self.current_user(identity)
        if new_password != confirm_password:
            raise ValidationError("new passwords do not match", detail={"field": "confirm_password"})
        self._check_password_length(new_password)
        if not await asyncio.to_thread(self.verify_password, user.id, current_password):
            raise ValidationError("current password is incorrect", detail={"field": "current_password"})
        await asyncio.to_thread(self.save_password, user.id, new_password)
        revoked = self.refresh_credentials.revoke_all(user.id)
        issued = await asyncio.to_thread(
            self.refresh_credentials.issue, user.id, self.refresh_ttl(remember_me)
        )
        self.logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
        self._emit("changed_password", user.tenant_id, user.id, entity_id=user.id)
        return issued

    # user administration
    def list_users(self, identity: AuthContext, limit: int = 100) -> List[User]:
        return self.store.list_users(identity.tenant_id, limit=limit)

    async def create_user(
        self,
        actor: AuthContext,
        email: str,
        password: str,
        *,
        role: str = ROLE_MEMBER,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        if role not in VALID_ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        self._check_password_length(password)
        try:
            user = self.store.create_user(
                normalize_email(email),
                tenant_id=actor.tenant_id,
                role=role,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        await asyncio.to_thread(self.save_password, user.id, password)
        self.logger.info("user_created", user_id=user.id, tenant_id=user.tenant_id, role=role)
        self._emit("created_user", actor.tenant_id, actor.user_id, entity_id=user.id, detail={"role": role})
        return user

    def _apply_update(self, identity: AuthContext, user_id: str, fields: dict) -> User:
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        try:
            user = self.store.update_user(user_id, tenant_id=identity.tenant_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def update_user(
        self,
        actor: AuthContext,
        user_id: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        """Administrator edit of any user in the actor's tenant."""
        if role is not None and role not in VALID_ROLES:
            raise ValidationError("invalid role", detail={"field": "role"})
        before = self.guard.check_user_update(
            actor.user_id, actor.tenant_id, user_id, role=role, is_active=is_active
        )
        changes = {
            name: value
            for name, value in {
                "role": role,
                "is_active": is_active,
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "avatar_url": avatar_url,
            }.items()
            if value is not None
        }
        user = self._apply_update(actor, user_id, changes)
        if user.role != before.role or (before.is_active and not user.is_active):
            # Access tokens already issued stay valid until they expire; only
            # the refresh path is cut.
            try:
                revoked = self.refresh_credentials.revoke_all(user.id)
                self.logger.info(
                    "user_privileges_changed_sessions_revoked", user_id=user.id, revoked=revoked
                )
            except StoreUnavailable as exc:
                self.logger.warning(
                    "user_session_revocation_failed", user_id=user.id, error=str(exc)
                )
        self._emit(
            "updated_user",
            actor.tenant_id,
            actor.user_id,
            entity_id=user.id,
            detail={"fields": sorted(changes)},
        )
        return user

    def update_profile(
        self,
        identity: AuthContext,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        """Self-edit; role and active flag are not reachable from here."""
        self.current_user(identity)
        changes = {
            name: value
            for name, value in {
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "avatar_url": avatar_url,
            }.items()
            if value is not None
        }
        user = self._apply_update(identity, identity.user_id, changes)
        self._emit(
            "updated_profile",
            identity.tenant_id,
            identity.user_id,
            entity_id=user.id,
            detail={"fields": sorted(changes)},
        )
        return user
