from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_correlation_id
from tenantauth.storage.models import User

MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_avatar_url(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return value
    if not value.startswith(("https://", "http://", "/")):
        raise ValueError("avatar_url must be an http(s) URL or an absolute path")
    return value


class _CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase names browser clients send."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LoginRequest(_CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId", max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Shape is not validated here: a malformed address is just another
        # failed login.
        return _normalize_unicode(value.strip().lower())


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(..., alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(_CamelModel):
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl", max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("avatar_url")
    @classmethod
    def _validate_profile_avatar(cls, value: Optional[str]) -> Optional[str]:
        return _validate_avatar_url(value)


class AdminCreateUserRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    role: Literal["admin", "member"] = "member"
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminUpdateUserRequest(ProfileUpdateRequest):
    role: Optional[Literal["admin", "member"]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("no fields to update")
        return self


class UserResponse(BaseModel):
    """User as shown to clients; credential material never appears here."""

    id: str
    email: str
    tenant_id: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            tenant_id=user.tenant_id,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class SessionResponse(BaseModel):
    user: UserResponse
    access_expires_at: datetime


class RefreshResponse(BaseModel):
    access_expires_at: datetime
    refresh_rotated: bool = False
