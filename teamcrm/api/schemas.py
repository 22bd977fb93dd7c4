from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from teamcrm.service.auth import UserView


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "VALIDATION_ERROR",
        "UNAUTHORIZED",
        "FORBIDDEN",
        "NOT_FOUND",
        "METHOD_NOT_ALLOWED",
        "CONFLICT",
        "SERVER_ERROR",
        "EMAIL_EXISTS",
        "INVALID_INVITE",
        "INVITE_USED",
        "INVITE_EXPIRED",
        "INVALID_RESET_TOKEN",
        "RESET_TOKEN_USED",
        "RESET_TOKEN_EXPIRED",
        "INVALID_PASSWORD",
        "ALREADY_VERIFIED",
        "INVALID_VERIFICATION_TOKEN",
        "TOKEN_ALREADY_USED",
        "VERIFICATION_TOKEN_EXPIRED",
        "USER_NOT_FOUND",
        "INVALID_CREDENTIALS",
        "INVALID_REFRESH_TOKEN",
        "REFRESH_TOKEN_EXPIRED",
        "NO_REFRESH_TOKEN",
        "INSUFFICIENT_PERMISSIONS",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain a digit")
    return value


def _validate_display_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if not value:
        raise ValueError("must not be blank")
    if len(value) > 100:
        raise ValueError("must be at most 100 characters")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=100)
    team_name: str = Field(..., alias="teamName", min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name", "team_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_display_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AcceptInviteRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_display_name(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(_CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class InviteCreateRequest(BaseModel):
    email: str
    role: Literal["admin", "member", "viewer"] = "member"

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_display_name(value) if value is not None else None

    @model_validator(mode="after")
    def _require_a_change(self) -> "ProfileUpdateRequest":
        if self.name is None and self.email is None:
            raise ValueError("provide name or email")
        return self


class UserResponse(_CamelModel):
    id: str
    email: str
    name: str
    role: str
    team_id: str = Field(..., serialization_alias="teamId")
    team_name: str = Field(..., serialization_alias="teamName")

    @classmethod
    def from_view(cls, view: UserView) -> "UserResponse":
        return cls(
            id=view.id,
            email=view.email,
            name=view.name,
            role=view.role,
            team_id=view.team_id,
            team_name=view.team_name,
        )


class InviteResponse(_CamelModel):
    id: str
    email: str
    role: str
    status: str
    team_name: str = Field(..., serialization_alias="teamName")
    expires_at: datetime = Field(..., serialization_alias="expiresAt")
    token: Optional[str] = None


class IssuedTokenResponse(_CamelModel):
    message: str
    expires_at: Optional[datetime] = Field(default=None, serialization_alias="expiresAt")
    token: Optional[str] = None
