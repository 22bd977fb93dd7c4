from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


USER_ROLES = ("owner", "admin", "member", "viewer")
INVITE_ROLES = ("admin", "member", "viewer")

INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_EXPIRED = "expired"


@dataclass
class Team:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str
    team_id: str
    role: str = "member"
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())


@dataclass
class Invite:
    id: str
    team_id: str
    email: str
    role: str
    token: str
    expires_at: datetime
    status: str = INVITE_PENDING
    invited_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordReset:
    id: str
    email: str
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerification:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    id: str
    team_id: str
    action: str
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
