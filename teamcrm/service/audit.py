from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Optional, Protocol

from teamcrm.logging import get_logger
from teamcrm.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction(str, Enum):
    USER_REGISTER = "user.register"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_PROFILE_UPDATE = "user.profile_update"
    USER_PASSWORD_RESET_REQUEST = "user.password_reset_request"
    USER_PASSWORD_RESET = "user.password_reset"
    USER_PASSWORD_CHANGE = "user.password_change"
    USER_EMAIL_VERIFIED = "user.email_verified"
    USER_INVITE_ACCEPT = "user.invite_accept"
    TEAM_MEMBER_INVITE = "team.member_invite"


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class AuditService:
    """Fire-and-forget audit trail; a failed write never reaches the caller."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def log(
        self,
        action: AuditAction,
        *,
        team_id: str,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            team_id=team_id,
            user_id=user_id,
            action=action.value,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        )
        try:
            self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_log_failed",
                action=action.value,
                team_id=team_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
