from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from teamcrm.logging import get_logger
from teamcrm.storage.errors import ConstraintViolation
from teamcrm.storage.models import (
    INVITE_ACCEPTED,
    INVITE_EXPIRED,
    INVITE_PENDING,
    AuditEvent,
    EmailVerification,
    Invite,
    PasswordReset,
    Session,
    Team,
    User,
    utcnow,
)

_TABLES = (
    "teams",
    "users",
    "sessions",
    "invites",
    "password_resets",
    "email_verifications",
    "audit_events",
)


class MemoryStore:
    """In-process account and session store with JSON snapshot persistence.

    Every public method holds ``_data_lock`` for its whole body, so composite
    writes (team + owner, session rotation, reset consumption) are atomic with
    respect to other callers, mirroring the transactions of ``PostgresStore``.
    Writes go through ``_transaction``: if the body raises or the snapshot
    cannot be written, every table is restored to its state before the write.
    """

    def __init__(self, fs_root: str = "/tmp/teamcrm") -> None:
        self.logger = get_logger(__name__)
        self.teams: Dict[str, Team] = {}
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.invites: Dict[str, Invite] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.email_verifications: Dict[str, EmailVerification] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so composite methods can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    @contextmanager
    def _transaction(self):
        with self._data_lock:
            before = copy.deepcopy({name: getattr(self, name) for name in _TABLES})
            try:
                yield
                self._persist_state()
            except Exception:
                for name, table in before.items():
                    setattr(self, name, table)
                raise

    # teams and users
    def _email_in_use(self, email: str) -> bool:
        return any(existing.email == email for existing in self.users.values())

    def _insert_user(
        self, *, email: str, password_hash: str, name: str, team_id: str, role: str
    ) -> User:
        if self._email_in_use(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            team_id=team_id,
            role=role,
        )
        self.users[user.id] = user
        return user

    def create_team_with_owner(
        self, team_name: str, email: str, password_hash: str, name: str
    ) -> tuple[Team, User]:
        with self._transaction():
            # check before touching any table so a violation leaves no orphan team
            if self._email_in_use(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            team = Team(id=str(uuid.uuid4()), name=team_name)
            self.teams[team.id] = team
            user = self._insert_user(
                email=email,
                password_hash=password_hash,
                name=name,
                team_id=team.id,
                role="owner",
            )
            return team, user

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._data_lock:
            return self.teams.get(team_id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._transaction():
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        """Change name and/or email; the email stays unique across all users."""
        with self._transaction():
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and email != user.email:
                if self._email_in_use(email):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            if name is not None:
                user.name = name
            return user

    # sessions
    def _prune_expired_sessions(self, user_id: str) -> None:
        now = utcnow()
        expired = [
            sid
            for sid, s in self.sessions.items()
            if s.user_id == user_id and s.expires_at <= now
        ]
        for sid in expired:
            self.sessions.pop(sid, None)

    def _insert_session(
        self,
        user_id: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Session:
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        self._prune_expired_sessions(user_id)
        session_id = Session.new_id()
        refresh_token = sign_refresh(session_id)
        if any(s.refresh_token == refresh_token for s in self.sessions.values()):
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        session = Session(
            id=session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        self.sessions[session.id] = session
        return session

    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Session:
        with self._transaction():
            return self._insert_session(user_id, expires_at, sign_refresh)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]

    def delete_session(self, session_id: str) -> None:
        with self._transaction():
            self.sessions.pop(session_id, None)

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int:
        with self._transaction():
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.refresh_token == refresh_token
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Optional[Session]:
        """Replace a session only if it still holds ``refresh_token``.

        Returns ``None`` when another caller already rotated or deleted it.
        """
        with self._transaction():
            current = self.sessions.get(session_id)
            if not current or current.refresh_token != refresh_token:
                return None
            replacement = self._insert_session(current.user_id, expires_at, sign_refresh)
            self.sessions.pop(session_id, None)
            return replacement

    # invites
    def create_invite(
        self,
        team_id: str,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
        invited_by: Optional[str] = None,
    ) -> Invite:
        with self._transaction():
            if team_id not in self.teams:
                raise ConstraintViolation("team does not exist", {"team_id": team_id})
            if any(i.token == token for i in self.invites.values()):
                raise ConstraintViolation("invite token already exists", {"field": "token"})
            invite = Invite(
                id=str(uuid.uuid4()),
                team_id=team_id,
                email=email,
                role=role,
                token=token,
                expires_at=expires_at,
                invited_by=invited_by,
            )
            self.invites[invite.id] = invite
            return invite

    def get_invite_by_token(self, token: str) -> Optional[Invite]:
        with self._data_lock:
            return next((i for i in self.invites.values() if i.token == token), None)

    def expire_invite(self, invite_id: str) -> None:
        with self._transaction():
            invite = self.invites.get(invite_id)
            if invite and invite.status == INVITE_PENDING:
                invite.status = INVITE_EXPIRED

    def accept_invite(
        self, invite_id: str, password_hash: str, name: str
    ) -> Optional[User]:
        """Create the invited user and mark the invite accepted in one step.

        Returns ``None`` if the invite is no longer pending.
        """
        with self._transaction():
            invite = self.invites.get(invite_id)
            if not invite or invite.status != INVITE_PENDING:
                return None
            user = self._insert_user(
                email=invite.email,
                password_hash=password_hash,
                name=name,
                team_id=invite.team_id,
                role=invite.role,
            )
            invite.status = INVITE_ACCEPTED
            return user

    # password resets
    def replace_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset:
        with self._transaction():
            now = utcnow()
            for reset in self.password_resets.values():
                if reset.email == email and reset.used_at is None:
                    reset.used_at = now
            reset = PasswordReset(
                id=str(uuid.uuid4()), email=email, token=token, expires_at=expires_at
            )
            self.password_resets[reset.id] = reset
            return reset

    def get_password_reset(self, token: str) -> Optional[PasswordReset]:
        with self._data_lock:
            return next(
                (r for r in self.password_resets.values() if r.token == token), None
            )

    def consume_password_reset(
        self, reset_id: str, user_id: str, password_hash: str
    ) -> bool:
        """Set the new hash, mark the reset used and drop every session of the user."""
        with self._transaction():
            reset = self.password_resets.get(reset_id)
            user = self.users.get(user_id)
            if not reset or reset.used_at is not None or not user:
                return False
            user.password_hash = password_hash
            reset.used_at = utcnow()
            stale = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return True

    # email verification
    def replace_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification:
        with self._transaction():
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            now = utcnow()
            for record in self.email_verifications.values():
                if record.user_id == user_id and record.verified_at is None:
                    record.verified_at = now
            record = EmailVerification(
                id=str(uuid.uuid4()), user_id=user_id, token=token, expires_at=expires_at
            )
            self.email_verifications[record.id] = record
            return record

    def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        with self._data_lock:
            return next(
                (v for v in self.email_verifications.values() if v.token == token),
                None,
            )

    def consume_email_verification(self, verification_id: str, user_id: str) -> bool:
        with self._transaction():
            record = self.email_verifications.get(verification_id)
            user = self.users.get(user_id)
            if not record or record.verified_at is not None or not user:
                return False
            user.email_verified = True
            record.verified_at = utcnow()
            return True

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._transaction():
            self.audit_events.append(event)

    def list_audit_events(self, team_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._data_lock:
            matches = [e for e in self.audit_events if e.team_id == team_id]
            return sorted(matches, key=lambda e: e.created_at, reverse=True)[:limit]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "teams": [self._serialize_team(t) for t in self.teams.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "invites": [self._serialize_invite(i) for i in self.invites.values()],
            "password_resets": [
                self._serialize_password_reset(r) for r in self.password_resets.values()
            ],
            "email_verifications": [
                self._serialize_email_verification(v)
                for v in self.email_verifications.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.teams = {t["id"]: self._deserialize_team(t) for t in data.get("teams", [])}
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.invites = {
            i["id"]: self._deserialize_invite(i) for i in data.get("invites", [])
        }
        self.password_resets = {
            r["id"]: self._deserialize_password_reset(r)
            for r in data.get("password_resets", [])
        }
        self.email_verifications = {
            v["id"]: self._deserialize_email_verification(v)
            for v in data.get("email_verifications", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_state_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    def _serialize_team(self, team: Team) -> dict:
        return {
            "id": team.id,
            "name": team.name,
            "created_at": self._serialize_datetime(team.created_at),
        }

    def _deserialize_team(self, data: dict) -> Team:
        return Team(
            id=data["id"],
            name=data["name"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "name": user.name,
            "team_id": user.team_id,
            "role": user.role,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name", ""),
            team_id=data["team_id"],
            role=data.get("role", "member"),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_invite(self, invite: Invite) -> dict:
        return {
            "id": invite.id,
            "team_id": invite.team_id,
            "email": invite.email,
            "role": invite.role,
            "token": invite.token,
            "status": invite.status,
            "invited_by": invite.invited_by,
            "expires_at": self._serialize_datetime(invite.expires_at),
            "created_at": self._serialize_datetime(invite.created_at),
        }

    def _deserialize_invite(self, data: dict) -> Invite:
        return Invite(
            id=data["id"],
            team_id=data["team_id"],
            email=data["email"],
            role=data["role"],
            token=data["token"],
            status=data.get("status", INVITE_PENDING),
            invited_by=data.get("invited_by"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_password_reset(self, reset: PasswordReset) -> dict:
        return {
            "id": reset.id,
            "email": reset.email,
            "token": reset.token,
            "expires_at": self._serialize_datetime(reset.expires_at),
            "used_at": self._serialize_datetime(reset.used_at),
            "created_at": self._serialize_datetime(reset.created_at),
        }

    def _deserialize_password_reset(self, data: dict) -> PasswordReset:
        return PasswordReset(
            id=data["id"],
            email=data["email"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_email_verification(self, record: EmailVerification) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "verified_at": self._serialize_datetime(record.verified_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_email_verification(self, data: dict) -> EmailVerification:
        return EmailVerification(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            verified_at=self._deserialize_datetime(data.get("verified_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "team_id": event.team_id,
            "user_id": event.user_id,
            "action": event.action,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "metadata": event.metadata,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            team_id=data["team_id"],
            user_id=data.get("user_id"),
            action=data["action"],
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
            metadata=data.get("metadata"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
