from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS team (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE CHECK (email = lower(email)),
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('owner', 'admin', 'member', 'viewer')),
        team_id UUID NOT NULL REFERENCES team(id) ON DELETE CASCADE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS team_invite (
        id UUID PRIMARY KEY,
        team_id UUID NOT NULL REFERENCES team(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'member', 'viewer')),
        token TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'expired')),
        invited_by UUID REFERENCES app_user(id) ON DELETE SET NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_email_idx ON password_reset (email)",
    """
    CREATE TABLE IF NOT EXISTS email_verification (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        team_id UUID NOT NULL,
        user_id UUID,
        action TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_team_idx ON audit_log (team_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed account and session store.

    Each composite operation runs inside a single ``conn.transaction()`` so its
    writes commit together or not at all. Uniqueness is left to the table
    constraints and surfaced as :class:`ConstraintViolation`.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(_SCHEMA_STATEMENTS))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _team_from_row(row: dict[str, Any]) -> Team:
        return Team(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row["name"],
            team_id=str(row["team_id"]),
            role=row["role"],
            email_verified=bool(row["email_verified"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _invite_from_row(row: dict[str, Any]) -> Invite:
        invited_by = row.get("invited_by")
        return Invite(
            id=str(row["id"]),
            team_id=str(row["team_id"]),
            email=row["email"],
            role=row["role"],
            token=row["token"],
            status=row["status"],
            invited_by=str(invited_by) if invited_by else None,
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _password_reset_from_row(row: dict[str, Any]) -> PasswordReset:
        return PasswordReset(
            id=str(row["id"]),
            email=row["email"],
            token=row["token"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _email_verification_from_row(row: dict[str, Any]) -> EmailVerification:
        return EmailVerification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _audit_event_from_row(row: dict[str, Any]) -> AuditEvent:
        user_id = row.get("user_id")
        return AuditEvent(
            id=str(row["id"]),
            team_id=str(row["team_id"]),
            user_id=str(user_id) if user_id else None,
            action=row["action"],
            entity_type=row.get("entity_type"),
            entity_id=row.get("entity_id"),
            metadata=row.get("metadata"),
            created_at=row["created_at"],
        )

    # teams and users
    def _insert_user(
        self,
        conn,
        *,
        email: str,
        password_hash: str,
        name: str,
        team_id: str,
        role: str,
    ) -> User:
        row = conn.execute(
            """
            INSERT INTO app_user (id, email, password_hash, name, role, team_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), email, password_hash, name, role, team_id),
        ).fetchone()
        return self._user_from_row(row)

    def create_team_with_owner(
        self, team_name: str, email: str, password_hash: str, name: str
    ) -> tuple[Team, User]:
        try:
            with self._connect() as conn, conn.transaction():
                team_row = conn.execute(
                    "INSERT INTO team (id, name) VALUES (%s, %s) RETURNING *",
                    (str(uuid.uuid4()), team_name),
                ).fetchone()
                team = self._team_from_row(team_row)
                user = self._insert_user(
                    conn,
                    email=email,
                    password_hash=password_hash,
                    name=name,
                    team_id=team.id,
                    role="owner",
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return team, user

    def get_team(self, team_id: str) -> Optional[Team]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM team WHERE id = %s", (team_id,)).fetchone()
        return self._team_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET name = COALESCE(%s, name), email = COALESCE(%s, email)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, email, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    # sessions
    def _insert_session(
        self,
        conn,
        user_id: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Session:
        session_id = Session.new_id()
        row = conn.execute(
            """
            INSERT INTO auth_session (id, user_id, refresh_token, expires_at)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (session_id, user_id, sign_refresh(session_id), expires_at),
        ).fetchone()
        return self._session_from_row(row)

    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Session:
        try:
            with self._connect() as conn, conn.transaction():
                session = self._insert_session(conn, user_id, expires_at, sign_refresh)
                conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND expires_at <= now()",
                    (user_id,),
                )
                return session
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            )
            return result.rowcount

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Optional[Session]:
        """Compare-and-delete the old row, then insert its replacement.

        A concurrent rotation of the same row blocks on the row lock taken by
        the DELETE and then sees no row, so only one caller gets a session back.
        """
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                DELETE FROM auth_session
                WHERE id = %s AND refresh_token = %s
                RETURNING user_id
                """,
                (session_id, refresh_token),
            ).fetchone()
            if not row:
                return None
            return self._insert_session(
                conn, str(row["user_id"]), expires_at, sign_refresh
            )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO team_invite (id, team_id, email, role, token, expires_at, invited_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), team_id, email, role, token, expires_at, invited_by),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("team does not exist", {"team_id": team_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("invite token already exists", {"field": "token"})
        return self._invite_from_row(row)

    def get_invite_by_token(self, token: str) -> Optional[Invite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM team_invite WHERE token = %s", (token,)
            ).fetchone()
        return self._invite_from_row(row) if row else None

    def expire_invite(self, invite_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE team_invite SET status = %s WHERE id = %s AND status = %s",
                (INVITE_EXPIRED, invite_id, INVITE_PENDING),
            )

    def accept_invite(
        self, invite_id: str, password_hash: str, name: str
    ) -> Optional[User]:
        try:
            with self._connect() as conn, conn.transaction():
                invite_row = conn.execute(
                    """
                    UPDATE team_invite SET status = %s
                    WHERE id = %s AND status = %s
                    RETURNING *
                    """,
                    (INVITE_ACCEPTED, invite_id, INVITE_PENDING),
                ).fetchone()
                if not invite_row:
                    return None
                invite = self._invite_from_row(invite_row)
                return self._insert_user(
                    conn,
                    email=invite.email,
                    password_hash=password_hash,
                    name=name,
                    team_id=invite.team_id,
                    role=invite.role,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    # password resets
    def replace_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE password_reset SET used_at = now() WHERE email = %s AND used_at IS NULL",
                (email,),
            )
            row = conn.execute(
                """
                INSERT INTO password_reset (id, email, token, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), email, token, expires_at),
            ).fetchone()
        return self._password_reset_from_row(row)

    def get_password_reset(self, token: str) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset WHERE token = %s", (token,)
            ).fetchone()
        return self._password_reset_from_row(row) if row else None

    def consume_password_reset(
        self, reset_id: str, user_id: str, password_hash: str
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            claimed = conn.execute(
                "UPDATE password_reset SET used_at = now() WHERE id = %s AND used_at IS NULL",
                (reset_id,),
            )
            if claimed.rowcount == 0:
                return False
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            revoked = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
        self.logger.info(
            "password_reset_sessions_revoked", user_id=user_id, count=revoked.rowcount
        )
        return True

    # email verification
    def replace_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    UPDATE email_verification SET verified_at = now()
                    WHERE user_id = %s AND verified_at IS NULL
                    """,
                    (user_id,),
                )
                row = conn.execute(
                    """
                    INSERT INTO email_verification (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._email_verification_from_row(row)

    def get_email_verification(self, token: str) -> Optional[EmailVerification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification WHERE token = %s", (token,)
            ).fetchone()
        return self._email_verification_from_row(row) if row else None

    def consume_email_verification(self, verification_id: str, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            claimed = conn.execute(
                """
                UPDATE email_verification SET verified_at = now()
                WHERE id = %s AND verified_at IS NULL
                """,
                (verification_id,),
            )
            if claimed.rowcount == 0:
                return False
            conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s", (user_id,)
            )
        return True

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, team_id, user_id, action, entity_type, entity_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.team_id,
                    event.user_id,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_audit_events(self, team_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log WHERE team_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (team_id, limit),
            ).fetchall()
        return [self._audit_event_from_row(row) for row in rows]
