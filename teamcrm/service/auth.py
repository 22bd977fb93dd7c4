from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from teamcrm.config import Settings
from teamcrm.logging import get_logger, hash_email
from teamcrm.service.audit import AuditAction, AuditService
from teamcrm.service.errors import AuthError, AuthErrorCode
from teamcrm.service.passwords import CredentialHasher
from teamcrm.service.secure_tokens import (
    email_verification_expiry,
    generate_secure_token,
    invite_expiry,
    is_expired,
    password_reset_expiry,
)
from teamcrm.service.tokens import TokenInvalid, TokenSigner
from teamcrm.storage.errors import ConstraintViolation
from teamcrm.storage.models import (
    INVITE_PENDING,
    INVITE_ROLES,
    EmailVerification,
    Invite,
    PasswordReset,
    Session,
    Team,
    User,
)

logger = get_logger(__name__)

_INVITER_ROLES = frozenset({"owner", "admin"})


class AuthStore(Protocol):
    def create_team_with_owner(
        self, team_name: str, email: str, password_hash: str, name: str
    ) -> tuple[Team, User]: ...

    def get_team(self, team_id: str) -> Optional[Team]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int: ...

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        sign_refresh: Callable[[str], str],
    ) -> Optional[Session]: ...

    def create_invite(
        self,
        team_id: str,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
        invited_by: Optional[str] = None,
    ) -> Invite: ...

    def get_invite_by_token(self, token: str) -> Optional[Invite]: ...

    def expire_invite(self, invite_id: str) -> None: ...

    def accept_invite(
        self, invite_id: str, password_hash: str, name: str
    ) -> Optional[User]: ...

    def replace_password_reset(
        self, email: str, token: str, expires_at: datetime
    ) -> PasswordReset: ...

    def get_password_reset(self, token: str) -> Optional[PasswordReset]: ...

    def consume_password_reset(
        self, reset_id: str, user_id: str, password_hash: str
    ) -> bool: ...

    def replace_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification: ...

    def get_email_verification(self, token: str) -> Optional[EmailVerification]: ...

    def consume_email_verification(self, verification_id: str, user_id: str) -> bool: ...


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_team_invite(
        self, to_email: str, token: str, *, team_name: str, role: str
    ) -> bool: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class UserView:
    id: str
    email: str
    name: str
    role: str
    team_id: str
    team_name: str

    @classmethod
    def build(cls, user: User, team: Optional[Team]) -> "UserView":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            team_id=user.team_id,
            team_name=team.name if team else "",
        )


@dataclass(frozen=True)
class AuthResult:
    user: UserView
    tokens: TokenPair


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class InviteResult:
    invite: Invite
    team_name: str


@dataclass
class AuthContext:
    user_id: str
    team_id: str
    role: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login, session rotation, invites, resets and verification.

    Every state change is delegated to a single atomic store method; the
    service itself keeps no user or session state between calls. Failures the
    caller is expected to handle are raised as :class:`AuthError`.
    """

    def __init__(
        self,
        store: AuthStore,
        signer: TokenSigner,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.signer = signer
        self.settings = settings
        self.hasher = hasher or CredentialHasher()
        self.notifier = notifier
        self.audit = audit
        self.logger = logger
        self._pending_notifications: set[asyncio.Task] = set()
        self._reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self._verification_ttl = timedelta(hours=settings.email_verification_ttl_hours)
        self._invite_ttl = timedelta(days=settings.invite_ttl_days)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password_hash, password)

    def _create_session(self, user: User) -> TokenPair:
        # the store hands us the new row id to sign inside its own unit of work
        session = self.store.create_session(
            user.id, self.signer.refresh_token_expiry(), self.signer.sign_refresh_token
        )
        access_token = self.signer.sign_access_token(user.id, user.team_id, user.role)
        return TokenPair(access_token=access_token, refresh_token=session.refresh_token)

    def _audit(self, action: AuditAction, **kwargs) -> None:
        if self.audit:
            self.audit.log(action, **kwargs)

    def _notify(self, notification: str, send: Callable[..., bool], *args, **kwargs) -> None:
        """Schedule a notifier call without waiting for it.

        Callers answer at once whether or not an email goes out, so response
        time does not reveal which branch ran.
        """
        task = asyncio.get_running_loop().create_task(
            self._deliver(notification, send, *args, **kwargs)
        )
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(
        self, notification: str, send: Callable[..., bool], *args, **kwargs
    ) -> None:
        try:
            delivered = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                notification=notification,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning("notification_not_delivered", notification=notification)

    async def wait_for_notifications(self) -> None:
        """Wait until every scheduled notification has been attempted."""
        pending = list(self._pending_notifications)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def register(
        self, email: str, password: str, name: str, team_name: str
    ) -> AuthResult:
        normalized = normalize_email(email)
        password_hash = await self._hash_password(password)
        try:
            team, user = self.store.create_team_with_owner(
                team_name, normalized, password_hash, name
            )
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            self.logger.info("register_email_exists", email_hash=hash_email(normalized))
            raise AuthError(
                AuthErrorCode.EMAIL_EXISTS, "A user with this email already exists"
            ) from exc
        tokens = self._create_session(user)
        self._audit(
            AuditAction.USER_REGISTER,
            team_id=team.id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        self.logger.info("user_registered", user_id=user.id, team_id=team.id)
        return AuthResult(user=UserView.build(user, team), tokens=tokens)

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            self.logger.info("login_failed", reason="unknown_email")
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password")
        if not await self._verify_password(user.password_hash, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password")
        tokens = self._create_session(user)
        self._audit(
            AuditAction.USER_LOGIN,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        return AuthResult(
            user=UserView.build(user, self.store.get_team(user.team_id)), tokens=tokens
        )

    async def logout(self, refresh_token: str) -> None:
        """Drop the session holding ``refresh_token``; unknown tokens are a no-op."""
        session = None
        try:
            claims = self.signer.verify_refresh_token(refresh_token)
        except TokenInvalid:
            claims = None
        if claims:
            session = self.store.get_session(claims.session_id)
        removed = self.store.delete_sessions_by_refresh_token(refresh_token)
        self.logger.info("logout", sessions_removed=removed)
        if not removed or not session or session.refresh_token != refresh_token:
            return
        user = self.store.get_user(session.user_id)
        if user:
            self._audit(
                AuditAction.USER_LOGOUT,
                team_id=user.team_id,
                user_id=user.id,
                entity_type="session",
                entity_id=session.id,
            )

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.signer.verify_refresh_token(refresh_token)
        except TokenInvalid as exc:
            self.logger.info("refresh_rejected", reason=str(exc))
            raise AuthError(
                AuthErrorCode.INVALID_REFRESH_TOKEN, "Invalid or expired refresh token"
            ) from exc

        session = self.store.get_session(claims.session_id)
        if not session or not hmac.compare_digest(
            session.refresh_token.encode(), refresh_token.encode()
        ):
            self.logger.warning("refresh_session_mismatch", session_id=claims.session_id)
            raise AuthError(AuthErrorCode.INVALID_REFRESH_TOKEN, "Session not found")

        if is_expired(session.expires_at, self._now()):
            self.store.delete_session(session.id)
            raise AuthError(
                AuthErrorCode.REFRESH_TOKEN_EXPIRED, "Refresh token has expired"
            )

        user = self.store.get_user(session.user_id)
        if not user:
            self.store.delete_session(session.id)
            raise AuthError(AuthErrorCode.INVALID_REFRESH_TOKEN, "Session not found")

        replacement = self.store.rotate_session(
            session.id,
            refresh_token,
            self.signer.refresh_token_expiry(),
            self.signer.sign_refresh_token,
        )
        if not replacement:
            # a concurrent refresh rotated this session first
            self.logger.warning("refresh_rotation_lost", session_id=session.id)
            raise AuthError(AuthErrorCode.INVALID_REFRESH_TOKEN, "Session not found")

        self.logger.info(
            "session_rotated", user_id=user.id, old_session=session.id, new_session=replacement.id
        )
        return TokenPair(
            access_token=self.signer.sign_access_token(user.id, user.team_id, user.role),
            refresh_token=replacement.refresh_token,
        )

    async def create_invite(
        self, actor_user_id: str, email: str, role: str = "member"
    ) -> InviteResult:
        if role not in INVITE_ROLES:
            raise ValueError(f"unsupported invite role: {role}")
        actor = self.store.get_user(actor_user_id)
        if not actor:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if actor.role not in _INVITER_ROLES:
            raise AuthError(
                AuthErrorCode.INSUFFICIENT_PERMISSIONS,
                "You do not have permission to invite members",
            )
        normalized = normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise AuthError(
                AuthErrorCode.EMAIL_EXISTS, "A user with this email already exists"
            )
        token = generate_secure_token()
        invite = self.store.create_invite(
            actor.team_id,
            normalized,
            role,
            token,
            invite_expiry(self._now(), self._invite_ttl),
            invited_by=actor.id,
        )
        team = self.store.get_team(actor.team_id)
        team_name = team.name if team else ""
        if self.notifier:
            self._notify(
                "team_invite",
                self.notifier.send_team_invite,
                normalized,
                token,
                team_name=team_name,
                role=role,
            )
        self._audit(
            AuditAction.TEAM_MEMBER_INVITE,
            team_id=actor.team_id,
            user_id=actor.id,
            entity_type="invite",
            entity_id=invite.id,
            metadata={"role": role},
        )
        self.logger.info("invite_created", team_id=actor.team_id, invite_id=invite.id)
        return InviteResult(invite=invite, team_name=team_name)

    async def accept_invite(self, token: str, password: str, name: str) -> AuthResult:
        invite = self.store.get_invite_by_token(token)
        if not invite:
            raise AuthError(AuthErrorCode.INVALID_INVITE, "Invalid invite token")
        if invite.status != INVITE_PENDING:
            raise AuthError(AuthErrorCode.INVITE_USED, "This invite has already been used")
        if is_expired(invite.expires_at, self._now()):
            self.store.expire_invite(invite.id)
            raise AuthError(AuthErrorCode.INVITE_EXPIRED, "This invite has expired")

        password_hash = await self._hash_password(password)
        try:
            user = self.store.accept_invite(invite.id, password_hash, name)
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            raise AuthError(
                AuthErrorCode.EMAIL_EXISTS, "A user with this email already exists"
            ) from exc
        if not user:
            raise AuthError(AuthErrorCode.INVITE_USED, "This invite has already been used")

        tokens = self._create_session(user)
        self._audit(
            AuditAction.USER_INVITE_ACCEPT,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="invite",
            entity_id=invite.id,
        )
        self.logger.info("invite_accepted", user_id=user.id, team_id=user.team_id)
        return AuthResult(
            user=UserView.build(user, self.store.get_team(user.team_id)), tokens=tokens
        )

    async def request_password_reset(self, email: str) -> IssuedToken:
        """Issue a reset token; unknown addresses get an unlinked token.

        The caller sees the same shape either way so the response does not
        reveal whether an account exists.
        """
        normalized = normalize_email(email)
        token = generate_secure_token()
        expires_at = password_reset_expiry(self._now(), self._reset_ttl)
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.logger.info(
                "password_reset_unknown_email", email_hash=hash_email(normalized)
            )
            return IssuedToken(token=token, expires_at=expires_at)

        self.store.replace_password_reset(normalized, token, expires_at)
        if self.notifier:
            self._notify(
                "password_reset", self.notifier.send_password_reset, normalized, token
            )
        self._audit(
            AuditAction.USER_PASSWORD_RESET_REQUEST,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        self.logger.info("password_reset_requested", email_hash=hash_email(normalized))
        return IssuedToken(token=token, expires_at=expires_at)

    async def reset_password(self, token: str, new_password: str) -> None:
        reset = self.store.get_password_reset(token)
        if not reset:
            raise AuthError(
                AuthErrorCode.INVALID_RESET_TOKEN, "Invalid or expired reset token"
            )
        if reset.used_at is not None:
            raise AuthError(
                AuthErrorCode.RESET_TOKEN_USED, "This reset token has already been used"
            )
        if is_expired(reset.expires_at, self._now()):
            raise AuthError(
                AuthErrorCode.RESET_TOKEN_EXPIRED, "This reset token has expired"
            )
        user = self.store.get_user_by_email(reset.email)
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")

        password_hash = await self._hash_password(new_password)
        if not self.store.consume_password_reset(reset.id, user.id, password_hash):
            raise AuthError(
                AuthErrorCode.RESET_TOKEN_USED, "This reset token has already been used"
            )
        self._audit(
            AuditAction.USER_PASSWORD_RESET,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        self.logger.info("password_reset_completed", user_id=user.id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password of a signed-in user.

        Other sessions stay valid: the caller already proved possession of the
        current password from a trusted session.
        """
        user = self.store.get_user(user_id)
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if not await self._verify_password(user.password_hash, current_password):
            raise AuthError(
                AuthErrorCode.INVALID_PASSWORD, "Current password is incorrect"
            )
        self.store.update_password_hash(user.id, await self._hash_password(new_password))
        self._audit(
            AuditAction.USER_PASSWORD_CHANGE,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        self.logger.info("password_changed", user_id=user.id)

    async def create_email_verification(self, user_id: str) -> IssuedToken:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if user.email_verified:
            raise AuthError(AuthErrorCode.ALREADY_VERIFIED, "Email is already verified")
        token = generate_secure_token()
        record = self.store.replace_email_verification(
            user.id, token, email_verification_expiry(self._now(), self._verification_ttl)
        )
        if self.notifier:
            self._notify(
                "email_verification",
                self.notifier.send_email_verification,
                user.email,
                token,
            )
        self.logger.info("email_verification_requested", user_id=user.id)
        return IssuedToken(token=record.token, expires_at=record.expires_at)

    async def resend_verification_email(self, user_id: str) -> IssuedToken:
        return await self.create_email_verification(user_id)

    async def verify_email(self, token: str) -> None:
        record = self.store.get_email_verification(token)
        if not record:
            raise AuthError(
                AuthErrorCode.INVALID_VERIFICATION_TOKEN, "Invalid verification token"
            )
        if record.verified_at is not None:
            raise AuthError(
                AuthErrorCode.TOKEN_ALREADY_USED,
                "This verification token has already been used",
            )
        if is_expired(record.expires_at, self._now()):
            raise AuthError(
                AuthErrorCode.VERIFICATION_TOKEN_EXPIRED,
                "This verification token has expired",
            )
        user = self.store.get_user(record.user_id)
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        if user.email_verified:
            raise AuthError(AuthErrorCode.ALREADY_VERIFIED, "Email is already verified")
        if not self.store.consume_email_verification(record.id, user.id):
            raise AuthError(
                AuthErrorCode.TOKEN_ALREADY_USED,
                "This verification token has already been used",
            )
        self._audit(
            AuditAction.USER_EMAIL_VERIFIED,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
        )
        self.logger.info("email_verified", user_id=user.id)

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserView:
        """Change the display name and/or email of a signed-in user."""
        normalized = normalize_email(email) if email is not None else None
        try:
            user = self.store.update_user_profile(user_id, name=name, email=normalized)
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            raise AuthError(AuthErrorCode.EMAIL_EXISTS, "Email is already in use") from exc
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        self._audit(
            AuditAction.USER_PROFILE_UPDATE,
            team_id=user.team_id,
            user_id=user.id,
            entity_type="user",
            entity_id=user.id,
            metadata={"email_changed": email is not None, "name_changed": name is not None},
        )
        self.logger.info("profile_updated", user_id=user.id)
        return UserView.build(user, self.store.get_team(user.team_id))

    def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve an access token to its claims without a store round trip."""
        if not access_token:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, "Authentication required")
        try:
            claims = self.signer.verify_access_token(access_token)
        except TokenInvalid as exc:
            raise AuthError(
                AuthErrorCode.UNAUTHORIZED, "Invalid or expired access token"
            ) from exc
        return AuthContext(user_id=claims.user_id, team_id=claims.team_id, role=claims.role)

    def get_user_view(self, user_id: str) -> UserView:
        user = self.store.get_user(user_id)
        if not user:
            raise AuthError(AuthErrorCode.USER_NOT_FOUND, "User not found")
        return UserView.build(user, self.store.get_team(user.team_id))
