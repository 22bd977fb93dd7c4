"""Unit tests for the auth engine.

Tests for:
- Team registration and login
- Refresh-token rotation, reuse and expiry
- Logout
- Team invites
- Password reset and change
- Email verification
- Access-token authentication
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from teamcrm.config import Settings
from teamcrm.service.audit import AuditService
from teamcrm.service.auth import AuthService, TokenPair
from teamcrm.service.errors import AuthError, AuthErrorCode, AuthErrorKind
from teamcrm.service.tokens import TokenSigner
from teamcrm.storage.memory import MemoryStore

OWNER_EMAIL = "owner@example.com"
PASSWORD = "Correct-Horse-42"
NEW_PASSWORD = "Battery-Staple-77"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_password_reset(self, to_email, token):
        self.sent.append(("reset", to_email, token))
        return True

    def send_email_verification(self, to_email, token):
        self.sent.append(("verify", to_email, token))
        return True

    def send_team_invite(self, to_email, token, *, team_name, role):
        self.sent.append(("invite", to_email, token, team_name, role))
        return True


class SlowNotifier(RecordingNotifier):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def send_password_reset(self, to_email, token):
        time.sleep(self.delay)
        return super().send_password_reset(to_email, token)


class FailingNotifier:
    def send_password_reset(self, to_email, token):
        raise RuntimeError("smtp down")

    def send_email_verification(self, to_email, token):
        raise RuntimeError("smtp down")

    def send_team_invite(self, to_email, token, *, team_name, role):
        raise RuntimeError("smtp down")


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def signer(settings):
    return TokenSigner(settings.jwt_secret, settings.jwt_refresh_secret)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, signer, settings, fast_hasher, notifier):
    return AuthService(
        memory_store,
        signer,
        settings,
        hasher=fast_hasher,
        notifier=notifier,
        audit=AuditService(memory_store),
    )


def _register(auth_service, email=OWNER_EMAIL, team_name="Acme"):
    return asyncio.run(auth_service.register(email, PASSWORD, "Olive Owner", team_name))


def _session_id(signer, refresh_token):
    return signer.verify_refresh_token(refresh_token).session_id


def _delivered(auth_service, coro):
    """Run ``coro`` and wait for the notifications it scheduled."""

    async def _run():
        result = await coro
        await auth_service.wait_for_notifications()
        return result

    return asyncio.run(_run())


def _expect(code, coro):
    with pytest.raises(AuthError) as excinfo:
        asyncio.run(coro)
    assert excinfo.value.code == code
    return excinfo.value


class TestRegister:
    """Tests for team + owner registration."""

    def test_register_creates_owner_and_team(self, auth_service, memory_store):
        result = _register(auth_service, email="Owner@Example.COM")

        assert result.user.email == OWNER_EMAIL
        assert result.user.role == "owner"
        assert result.user.team_name == "Acme"
        team = memory_store.get_team(result.user.team_id)
        assert team is not None and team.name == "Acme"

    def test_register_issues_verifiable_tokens(self, auth_service, signer, memory_store):
        result = _register(auth_service)

        claims = signer.verify_access_token(result.tokens.access_token)
        assert claims.user_id == result.user.id
        assert claims.team_id == result.user.team_id
        assert claims.role == "owner"
        session = memory_store.get_session(_session_id(signer, result.tokens.refresh_token))
        assert session is not None
        assert session.refresh_token == result.tokens.refresh_token

    def test_password_is_stored_hashed(self, auth_service, memory_store):
        result = _register(auth_service)

        stored = memory_store.get_user(result.user.id)
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$argon2id$")

    def test_duplicate_email_rejected(self, auth_service, memory_store):
        _register(auth_service)

        err = _expect(
            AuthErrorCode.EMAIL_EXISTS,
            auth_service.register("OWNER@example.com", PASSWORD, "Other", "Other Co"),
        )
        assert err.message == "A user with this email already exists"
        assert err.kind == AuthErrorKind.STATE
        # the failed registration leaves no team behind
        assert len(memory_store.teams) == 1

    def test_register_is_audited(self, auth_service, memory_store):
        result = _register(auth_service)

        actions = [e.action for e in memory_store.list_audit_events(result.user.team_id)]
        assert "user.register" in actions


class TestLogin:
    """Tests for password login."""

    def test_login_returns_fresh_token_pair(self, auth_service, memory_store, signer):
        registered = _register(auth_service)

        result = asyncio.run(auth_service.login("OWNER@example.com", PASSWORD))

        assert result.user.id == registered.user.id
        assert result.user.team_name == "Acme"
        assert result.tokens.access_token != registered.tokens.access_token
        assert result.tokens.refresh_token != registered.tokens.refresh_token
        assert len(memory_store.list_user_sessions(registered.user.id)) == 2

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, auth_service):
        _register(auth_service)

        wrong = _expect(
            AuthErrorCode.INVALID_CREDENTIALS,
            auth_service.login(OWNER_EMAIL, "Wrong-Password-1"),
        )
        unknown = _expect(
            AuthErrorCode.INVALID_CREDENTIALS,
            auth_service.login("nobody@example.com", PASSWORD),
        )
        assert wrong.message == unknown.message == "Invalid email or password"
        assert wrong.kind == AuthErrorKind.CREDENTIAL

    def test_unknown_email_still_runs_a_verification(self, auth_service, monkeypatch):
        calls = []
        original = auth_service.hasher.verify_dummy

        def _record(plaintext):
            calls.append(plaintext)
            return original(plaintext)

        monkeypatch.setattr(auth_service.hasher, "verify_dummy", _record)
        _expect(
            AuthErrorCode.INVALID_CREDENTIALS,
            auth_service.login("nobody@example.com", PASSWORD),
        )
        assert calls == [PASSWORD]


class TestLogout:
    """Tests for logout."""

    def test_logout_removes_session(self, auth_service, memory_store, signer):
        result = _register(auth_service)
        session_id = _session_id(signer, result.tokens.refresh_token)

        asyncio.run(auth_service.logout(result.tokens.refresh_token))

        assert memory_store.get_session(session_id) is None
        err = _expect(
            AuthErrorCode.INVALID_REFRESH_TOKEN,
            auth_service.refresh(result.tokens.refresh_token),
        )
        assert err.message == "Session not found"

    def test_logout_is_idempotent(self, auth_service):
        result = _register(auth_service)

        asyncio.run(auth_service.logout(result.tokens.refresh_token))
        asyncio.run(auth_service.logout(result.tokens.refresh_token))
        asyncio.run(auth_service.logout("not-a-token"))

    def test_logout_is_audited_once(self, auth_service, memory_store):
        result = _register(auth_service)

        asyncio.run(auth_service.logout(result.tokens.refresh_token))
        asyncio.run(auth_service.logout(result.tokens.refresh_token))

        actions = [e.action for e in memory_store.list_audit_events(result.user.team_id)]
        assert actions.count("user.logout") == 1


class TestRefresh:
    """Tests for refresh-token rotation."""

    def test_refresh_rotates_session(self, auth_service, memory_store, signer):
        result = _register(auth_service)
        old_session = _session_id(signer, result.tokens.refresh_token)

        tokens = asyncio.run(auth_service.refresh(result.tokens.refresh_token))

        assert isinstance(tokens, TokenPair)
        assert tokens.refresh_token != result.tokens.refresh_token
        new_session = _session_id(signer, tokens.refresh_token)
        assert new_session != old_session
        assert memory_store.get_session(old_session) is None
        assert memory_store.get_session(new_session).user_id == result.user.id
        assert signer.verify_access_token(tokens.access_token).user_id == result.user.id

    def test_rotated_token_cannot_be_reused(self, auth_service):
        result = _register(auth_service)
        asyncio.run(auth_service.refresh(result.tokens.refresh_token))

        err = _expect(
            AuthErrorCode.INVALID_REFRESH_TOKEN,
            auth_service.refresh(result.tokens.refresh_token),
        )
        assert err.message == "Session not found"

    def test_garbage_token_rejected(self, auth_service):
        err = _expect(AuthErrorCode.INVALID_REFRESH_TOKEN, auth_service.refresh("a.b.c"))
        assert err.message == "Invalid or expired refresh token"

    def test_access_token_is_not_a_refresh_token(self, auth_service):
        result = _register(auth_service)

        err = _expect(
            AuthErrorCode.INVALID_REFRESH_TOKEN,
            auth_service.refresh(result.tokens.access_token),
        )
        assert err.message == "Invalid or expired refresh token"

    def test_stored_token_mismatch_rejected(self, auth_service, memory_store, signer):
        result = _register(auth_service)
        session = memory_store.get_session(_session_id(signer, result.tokens.refresh_token))
        session.refresh_token = "replaced"

        err = _expect(
            AuthErrorCode.INVALID_REFRESH_TOKEN,
            auth_service.refresh(result.tokens.refresh_token),
        )
        assert err.message == "Session not found"

    def test_session_expiring_now_is_expired(
        self, auth_service, memory_store, signer, monkeypatch
    ):
        result = _register(auth_service)
        session_id = _session_id(signer, result.tokens.refresh_token)
        now = datetime.now(timezone.utc)
        memory_store.get_session(session_id).expires_at = now
        monkeypatch.setattr(auth_service, "_now", lambda: now)

        err = _expect(
            AuthErrorCode.REFRESH_TOKEN_EXPIRED,
            auth_service.refresh(result.tokens.refresh_token),
        )
        assert err.message == "Refresh token has expired"
        assert memory_store.get_session(session_id) is None

    def test_concurrent_refresh_has_single_winner(self, auth_service):
        result = _register(auth_service)

        async def _race():
            return await asyncio.gather(
                auth_service.refresh(result.tokens.refresh_token),
                auth_service.refresh(result.tokens.refresh_token),
                return_exceptions=True,
            )

        outcomes = asyncio.run(_race())
        winners = [o for o in outcomes if isinstance(o, TokenPair)]
        losers = [o for o in outcomes if isinstance(o, AuthError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].code == AuthErrorCode.INVALID_REFRESH_TOKEN

    def test_threaded_store_rotation_has_single_winner(self, auth_service, memory_store, signer):
        result = _register(auth_service)
        token = result.tokens.refresh_token
        session_id = _session_id(signer, token)
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def _rotate():
            barrier.wait()
            replacement = memory_store.rotate_session(
                session_id, token, signer.refresh_token_expiry(), signer.sign_refresh_token
            )
            with outcomes_lock:
                outcomes.append(replacement)

        threads = [threading.Thread(target=_rotate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([o for o in outcomes if o is not None]) == 1
        assert len(memory_store.list_user_sessions(result.user.id)) == 1


class TestInvites:
    """Tests for team invites."""

    def _invite(self, auth_service, actor_id, email="member@example.com", role="member"):
        return asyncio.run(auth_service.create_invite(actor_id, email, role))

    def test_owner_can_invite(self, auth_service, notifier):
        owner = _register(auth_service)

        result = _delivered(
            auth_service, auth_service.create_invite(owner.user.id, "Member@Example.com")
        )

        invite = result.invite
        assert invite.email == "member@example.com"
        assert invite.status == "pending"
        assert invite.role == "member"
        assert invite.invited_by == owner.user.id
        assert invite.expires_at > datetime.now(timezone.utc) + timedelta(days=6)
        assert result.team_name == "Acme"
        assert notifier.sent[-1] == ("invite", "member@example.com", invite.token, "Acme", "member")

    def test_accept_invite_joins_team(self, auth_service, memory_store, signer):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id, role="viewer").invite

        joined = asyncio.run(auth_service.accept_invite(invite.token, PASSWORD, "Val Viewer"))

        assert joined.user.team_id == owner.user.team_id
        assert joined.user.role == "viewer"
        assert joined.user.email == "member@example.com"
        assert joined.user.team_name == "Acme"
        assert memory_store.get_invite_by_token(invite.token).status == "accepted"
        assert signer.verify_access_token(joined.tokens.access_token).role == "viewer"

    def test_member_cannot_invite(self, auth_service):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id).invite
        member = asyncio.run(auth_service.accept_invite(invite.token, PASSWORD, "Mo Member"))

        err = _expect(
            AuthErrorCode.INSUFFICIENT_PERMISSIONS,
            auth_service.create_invite(member.user.id, "third@example.com", "member"),
        )
        assert err.kind == AuthErrorKind.PERMISSION
        assert err.message == "You do not have permission to invite members"

    def test_admin_can_invite(self, auth_service):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id, role="admin").invite
        admin = asyncio.run(auth_service.accept_invite(invite.token, PASSWORD, "Ada Admin"))

        result = self._invite(auth_service, admin.user.id, email="third@example.com")

        assert result.invite.team_id == owner.user.team_id

    def test_invite_for_registered_email_rejected(self, auth_service):
        owner = _register(auth_service)

        _expect(
            AuthErrorCode.EMAIL_EXISTS,
            auth_service.create_invite(owner.user.id, OWNER_EMAIL, "member"),
        )

    def test_unknown_actor_rejected(self, auth_service):
        _expect(
            AuthErrorCode.USER_NOT_FOUND,
            auth_service.create_invite("missing", "new@example.com", "member"),
        )

    def test_invite_role_owner_not_allowed(self, auth_service):
        owner = _register(auth_service)

        with pytest.raises(ValueError):
            asyncio.run(auth_service.create_invite(owner.user.id, "x@example.com", "owner"))

    def test_unknown_invite_token(self, auth_service):
        err = _expect(
            AuthErrorCode.INVALID_INVITE,
            auth_service.accept_invite("nope", PASSWORD, "Someone"),
        )
        assert err.message == "Invalid invite token"
        assert err.kind == AuthErrorKind.STATE

    def test_invite_cannot_be_used_twice(self, auth_service):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id).invite
        asyncio.run(auth_service.accept_invite(invite.token, PASSWORD, "First"))

        err = _expect(
            AuthErrorCode.INVITE_USED,
            auth_service.accept_invite(invite.token, PASSWORD, "Second"),
        )
        assert err.message == "This invite has already been used"

    def test_invite_expiring_now_is_expired(self, auth_service, memory_store, monkeypatch):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id).invite
        now = datetime.now(timezone.utc)
        memory_store.get_invite_by_token(invite.token).expires_at = now
        monkeypatch.setattr(auth_service, "_now", lambda: now)

        err = _expect(
            AuthErrorCode.INVITE_EXPIRED,
            auth_service.accept_invite(invite.token, PASSWORD, "Late"),
        )
        assert err.message == "This invite has expired"
        assert memory_store.get_invite_by_token(invite.token).status == "expired"
        _expect(
            AuthErrorCode.INVITE_USED,
            auth_service.accept_invite(invite.token, PASSWORD, "Later"),
        )

    def test_accept_after_email_registered_elsewhere(self, auth_service, memory_store):
        owner = _register(auth_service)
        invite = self._invite(auth_service, owner.user.id).invite
        _register(auth_service, email="member@example.com", team_name="Rival")

        _expect(
            AuthErrorCode.EMAIL_EXISTS,
            auth_service.accept_invite(invite.token, PASSWORD, "Dup"),
        )
        assert memory_store.get_invite_by_token(invite.token).status == "pending"

    def test_invite_delivery_failure_is_not_fatal(
        self, memory_store, signer, settings, fast_hasher
    ):
        service = AuthService(
            memory_store, signer, settings, hasher=fast_hasher, notifier=FailingNotifier()
        )
        owner = _register(service)

        result = _delivered(
            service, service.create_invite(owner.user.id, "m@example.com", "member")
        )

        assert memory_store.get_invite_by_token(result.invite.token) is not None


class TestPasswordReset:
    """Tests for the password reset flow."""

    def test_unknown_email_gets_unpersisted_token(self, auth_service, memory_store, notifier):
        issued = _delivered(auth_service, auth_service.request_password_reset("ghost@example.com"))

        assert len(issued.token) == 64
        assert issued.expires_at > datetime.now(timezone.utc)
        assert memory_store.get_password_reset(issued.token) is None
        assert notifier.sent == []

    def test_known_email_stores_token_and_notifies(self, auth_service, memory_store, notifier):
        _register(auth_service)

        issued = _delivered(auth_service, auth_service.request_password_reset("OWNER@example.com"))

        stored = memory_store.get_password_reset(issued.token)
        assert stored is not None and stored.email == OWNER_EMAIL
        assert stored.expires_at - datetime.now(timezone.utc) <= timedelta(hours=1)
        assert notifier.sent == [("reset", OWNER_EMAIL, issued.token)]

    def test_slow_delivery_does_not_delay_the_answer(
        self, memory_store, signer, settings, fast_hasher
    ):
        slow = SlowNotifier(delay=0.5)
        service = AuthService(memory_store, signer, settings, hasher=fast_hasher, notifier=slow)
        _register(service)

        async def _timed(email):
            started = time.perf_counter()
            await service.request_password_reset(email)
            elapsed = time.perf_counter() - started
            await service.wait_for_notifications()
            return elapsed

        known = asyncio.run(_timed(OWNER_EMAIL))
        unknown = asyncio.run(_timed("ghost@example.com"))

        assert known < 0.25
        assert abs(known - unknown) < 0.1
        assert [kind for kind, *_ in slow.sent] == ["reset"]

    def test_reset_changes_password_and_revokes_sessions(self, auth_service, memory_store):
        registered = _register(auth_service)
        asyncio.run(auth_service.login(OWNER_EMAIL, PASSWORD))
        issued = asyncio.run(auth_service.request_password_reset(OWNER_EMAIL))

        asyncio.run(auth_service.reset_password(issued.token, NEW_PASSWORD))

        assert memory_store.list_user_sessions(registered.user.id) == []
        assert memory_store.get_password_reset(issued.token).used_at is not None
        asyncio.run(auth_service.login(OWNER_EMAIL, NEW_PASSWORD))
        _expect(AuthErrorCode.INVALID_CREDENTIALS, auth_service.login(OWNER_EMAIL, PASSWORD))
        _expect(
            AuthErrorCode.INVALID_REFRESH_TOKEN,
            auth_service.refresh(registered.tokens.refresh_token),
        )

    def test_reset_token_single_use(self, auth_service):
        _register(auth_service)
        issued = asyncio.run(auth_service.request_password_reset(OWNER_EMAIL))
        asyncio.run(auth_service.reset_password(issued.token, NEW_PASSWORD))

        err = _expect(
            AuthErrorCode.RESET_TOKEN_USED,
            auth_service.reset_password(issued.token, "Another-Pass-9"),
        )
        assert err.message == "This reset token has already been used"

    def test_new_request_supersedes_previous_token(self, auth_service):
        _register(auth_service)
        first = asyncio.run(auth_service.request_password_reset(OWNER_EMAIL))
        second = asyncio.run(auth_service.request_password_reset(OWNER_EMAIL))

        _expect(
            AuthErrorCode.RESET_TOKEN_USED,
            auth_service.reset_password(first.token, NEW_PASSWORD),
        )
        asyncio.run(auth_service.reset_password(second.token, NEW_PASSWORD))

    def test_invalid_reset_token(self, auth_service):
        err = _expect(
            AuthErrorCode.INVALID_RESET_TOKEN,
            auth_service.reset_password("missing", NEW_PASSWORD),
        )
        assert err.message == "Invalid or expired reset token"

    def test_reset_token_expiring_now_is_expired(self, auth_service, memory_store, monkeypatch):
        _register(auth_service)
        issued = asyncio.run(auth_service.request_password_reset(OWNER_EMAIL))
        now = datetime.now(timezone.utc)
        memory_store.get_password_reset(issued.token).expires_at = now
        monkeypatch.setattr(auth_service, "_now", lambda: now)

        err = _expect(
            AuthErrorCode.RESET_TOKEN_EXPIRED,
            auth_service.reset_password(issued.token, NEW_PASSWORD),
        )
        assert err.message == "This reset token has expired"

    def test_reset_for_missing_user(self, auth_service, memory_store):
        memory_store.replace_password_reset(
            "gone@example.com", "orphan-token", datetime.now(timezone.utc) + timedelta(hours=1)
        )

        err = _expect(
            AuthErrorCode.USER_NOT_FOUND,
            auth_service.reset_password("orphan-token", NEW_PASSWORD),
        )
        assert err.message == "User not found"

    def test_reset_delivery_failure_still_returns_token(
        self, memory_store, signer, settings, fast_hasher
    ):
        service = AuthService(
            memory_store, signer, settings, hasher=fast_hasher, notifier=FailingNotifier()
        )
        _register(service)

        issued = _delivered(service, service.request_password_reset(OWNER_EMAIL))

        assert memory_store.get_password_reset(issued.token) is not None


class TestChangePassword:
    """Tests for authenticated password change."""

    def test_change_password_keeps_sessions(self, auth_service, memory_store):
        registered = _register(auth_service)

        asyncio.run(auth_service.change_password(registered.user.id, PASSWORD, NEW_PASSWORD))

        assert len(memory_store.list_user_sessions(registered.user.id)) == 1
        asyncio.run(auth_service.login(OWNER_EMAIL, NEW_PASSWORD))

    def test_wrong_current_password(self, auth_service):
        registered = _register(auth_service)

        err = _expect(
            AuthErrorCode.INVALID_PASSWORD,
            auth_service.change_password(registered.user.id, "Nope-Nope-1", NEW_PASSWORD),
        )
        assert err.message == "Current password is incorrect"
        assert err.kind == AuthErrorKind.STATE

    def test_unknown_user(self, auth_service):
        _expect(
            AuthErrorCode.USER_NOT_FOUND,
            auth_service.change_password("missing", PASSWORD, NEW_PASSWORD),
        )


class TestEmailVerification:
    """Tests for the email verification flow."""

    def test_verify_marks_user_verified(self, auth_service, memory_store, notifier):
        registered = _register(auth_service)

        issued = _delivered(
            auth_service, auth_service.create_email_verification(registered.user.id)
        )
        asyncio.run(auth_service.verify_email(issued.token))

        assert memory_store.get_user(registered.user.id).email_verified is True
        assert memory_store.get_email_verification(issued.token).verified_at is not None
        assert notifier.sent == [("verify", OWNER_EMAIL, issued.token)]

    def test_verified_user_cannot_request_again(self, auth_service):
        registered = _register(auth_service)
        issued = asyncio.run(auth_service.create_email_verification(registered.user.id))
        asyncio.run(auth_service.verify_email(issued.token))

        err = _expect(
            AuthErrorCode.ALREADY_VERIFIED,
            auth_service.resend_verification_email(registered.user.id),
        )
        assert err.message == "Email is already verified"

    def test_resend_supersedes_previous_token(self, auth_service):
        registered = _register(auth_service)
        first = asyncio.run(auth_service.create_email_verification(registered.user.id))
        second = asyncio.run(auth_service.resend_verification_email(registered.user.id))

        err = _expect(AuthErrorCode.TOKEN_ALREADY_USED, auth_service.verify_email(first.token))
        assert err.message == "This verification token has already been used"
        asyncio.run(auth_service.verify_email(second.token))

    def test_invalid_verification_token(self, auth_service):
        err = _expect(
            AuthErrorCode.INVALID_VERIFICATION_TOKEN, auth_service.verify_email("missing")
        )
        assert err.message == "Invalid verification token"

    def test_verification_expiring_now_is_expired(
        self, auth_service, memory_store, monkeypatch
    ):
        registered = _register(auth_service)
        issued = asyncio.run(auth_service.create_email_verification(registered.user.id))
        now = datetime.now(timezone.utc)
        memory_store.get_email_verification(issued.token).expires_at = now
        monkeypatch.setattr(auth_service, "_now", lambda: now)

        err = _expect(
            AuthErrorCode.VERIFICATION_TOKEN_EXPIRED, auth_service.verify_email(issued.token)
        )
        assert err.message == "This verification token has expired"

    def test_verify_when_user_already_verified(self, auth_service, memory_store):
        registered = _register(auth_service)
        issued = asyncio.run(auth_service.create_email_verification(registered.user.id))
        memory_store.get_user(registered.user.id).email_verified = True

        _expect(AuthErrorCode.ALREADY_VERIFIED, auth_service.verify_email(issued.token))

    def test_unknown_user(self, auth_service):
        _expect(
            AuthErrorCode.USER_NOT_FOUND, auth_service.create_email_verification("missing")
        )


class TestAuthenticate:
    """Tests for access-token authentication."""

    def test_valid_access_token(self, auth_service):
        registered = _register(auth_service)

        ctx = auth_service.authenticate(registered.tokens.access_token)

        assert ctx.user_id == registered.user.id
        assert ctx.team_id == registered.user.team_id
        assert ctx.role == "owner"

    def test_invalid_access_token(self, auth_service):
        with pytest.raises(AuthError) as excinfo:
            auth_service.authenticate("not.a.token")
        assert excinfo.value.code == AuthErrorCode.UNAUTHORIZED
        assert excinfo.value.message == "Invalid or expired access token"

    def test_refresh_token_is_not_an_access_token(self, auth_service):
        registered = _register(auth_service)

        with pytest.raises(AuthError):
            auth_service.authenticate(registered.tokens.refresh_token)

    def test_missing_access_token(self, auth_service):
        with pytest.raises(AuthError) as excinfo:
            auth_service.authenticate(None)
        assert excinfo.value.kind == AuthErrorKind.CREDENTIAL


class TestUpdateProfile:
    """Tests for profile changes."""

    def test_change_name_and_email(self, auth_service, memory_store):
        registered = _register(auth_service)

        view = asyncio.run(
            auth_service.update_profile(
                registered.user.id, name="Olive Oyl", email="Olive@Example.org"
            )
        )

        assert view.name == "Olive Oyl"
        assert view.email == "olive@example.org"
        assert view.team_name == "Acme"
        assert memory_store.get_user_by_email("olive@example.org").id == registered.user.id
        asyncio.run(auth_service.login("olive@example.org", PASSWORD))

    def test_name_only_keeps_email(self, auth_service):
        registered = _register(auth_service)

        view = asyncio.run(auth_service.update_profile(registered.user.id, name="Renamed"))

        assert view.email == OWNER_EMAIL

    def test_email_taken_by_another_user(self, auth_service, memory_store):
        _register(auth_service, email="taken@example.com", team_name="Other")
        registered = _register(auth_service)

        err = _expect(
            AuthErrorCode.EMAIL_EXISTS,
            auth_service.update_profile(registered.user.id, email="TAKEN@example.com"),
        )

        assert err.message == "Email is already in use"
        assert memory_store.get_user(registered.user.id).email == OWNER_EMAIL

    def test_keeping_own_email_is_allowed(self, auth_service):
        registered = _register(auth_service)

        view = asyncio.run(auth_service.update_profile(registered.user.id, email=OWNER_EMAIL))

        assert view.email == OWNER_EMAIL

    def test_unknown_user(self, auth_service):
        _expect(AuthErrorCode.USER_NOT_FOUND, auth_service.update_profile("missing", name="X"))

    def test_update_is_audited(self, auth_service, memory_store):
        registered = _register(auth_service)

        asyncio.run(auth_service.update_profile(registered.user.id, name="Renamed"))

        event = next(
            e
            for e in memory_store.list_audit_events(registered.user.team_id)
            if e.action == "user.profile_update"
        )
        assert event.metadata == {"email_changed": False, "name_changed": True}
