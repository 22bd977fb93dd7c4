from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, Header, Response

from teamcrm.api.error_handling import auth_error_response
from teamcrm.api.schemas import (
    AcceptInviteRequest,
    EmailVerificationConfirm,
    Envelope,
    InviteCreateRequest,
    InviteResponse,
    IssuedTokenResponse,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    UserResponse,
)
from teamcrm.logging import get_logger
from teamcrm.service.auth import AuthContext, AuthResult, TokenPair
from teamcrm.service.errors import AuthError, AuthErrorCode
from teamcrm.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    secure = settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.is_production
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


def _user_payload(result: AuthResult) -> dict:
    return {"user": UserResponse.from_view(result.user).model_dump(by_alias=True)}


def _expose_tokens() -> bool:
    return not get_runtime().settings.is_production


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    """Resolve the caller from the access-token cookie or a bearer header."""
    token = access_token
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            token = credentials.strip()
    return get_runtime().auth.authenticate(token)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a team with its owner account and start a session.

    Raises:
        400: EMAIL_EXISTS when the address is already registered
    """
    result = await get_runtime().auth.register(
        body.email, body.password, body.name, body.team_name
    )
    _apply_session_cookies(response, result.tokens)
    return Envelope(status="ok", data=_user_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    result = await get_runtime().auth.login(body.email, body.password)
    _apply_session_cookies(response, result.tokens)
    return Envelope(status="ok", data=_user_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    if refresh_token:
        await get_runtime().auth.logout(refresh_token)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "Logged out"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the refresh-token cookie; any failure also clears both cookies."""
    if not refresh_token:
        raise AuthError(AuthErrorCode.NO_REFRESH_TOKEN, "No refresh token provided")
    try:
        tokens = await get_runtime().auth.refresh(refresh_token)
    except AuthError as exc:
        logger.info("refresh_failed_cookies_cleared", error_code=exc.code.value)
        failure = auth_error_response(exc, status_code=401)
        _clear_session_cookies(failure)
        return failure
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data={"message": "Tokens refreshed"})


@router.post("/auth/accept-invite", response_model=Envelope, tags=["auth"])
async def accept_invite(body: AcceptInviteRequest, response: Response):
    result = await get_runtime().auth.accept_invite(body.token, body.password, body.name)
    _apply_session_cookies(response, result.tokens)
    return Envelope(status="ok", data=_user_payload(result))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, background: BackgroundTasks):
    """Always succeeds so the response does not reveal which accounts exist."""
    auth = get_runtime().auth
    issued = await auth.request_password_reset(body.email)
    background.add_task(auth.wait_for_notifications)
    payload = IssuedTokenResponse(
        message="If an account exists for this email, a reset link has been sent"
    )
    if _expose_tokens():
        payload.token = issued.token
        payload.expires_at = issued.expires_at
    return Envelope(status="ok", data=payload.model_dump(mode="json", by_alias=True))


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    await get_runtime().auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_principal),
):
    await get_runtime().auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed"})


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    background: BackgroundTasks,
    principal: AuthContext = Depends(get_principal),
):
    auth = get_runtime().auth
    issued = await auth.resend_verification_email(principal.user_id)
    background.add_task(auth.wait_for_notifications)
    payload = IssuedTokenResponse(message="Verification email sent")
    if _expose_tokens():
        payload.token = issued.token
        payload.expires_at = issued.expires_at
    return Envelope(status="ok", data=payload.model_dump(mode="json", by_alias=True))


@router.post("/auth/verify-email/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(body: EmailVerificationConfirm):
    await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data={"message": "Email verified"})


@router.post("/team/invites", response_model=Envelope, status_code=201, tags=["team"])
async def create_invite(
    body: InviteCreateRequest,
    background: BackgroundTasks,
    principal: AuthContext = Depends(get_principal),
):
    """Invite a new member into the caller's team.

    Raises:
        403: INSUFFICIENT_PERMISSIONS unless the caller is an owner or admin
        400: EMAIL_EXISTS when the address already belongs to an account
    """
    auth = get_runtime().auth
    result = await auth.create_invite(principal.user_id, body.email, body.role)
    background.add_task(auth.wait_for_notifications)
    invite = result.invite
    payload = InviteResponse(
        id=invite.id,
        email=invite.email,
        role=invite.role,
        status=invite.status,
        team_name=result.team_name,
        expires_at=invite.expires_at,
        token=invite.token if _expose_tokens() else None,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json", by_alias=True))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_current_user(principal: AuthContext = Depends(get_principal)):
    view = get_runtime().auth.get_user_view(principal.user_id)
    return Envelope(
        status="ok", data={"user": UserResponse.from_view(view).model_dump(by_alias=True)}
    )


@router.put("/users/me", response_model=Envelope, tags=["users"])
async def update_current_user(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_principal),
):
    """Change the caller's display name and/or email.

    Raises:
        400: EMAIL_EXISTS when the new email belongs to another account
    """
    view = await get_runtime().auth.update_profile(
        principal.user_id, name=body.name, email=body.email
    )
    return Envelope(
        status="ok", data={"user": UserResponse.from_view(view).model_dump(by_alias=True)}
    )
