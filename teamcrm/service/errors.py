from __future__ import annotations

from enum import Enum


class AuthErrorKind(str, Enum):
    """Transport-agnostic class of an auth failure.

    The HTTP layer maps ``STATE`` to 400, ``CREDENTIAL`` to 401 and
    ``PERMISSION`` to 403; the engine itself never deals in status codes.
    """

    STATE = "state"
    CREDENTIAL = "credential"
    PERMISSION = "permission"


class AuthErrorCode(str, Enum):
    EMAIL_EXISTS = "EMAIL_EXISTS"
    INVALID_INVITE = "INVALID_INVITE"
    INVITE_USED = "INVITE_USED"
    INVITE_EXPIRED = "INVITE_EXPIRED"
    INVALID_RESET_TOKEN = "INVALID_RESET_TOKEN"
    RESET_TOKEN_USED = "RESET_TOKEN_USED"
    RESET_TOKEN_EXPIRED = "RESET_TOKEN_EXPIRED"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    INVALID_VERIFICATION_TOKEN = "INVALID_VERIFICATION_TOKEN"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    VERIFICATION_TOKEN_EXPIRED = "VERIFICATION_TOKEN_EXPIRED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"


_KIND_BY_CODE: dict[AuthErrorCode, AuthErrorKind] = {
    AuthErrorCode.INVALID_CREDENTIALS: AuthErrorKind.CREDENTIAL,
    AuthErrorCode.INVALID_REFRESH_TOKEN: AuthErrorKind.CREDENTIAL,
    AuthErrorCode.REFRESH_TOKEN_EXPIRED: AuthErrorKind.CREDENTIAL,
    AuthErrorCode.NO_REFRESH_TOKEN: AuthErrorKind.CREDENTIAL,
    AuthErrorCode.UNAUTHORIZED: AuthErrorKind.CREDENTIAL,
    AuthErrorCode.INSUFFICIENT_PERMISSIONS: AuthErrorKind.PERMISSION,
}


def kind_for_code(code: AuthErrorCode) -> AuthErrorKind:
    return _KIND_BY_CODE.get(code, AuthErrorKind.STATE)


class AuthError(Exception):
    """Expected auth failure with a stable ``code`` and a user-facing message."""

    def __init__(self, code: AuthErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.kind = kind_for_code(code)

    def __repr__(self) -> str:
        return f"AuthError(code={self.code.value!r}, message={self.message!r})"


__all__ = [
    "AuthErrorKind",
    "AuthErrorCode",
    "AuthError",
    "kind_for_code",
]
