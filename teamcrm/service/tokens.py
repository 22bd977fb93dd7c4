from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from teamcrm.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)


class TokenInvalid(Exception):
    """Signature, shape, type or expiry check failed for a signed token."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    team_id: str
    role: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    session_id: str
    issued_at: int
    expires_at: int


class TokenSigner:
    """HS256 signer for access and refresh tokens.

    Access and refresh tokens are signed with independent secrets, so leaking
    one secret does not let an attacker mint the other token class. Refresh
    tokens only carry the session id; the session row is the revocation point.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        self._access_key = access_secret.encode()
        self._refresh_key = refresh_secret.encode()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock or time.time

    def sign_access_token(self, user_id: str, team_id: str, role: str) -> str:
        now = int(self._clock())
        payload = {
            "token_type": "access",
            "user_id": user_id,
            "team_id": team_id,
            "role": role,
            "iat": now,
            "exp": now + int(self.access_ttl.total_seconds()),
            "jti": uuid.uuid4().hex,
        }
        return self._encode_jwt(payload, self._access_key)

    def sign_refresh_token(self, session_id: str) -> str:
        now = int(self._clock())
        payload = {
            "token_type": "refresh",
            "session_id": session_id,
            "iat": now,
            "exp": now + int(self.refresh_ttl.total_seconds()),
        }
        return self._encode_jwt(payload, self._refresh_key)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, self._access_key, "access")
        try:
            return AccessClaims(
                user_id=str(payload["user_id"]),
                team_id=str(payload["team_id"]),
                role=str(payload["role"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("access token is missing claims") from exc

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        payload = self._decode_jwt(token, self._refresh_key, "refresh")
        try:
            return RefreshClaims(
                session_id=str(payload["session_id"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("refresh token is missing claims") from exc

    def refresh_token_expiry(self) -> datetime:
        """Session row deadline, on the same clock as the token's ``exp``."""
        now = int(self._clock())
        return datetime.fromtimestamp(
            now + int(self.refresh_ttl.total_seconds()), tz=timezone.utc
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _decode_jwt(self, token: str, key: bytes, expected_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("malformed token")

        # reject alg confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise TokenInvalid("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed token payload")
        if not isinstance(payload, dict) or payload.get("token_type") != expected_type:
            raise TokenInvalid("wrong token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing expiry")
        if exp_ts <= self._clock():
            raise TokenInvalid("token expired")
        return payload
