"""Opaque single-use tokens for invites, password resets and email verification.

These are looked up by exact match against a stored row, so they carry no
structure and cannot be reconstructed from a secret.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional

from teamcrm.storage.models import utcnow

PASSWORD_RESET_TTL = timedelta(hours=1)
EMAIL_VERIFICATION_TTL = timedelta(hours=24)
INVITE_TTL = timedelta(days=7)


def generate_secure_token(byte_length: int = 32) -> str:
    return secrets.token_bytes(byte_length).hex()


def password_reset_expiry(
    now: Optional[datetime] = None, ttl: timedelta = PASSWORD_RESET_TTL
) -> datetime:
    return (now or utcnow()) + ttl


def email_verification_expiry(
    now: Optional[datetime] = None, ttl: timedelta = EMAIL_VERIFICATION_TTL
) -> datetime:
    return (now or utcnow()) + ttl


def invite_expiry(now: Optional[datetime] = None, ttl: timedelta = INVITE_TTL) -> datetime:
    return (now or utcnow()) + ttl


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    """A deadline equal to ``now`` counts as already passed."""
    return expires_at <= (now or utcnow())
