from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from teamcrm.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Salted one-way password hashing backed by argon2id."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # verified against when the account does not exist, keeping login timing flat
        self._dummy_hash = self._pwd_hasher.hash("timing-equalizer-password")

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, password_hash: str, plaintext: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Burn one verification for an unknown account; always ``False``."""
        self.verify(self._dummy_hash, plaintext)
        return False
