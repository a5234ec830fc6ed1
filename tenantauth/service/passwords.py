from __future__ import annotations

import secrets
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class CredentialStore(Protocol):
    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...


def check_password_policy(password: str) -> AuthResult[None]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return AuthResult.failure(
            ErrorKind.VALIDATION_FAILED,
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            field="newPassword",
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        return AuthResult.failure(
            ErrorKind.VALIDATION_FAILED,
            f"Password must be at most {MAX_PASSWORD_LENGTH} characters",
            field="newPassword",
        )
    return AuthResult.success()


class CredentialVerifier:
    """Argon2id hashing and verification of account secrets."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def burn_verification(self, password: str) -> None:
        """Spend one verification on a throwaway hash.

        Used for unknown identifiers so response time does not reveal
        whether the account exists.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            logger.warning("password_record_missing", account_id=account_id)
            self.burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", account_id=account_id)
            return False

    def needs_rehash(self, account_id: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            return False
        try:
            return self._pwd_hasher.check_needs_rehash(record[0])
        except InvalidHash:
            return True
