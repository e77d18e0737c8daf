from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authflow.logging import get_logger
from authflow.service.errors import AuthenticationFailed
from authflow.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...


class PasswordCredentialVerifier:
    """Checks email and password against argon2id hashes in the user store."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("authflow-dummy-password")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify(self, email: str, password: str) -> int:
        """Return the id of the user owning ``email`` if ``password`` matches."""
        user = self.store.get_user_by_email(email)
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password or "")
            except VerificationError:
                pass
            raise AuthenticationFailed()
        if not self.verify_password(user.id, password or ""):
            logger.info("password_verification_failed", user_id=user.id)
            raise AuthenticationFailed()
        return user.id
