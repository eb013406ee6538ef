from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionauth.logging import get_logger
from sessionauth.service.errors import AuthFailure
from sessionauth.storage.models import Principal

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks a username and secret against the stored argon2id hash.

    Unknown users are verified against a throwaway hash so the response time
    does not reveal whether the account exists.
    """

    def __init__(self, store, hasher: PasswordHasher | None = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash("sessionauth-dummy-secret")

    def hash_secret(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify(self, username: str, secret: str) -> Principal | AuthFailure:
        principal = self.store.get_principal(username)
        if principal is None:
            self._burn(secret)
            logger.info("credential_unknown_principal", username=username)
            return AuthFailure.invalid_credentials()
        try:
            self._pwd_hasher.verify(principal.secret_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.info("credential_mismatch", username=username)
            return AuthFailure.invalid_credentials()
        return principal

    def _burn(self, secret: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, secret)
        except VerifyMismatchError:
            pass
