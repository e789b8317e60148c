from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from discussionboard.logging import get_logger
from discussionboard.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
        *,
        is_active: bool = False,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: int) -> Optional[str]: ...

    def set_user_active(self, user_id: int, is_active: bool = True) -> bool: ...


class UserDirectory:
    """Account records, activation state and password verification.

    Passwords are hashed with argon2id. Verification takes the same path for
    an unknown email as for a wrong password, including one argon2 verify
    against a throwaway hash, so neither the result nor the timing tells a
    caller which accounts exist.
    """

    def __init__(self, store: UserStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash("discussionboard-dummy-password")

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password: str,
        *,
        is_active: bool = False,
    ) -> User:
        """Create an account; raises ConstraintViolation when the email is taken."""
        user = self.store.create_user(
            first_name.strip(),
            last_name.strip(),
            self.normalize_email(email),
            self.hash_password(password),
            is_active=is_active,
        )
        logger.info("user_created", user_id=user.id, is_active=is_active)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    def get_activation_state(self, user_id: int) -> Optional[bool]:
        """True/False for known users, None when the user does not exist."""
        user = self.store.get_user(user_id)
        if user is None:
            return None
        return user.is_active

    def set_activated(self, user_id: int) -> bool:
        return self.store.set_user_active(user_id, True)

    def verify_credential(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(self.normalize_email(email))
        stored_hash = self.store.get_password_hash(user.id) if user else None
        if user is None or stored_hash is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerifyMismatchError:
                pass
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user.id)
            return None
        return user
