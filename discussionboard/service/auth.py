from __future__ import annotations

from typing import Callable, Optional, Tuple
from urllib.parse import urlencode

from discussionboard.logging import get_logger
from discussionboard.service.errors import (
    ConflictError,
    InvalidCredentialError,
    NotActivatedError,
    ServerError,
    TokenNotFoundError,
)
from discussionboard.service.sessions import AuthSessionService
from discussionboard.service.users import UserDirectory
from discussionboard.storage.errors import ConstraintViolation, StoreError
from discussionboard.storage.models import User

logger = get_logger(__name__)

NotifyActivation = Callable[[str, str], object]


class AuthService:
    """Account flows built on the token/session core: register, activate,
    login, logout and current-user lookup."""

    def __init__(
        self,
        directory: UserDirectory,
        sessions: AuthSessionService,
        notify_activation: NotifyActivation,
        *,
        base_url: str = "http://localhost:8080",
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.notify_activation = notify_activation
        self.base_url = base_url.rstrip("/")

    def activation_link(self, token: str) -> str:
        return f"{self.base_url}/v1/auth/activate?{urlencode({'token': token})}"

    def register(
        self, first_name: str, last_name: str, email: str, password: str
    ) -> User:
        """Create an inactive account and send its activation link.

        Failing to issue or deliver the activation token does not fail the
        registration; it is logged and the account simply stays inactive.
        """
        try:
            user = self.directory.create_user(first_name, last_name, email, password)
        except ConstraintViolation as exc:
            raise ConflictError("Email already exists", detail=exc.detail) from exc

        try:
            token = self.sessions.issue_activation_token(user.id)
        except (StoreError, ServerError) as exc:
            logger.warning(
                "activation_token_issue_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            return user

        try:
            self.notify_activation(user.email, self.activation_link(token))
        except Exception as exc:
            logger.error(
                "activation_notify_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
        return user

    def activate(self, token: Optional[str]) -> User:
        user_id = self.sessions.consume_activation_token(token)
        user = self.directory.get_user(user_id)
        if user is None:
            raise TokenNotFoundError()
        return user

    def login(self, email: str, password: str) -> Tuple[User, str]:
        user = self.directory.verify_credential(email, password)
        if user is None:
            logger.info("login_failed")
            raise InvalidCredentialError()
        if not user.is_active:
            raise NotActivatedError()
        token = self.sessions.issue_authentication_token(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return user, token

    def current_user(self, token: Optional[str]) -> Optional[User]:
        user_id = self.sessions.resolve(token)
        if user_id is None:
            return None
        try:
            user = self.directory.get_user(user_id)
        except StoreError:
            logger.warning("current_user_lookup_failed", user_id=user_id)
            return None
        if user is None or not user.is_active:
            return None
        return user

    def logout(self, token: Optional[str]) -> None:
        if token:
            self.sessions.revoke(token)
