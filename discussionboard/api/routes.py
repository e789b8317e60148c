from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from discussionboard.api.error_handling import error_response
from discussionboard.api.schemas import (
    Envelope,
    LoginRequest,
    RegisterRequest,
    UserResponse,
)
from discussionboard.config import Settings
from discussionboard.logging import get_logger
from discussionboard.service.runtime import get_runtime
from discussionboard.storage.errors import StoreError
from discussionboard.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _session_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Session token from the Authorization header, else from the cookie."""
    settings = get_runtime().settings
    return _extract_bearer(authorization) or request.cookies.get(
        settings.session_cookie_name
    )


def _apply_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_token_ttl_hours * 3600,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def get_user(request: Request, authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    user = runtime.auth.current_user(_session_token(request, authorization))
    if user is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return user


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest):
    """Create an inactive account and send its activation link.

    Raises:
        400: If a field is missing or invalid
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = runtime.auth.register(
        body.first_name, body.last_name, body.email, body.password
    )
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(user).model_dump(mode="json"),
            "message": "Registration successful. Check your email to activate your account.",
        },
    )


@router.get("/auth/activate", response_model=Envelope, tags=["auth"])
def activate(token: Optional[str] = Query(None, max_length=512)):
    """Consume a single-use activation token and activate its account.

    Raises:
        400: If the token is missing, invalid, expired or already used
    """
    if not token:
        raise _http_error(
            "validation_error", "Activation token is required", status_code=400
        )
    runtime = get_runtime()
    user = runtime.auth.activate(token)
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_user(user).model_dump(mode="json"),
            "message": "Account activated. You can now log in.",
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, response: Response):
    """Verify credentials and start a session carried in an HttpOnly cookie.

    Raises:
        401: If the email is unknown or the password is wrong
        403: If the account has not been activated
    """
    runtime = get_runtime()
    user, token = runtime.auth.login(body.email, body.password)
    _apply_session_cookie(response, token, runtime.settings)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """End the session carried by the bearer header and the one in the cookie.

    Both are revoked when both are present; they may differ.
    Raises:
        503: If the store could not delete a session; the cookie is still cleared
    """
    runtime = get_runtime()
    tokens = []
    for token in (
        _extract_bearer(authorization),
        request.cookies.get(runtime.settings.session_cookie_name),
    ):
        if token and token not in tokens:
            tokens.append(token)
    failures = 0
    for token in tokens:
        try:
            runtime.auth.logout(token)
        except StoreError:
            failures += 1
    if failures:
        logger.error("logout_revoke_failed", failed=failures, attempted=len(tokens))
        failed = error_response(503, "service temporarily unavailable", code="server_error")
        _clear_session_cookie(failed, runtime.settings)
        return failed
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
def get_current_user(user: User = Depends(get_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))
