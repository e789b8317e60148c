from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Keys whose values are credentials or contact details
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_KEYS = ("email", "recipient")
# Keys whose values are URLs that may carry a token in the query string
_LINK_KEYS = ("link", "url")

_TOKEN_PARAM = re.compile(r"([?&]token=)[^&#\s]+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the client's request id when given, otherwise mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_secret(value: str) -> str:
    """Keep two characters at each end, enough to match log lines by eye."""
    scheme, sep, rest = value.partition(" ")
    if sep and scheme.lower() == "bearer":
        return f"{scheme} {mask_secret(rest)}"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return mask_secret(value)
    return f"{local[:2]}***@{domain}"


def mask_link(value: str) -> str:
    """Redact the ``token`` query parameter of an activation or similar link."""
    return _TOKEN_PARAM.sub(r"\1***", value)


def make_redactor(
    *, reveal_links: bool = False
) -> Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]:
    """Build the processor that masks credentials, emails and token links.

    With ``reveal_links`` the activation link is logged as is, which is how a
    developer without SMTP activates accounts by hand.
    """

    def redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in event_dict.items():
            if not isinstance(value, str) or key == "event":
                continue
            lower_key = key.lower()
            if any(part in lower_key for part in _LINK_KEYS):
                if not reveal_links:
                    event_dict[key] = mask_link(value)
            elif any(part in lower_key for part in _SECRET_KEYS):
                event_dict[key] = mask_secret(value)
            elif any(part in lower_key for part in _EMAIL_KEYS):
                event_dict[key] = mask_email(value)
        return event_dict

    return redact


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, pretty console output and unmasked
            activation links
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        make_redactor(reveal_links=development_mode),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderer: list = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
