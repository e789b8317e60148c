from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenScope(str, Enum):
    """Purpose tag restricting which operation may consume a token."""

    ACTIVATION = "activation"
    AUTHENTICATION = "authentication"


@dataclass
class User:
    id: int
    first_name: str
    last_name: str
    email: str
    is_active: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TokenRecord:
    """Persisted view of a token: only its fingerprint is ever stored."""

    fingerprint: bytes
    user_id: int
    expiry: datetime
    scope: TokenScope

    def is_valid(self, now: datetime) -> bool:
        return self.expiry > now
