from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from discussionboard.logging import get_logger
from discussionboard.storage.errors import ConstraintViolation, DuplicateKeyError
from discussionboard.storage.models import TokenRecord, TokenScope, User


class MemoryStore:
    """In-process backing store used for development and tests.

    Mirrors the Postgres schema: users keyed by serial id, tokens keyed by
    their SHA-256 fingerprint with a cascading delete when the owning user
    goes away. When ``persist`` is set the state is mirrored to
    ``<fs_root>/state/memory_store.json`` after every write.
    """

    def __init__(self, fs_root: str = "/tmp/discussionboard", *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, str] = {}
        self.tokens: Dict[bytes, TokenRecord] = {}
        self._user_seq: int = 1
        # RLock so helpers can nest under public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> bool:
        return True

    # users

    def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
        *,
        is_active: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_seq,
                first_name=first_name,
                last_name=last_name,
                email=email,
                is_active=is_active,
            )
            self._user_seq += 1
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_password_hash(self, user_id: int) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_user_active(self, user_id: int, is_active: bool = True) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            self._persist_state()
            return True

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            # ON DELETE CASCADE
            for fingerprint in [
                fp for fp, rec in self.tokens.items() if rec.user_id == user_id
            ]:
                self.tokens.pop(fingerprint, None)
            self._persist_state()
            return True

    # tokens

    def insert_token(
        self, fingerprint: bytes, user_id: int, expiry: datetime, scope: TokenScope
    ) -> TokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if fingerprint in self.tokens:
                raise DuplicateKeyError("token fingerprint already exists")
            record = TokenRecord(
                fingerprint=fingerprint,
                user_id=user_id,
                expiry=expiry,
                scope=TokenScope(scope),
            )
            self.tokens[fingerprint] = record
            self._persist_state()
            return record

    def lookup_token(
        self, fingerprint: bytes, scope: TokenScope, *, now: Optional[datetime] = None
    ) -> Optional[TokenRecord]:
        now = now or datetime.now(timezone.utc)
        with self._data_lock:
            record = self.tokens.get(fingerprint)
        if record is None or record.scope != scope or not record.is_valid(now):
            return None
        return record

    def delete_token(self, fingerprint: bytes) -> None:
        with self._data_lock:
            if self.tokens.pop(fingerprint, None) is not None:
                self._persist_state()

    def sweep_expired_tokens(self, now: datetime, *, batch_size: int = 1000) -> int:
        """Delete every token with ``expiry <= now``, one batch per lock hold."""
        removed = 0
        while True:
            with self._data_lock:
                batch = [
                    fp for fp, rec in self.tokens.items() if rec.expiry <= now
                ][:batch_size]
                for fingerprint in batch:
                    self.tokens.pop(fingerprint, None)
                if batch:
                    self._persist_state()
            removed += len(batch)
            if len(batch) < batch_size:
                return removed

    # persistence

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "user_seq": self._user_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": password_hash}
                for user_id, password_hash in self.credentials.items()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.tokens = {}
        for token_data in data.get("tokens", []):
            record = self._deserialize_token(token_data)
            self.tokens[record.fingerprint] = record
        self._user_seq = max(
            data.get("user_seq", 1), max(self.users, default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tokens=len(self.tokens)
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data["email"],
            is_active=bool(data.get("is_active", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "hash": record.fingerprint.hex(),
            "user_id": record.user_id,
            "expiry": self._serialize_datetime(record.expiry),
            "scope": record.scope.value,
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            fingerprint=bytes.fromhex(data["hash"]),
            user_id=int(data["user_id"]),
            expiry=self._deserialize_datetime(data["expiry"]),
            scope=TokenScope(data["scope"]),
        )
