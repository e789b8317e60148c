from __future__ import annotations

import heapq
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from collections import OrderedDict
from typing import Dict, Iterator, Optional

from discussionboard.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_MAX_ENTRIES = 10000


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Waiting writers block new readers so a steady stream of lookups cannot
    starve logout.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class CachedSession:
    user_id: int
    expires_at: datetime


class SessionCache:
    """In-process map from raw session token to user id.

    Only authentication-scope tokens are cached, and only after the backing
    store confirmed them. Entries remember the expiry of the record they came
    from and read as misses once it passes.

    Every :meth:`delete` advances :attr:`generation` and records the
    generation at which that token went away. Read-through population goes
    through :meth:`set_if_generation`, which refuses only when the same token
    was deleted after the caller read the generation, so a lookup that raced
    a revoke cannot put the revoked token back while unrelated logouts leave
    population alone. The deletion log holds at most ``max_entries`` tokens;
    a population older than the oldest forgotten deletion is refused.
    """

    def __init__(self, max_entries: int = _DEFAULT_MAX_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: Dict[str, CachedSession] = {}
        self._lock = ReadWriteLock()
        self._generation = 0
        # token -> generation of its latest delete, oldest first
        self._deletions: "OrderedDict[str, int]" = OrderedDict()
        self._deletions_floor = 0

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        with self._lock.read():
            return token in self._entries

    @property
    def generation(self) -> int:
        with self._lock.read():
            return self._generation

    def get(self, token: str, *, now: Optional[datetime] = None) -> Optional[int]:
        now = now or datetime.now(timezone.utc)
        with self._lock.read():
            entry = self._entries.get(token)
        if entry is None:
            return None
        if entry.expires_at <= now:
            with self._lock.write():
                if self._entries.get(token) is entry:
                    del self._entries[token]
            return None
        return entry.user_id

    def set(self, token: str, user_id: int, expires_at: datetime) -> None:
        with self._lock.write():
            self._store(token, CachedSession(user_id, expires_at))

    def set_if_generation(
        self, token: str, user_id: int, expires_at: datetime, generation: int
    ) -> bool:
        """Insert unless ``token`` was deleted since ``generation`` was read."""
        with self._lock.write():
            deleted_at = self._deletions.get(token, self._deletions_floor)
            if deleted_at > generation:
                return False
            self._store(token, CachedSession(user_id, expires_at))
            return True

    def delete(self, token: str) -> None:
        with self._lock.write():
            self._entries.pop(token, None)
            self._generation += 1
            self._deletions[token] = self._generation
            self._deletions.move_to_end(token)
            if len(self._deletions) > self.max_entries:
                _, forgotten = self._deletions.popitem(last=False)
                self._deletions_floor = forgotten

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock.write():
            stale = [t for t, e in self._entries.items() if e.expires_at <= now]
            for token in stale:
                del self._entries[token]
        return len(stale)

    def _store(self, token: str, entry: CachedSession) -> None:
        # caller holds the write lock
        if token not in self._entries and len(self._entries) >= self.max_entries:
            evict_count = max(1, self.max_entries // 10)
            soonest = heapq.nsmallest(
                evict_count, self._entries.items(), key=lambda item: item[1].expires_at
            )
            for old_token, _ in soonest:
                del self._entries[old_token]
            logger.info("session_cache_evicted", count=len(soonest))
        self._entries[token] = entry
