from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from discussionboard.logging import get_logger
from discussionboard.service.errors import (
    InvalidCredentialError,
    NotActivatedError,
    NotFoundError,
    TokenGenerationError,
    TokenNotFoundError,
)
from discussionboard.service.session_cache import SessionCache
from discussionboard.service.tokens import TokenCodec
from discussionboard.storage.errors import (
    ConstraintViolation,
    DuplicateKeyError,
    StoreError,
)
from discussionboard.storage.models import TokenRecord, TokenScope

logger = get_logger(__name__)

ACTIVATION_TTL = timedelta(hours=72)
AUTHENTICATION_TTL = timedelta(hours=24)
# anything longer than this cannot be one of our tokens
_MAX_TOKEN_LENGTH = 512


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore(Protocol):
    def insert_token(
        self, fingerprint: bytes, user_id: int, expiry: datetime, scope: TokenScope
    ) -> TokenRecord: ...

    def lookup_token(
        self, fingerprint: bytes, scope: TokenScope, *, now: Optional[datetime] = None
    ) -> Optional[TokenRecord]: ...

    def delete_token(self, fingerprint: bytes) -> None: ...

    def sweep_expired_tokens(self, now: datetime, *, batch_size: int = 1000) -> int: ...


class ActivationDirectory(Protocol):
    def get_activation_state(self, user_id: int) -> Optional[bool]: ...

    def set_activated(self, user_id: int) -> bool: ...


class AuthSessionService:
    """Issues, resolves and revokes activation and session tokens.

    Session lookups go to the :class:`SessionCache` first and fall back to
    the token store, populating the cache on a store hit. Issuance writes
    the store first and seeds the cache only once the record exists.

    Once :meth:`revoke` returns, no later :meth:`resolve` of that token
    succeeds. Activation tokens are single use even if deleting the record
    fails; such fingerprints are remembered until the sweep manages to
    delete them or they expire.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: SessionCache,
        directory: ActivationDirectory,
        *,
        codec: Optional[TokenCodec] = None,
        activation_ttl: timedelta = ACTIVATION_TTL,
        authentication_ttl: timedelta = AUTHENTICATION_TTL,
        sweep_batch_size: int = 1000,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.directory = directory
        self.codec = codec or TokenCodec()
        self.activation_ttl = activation_ttl
        self.authentication_ttl = authentication_ttl
        self.sweep_batch_size = sweep_batch_size
        self._clock = clock
        self._consume_lock = threading.Lock()
        # fingerprint -> time after which the store record is expired anyway
        self._tombstones: Dict[bytes, datetime] = {}
        self._tombstone_lock = threading.Lock()

    # issuance

    def _issue(self, user_id: int, scope: TokenScope, ttl: timedelta) -> Tuple[str, TokenRecord]:
        for attempt in (1, 2):
            token = self.codec.generate()
            fingerprint = self.codec.fingerprint(token)
            expiry = self._clock() + ttl
            try:
                record = self.store.insert_token(fingerprint, user_id, expiry, scope)
            except DuplicateKeyError:
                logger.warning(
                    "token_fingerprint_collision", scope=scope.value, attempt=attempt
                )
                continue
            return token, record
        raise TokenGenerationError("could not generate a unique token")

    def issue_authentication_token(self, user_id: int) -> str:
        state = self.directory.get_activation_state(user_id)
        if state is None:
            raise InvalidCredentialError()
        if not state:
            raise NotActivatedError()
        try:
            token, record = self._issue(
                user_id, TokenScope.AUTHENTICATION, self.authentication_ttl
            )
        except ConstraintViolation:
            # user deleted between the activation check and the insert
            raise InvalidCredentialError()
        self.cache.set(token, user_id, record.expiry)
        logger.info("session_issued", user_id=user_id)
        return token

    def issue_activation_token(self, user_id: int) -> str:
        try:
            token, _ = self._issue(user_id, TokenScope.ACTIVATION, self.activation_ttl)
        except ConstraintViolation:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("activation_token_issued", user_id=user_id)
        return token

    # lookup

    @staticmethod
    def _well_formed(token: Optional[str]) -> bool:
        return isinstance(token, str) and 0 < len(token) <= _MAX_TOKEN_LENGTH

    def _is_tombstoned(self, fingerprint: bytes, now: datetime) -> bool:
        with self._tombstone_lock:
            until = self._tombstones.get(fingerprint)
        return until is not None and until > now

    def _tombstone(self, fingerprint: bytes, until: datetime) -> None:
        with self._tombstone_lock:
            self._tombstones[fingerprint] = until

    def resolve(self, token: Optional[str]) -> Optional[int]:
        """Return the user id a session token belongs to, or None.

        None covers every failure (unknown, expired, revoked, wrong scope,
        malformed, store unavailable) without saying which.
        """
        if not self._well_formed(token):
            return None
        now = self._clock()
        user_id = self.cache.get(token, now=now)
        if user_id is not None:
            return user_id
        fingerprint = self.codec.fingerprint(token)
        # snapshot before the tombstone check: a concurrent revoke either
        # shows up as a tombstone or as a generation change
        generation = self.cache.generation
        if self._is_tombstoned(fingerprint, now):
            return None
        try:
            record = self.store.lookup_token(
                fingerprint, TokenScope.AUTHENTICATION, now=now
            )
        except StoreError:
            logger.warning("session_lookup_failed")
            return None
        if record is None:
            return None
        if not self.cache.set_if_generation(
            token, record.user_id, record.expiry, generation
        ):
            logger.debug("session_cache_populate_skipped", user_id=record.user_id)
        return record.user_id

    # consumption and revocation

    def consume_activation_token(self, token: Optional[str]) -> int:
        """Activate the token's user and destroy the token; single use."""
        if not self._well_formed(token):
            raise TokenNotFoundError()
        fingerprint = self.codec.fingerprint(token)
        with self._consume_lock:
            now = self._clock()
            if self._is_tombstoned(fingerprint, now):
                raise TokenNotFoundError()
            record = self.store.lookup_token(
                fingerprint, TokenScope.ACTIVATION, now=now
            )
            if record is None:
                raise TokenNotFoundError()
            if self.directory.get_activation_state(record.user_id) is not False:
                # spent by an earlier consume whose delete failed, or orphaned
                self._delete_or_tombstone(fingerprint, record.expiry)
                raise TokenNotFoundError()
            if not self.directory.set_activated(record.user_id):
                self._delete_or_tombstone(fingerprint, record.expiry)
                raise TokenNotFoundError()
            self._delete_or_tombstone(fingerprint, record.expiry)
        logger.info("account_activated", user_id=record.user_id)
        return record.user_id

    def _delete_or_tombstone(self, fingerprint: bytes, until: datetime) -> None:
        try:
            self.store.delete_token(fingerprint)
        except StoreError:
            self._tombstone(fingerprint, until)
            logger.warning("activation_token_delete_deferred")

    def revoke(self, token: Optional[str]) -> None:
        """Delete a session token from the store and the cache.

        Both deletions are always attempted. A store failure is re-raised
        after the cache entry is gone, and the fingerprint stays blocked
        until the sweep removes the row.
        """
        if not self._well_formed(token):
            return
        fingerprint = self.codec.fingerprint(token)
        try:
            self.store.delete_token(fingerprint)
        except StoreError:
            self._tombstone(fingerprint, self._clock() + self.authentication_ttl)
            logger.error("session_revoke_store_failed")
            raise
        finally:
            self.cache.delete(token)
        logger.info("session_revoked")

    # maintenance

    def sweep_expired(self) -> int:
        """Reap expired store rows, cache entries and tombstones."""
        now = self._clock()
        try:
            removed = self.store.sweep_expired_tokens(
                now, batch_size=self.sweep_batch_size
            )
        except StoreError as exc:
            logger.warning("token_store_sweep_failed", operation=exc.operation)
            removed = 0
        purged = self.cache.purge_expired(now)
        retried = self._retry_tombstones(now)
        if removed or purged or retried:
            logger.info(
                "expired_tokens_swept",
                removed=removed,
                cache_purged=purged,
                deferred_deletes=retried,
            )
        return removed

    def _retry_tombstones(self, now: datetime) -> int:
        with self._tombstone_lock:
            pending = list(self._tombstones.items())
        cleared = 0
        for fingerprint, until in pending:
            if until > now:
                try:
                    self.store.delete_token(fingerprint)
                except StoreError:
                    logger.warning("deferred_token_delete_failed")
                    break
            with self._tombstone_lock:
                self._tombstones.pop(fingerprint, None)
            cleared += 1
        return cleared
