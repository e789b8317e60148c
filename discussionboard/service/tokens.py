from __future__ import annotations

import hashlib
import secrets

# 32 random bytes -> 43 URL-safe characters, 256 bits of entropy
TOKEN_BYTES = 32
FINGERPRINT_SIZE = hashlib.sha256().digest_size


class TokenCodec:
    """Generates opaque bearer tokens and their storage fingerprints.

    Tokens come straight from the OS CSPRNG; nothing clock-derived is mixed
    in, so knowing earlier tokens or the server time gives no advantage in
    guessing the next one. Only the SHA-256 fingerprint of a token is ever
    persisted.
    """

    def __init__(self, nbytes: int = TOKEN_BYTES) -> None:
        if nbytes < 16:
            raise ValueError("tokens need at least 128 bits of entropy")
        self.nbytes = nbytes

    def generate(self) -> str:
        return secrets.token_urlsafe(self.nbytes)

    @staticmethod
    def fingerprint(token: str) -> bytes:
        return hashlib.sha256(token.encode("utf-8")).digest()
