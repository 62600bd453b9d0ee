"""
auth/hashing.py -- One-way password hashing with a versioned work factor.

bcrypt is used directly (no passlib wrapper). The digest is self-describing:
"$2b$12$<22-char salt><31-char hash>" carries the algorithm revision and the
cost factor, so raising bcrypt_rounds never invalidates stored digests. Old
digests keep verifying and check() reports needs_rehash so the caller can
upgrade them on the next successful login.

Each call to hash() draws a fresh salt (bcrypt.gensalt), so two digests of
the same secret never match bitwise. bcrypt.checkpw compares the final digest
in constant time.

bcrypt only reads the first 72 bytes of its input, and bcrypt >= 5 rejects
longer input outright. Secrets over that limit are pre-hashed with SHA-256
(base64, 44 bytes) in both hash() and verify(), which keeps every byte of a
long passphrase significant.

bcrypt releases the GIL while hashing. Callers run it on worker threads
(FastAPI dispatches sync routes to its thread pool), never on the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass

import bcrypt

_BCRYPT_MAX_BYTES = 72
_DIGEST_RE = re.compile(r"^\$2[aby]\$(?P<cost>\d{2})\$[./A-Za-z0-9]{53}$")


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    needs_rehash: bool = False


def _prepare(secret: str) -> bytes:
    raw = secret.encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES:
        return base64.b64encode(hashlib.sha256(raw).digest())
    return raw


def digest_cost(digest: str) -> int | None:
    """Return the cost factor embedded in a bcrypt digest, or None if malformed."""
    match = _DIGEST_RE.match(digest or "")
    if match is None:
        return None
    return int(match.group("cost"))


class CredentialHasher:
    """bcrypt hasher bound to one configured cost factor.

    Usage:
        hasher = CredentialHasher(rounds=12)
        digest = hasher.hash("correct horse")
        hasher.verify("correct horse", digest)          # True
        hasher.check("correct horse", old_digest)       # VerifyResult(valid, needs_rehash)
    """

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        self._dummy_digest: str | None = None

    def hash(self, secret: str) -> str:
        if not secret:
            raise ValueError("Secret cannot be empty")
        return bcrypt.hashpw(_prepare(secret), bcrypt.gensalt(rounds=self.rounds)).decode("ascii")

    def verify(self, secret: str, digest: str) -> bool:
        """Return True if secret matches digest. Malformed digests return False."""
        if not secret or digest_cost(digest) is None:
            return False
        try:
            return bcrypt.checkpw(_prepare(secret), digest.encode("ascii"))
        except ValueError:
            # bcrypt rejects digests that pass the shape check but carry an
            # invalid salt encoding.
            return False

    def check(self, secret: str, digest: str) -> VerifyResult:
        valid = self.verify(secret, digest)
        return VerifyResult(valid=valid, needs_rehash=valid and self.needs_rehash(digest))

    def needs_rehash(self, digest: str) -> bool:
        """True when digest was produced with a different cost or revision."""
        cost = digest_cost(digest)
        if cost is None:
            return True
        return cost != self.rounds or not digest.startswith("$2b$")

    def burn(self, secret: str) -> None:
        """Spend one verification's worth of work against a dummy digest.

        Called when the principal does not exist so response time does not
        reveal whether an identifier is registered [C1].
        """
        if self._dummy_digest is None:
            self._dummy_digest = self.hash("gatehouse_timing_dummy")
        self.verify(secret or "x", self._dummy_digest)
